from __future__ import annotations

import logging
import secrets
import time

from sqlalchemy.orm import Session

from shopbot.conversation.state import ConversationContext, calculate_cart_total
from shopbot.models.order import Order
from shopbot.models.product import Product

logger = logging.getLogger(__name__)

MAX_ORDER_NUMBER_ATTEMPTS = 5


class OrderCreationError(ValueError):
    pass


def generate_order_number(now_ms: int | None = None) -> str:
    """Last six digits of the epoch millis plus three random digits."""
    stamp = str(now_ms if now_ms is not None else int(time.time() * 1000))[-6:]
    return f"{stamp}{secrets.randbelow(1000):03d}"


def _unique_order_number(db: Session) -> str:
    for _ in range(MAX_ORDER_NUMBER_ATTEMPTS):
        candidate = generate_order_number()
        if not db.query(Order.id).filter(Order.order_number == candidate).first():
            return candidate
    raise OrderCreationError("could not allocate a unique order number")


def _product_id(db: Session, raw_id: str | None, workspace_id: int) -> int | None:
    if not raw_id or not str(raw_id).isdigit():
        return None
    product = db.get(Product, int(raw_id))
    if product is None or product.workspace_id != workspace_id:
        return None
    return product.id


def create_order(
    db: Session,
    *,
    workspace_id: int,
    fb_page_id: str | None,
    conversation_id: int | None,
    context: ConversationContext,
) -> Order:
    """Adds the order to the session; the caller commits it with the conversation update."""
    if not context.cart:
        raise OrderCreationError("No product in cart")

    checkout = context.checkout
    name = checkout.customer_name or context.customer_name
    phone = checkout.customer_phone or context.customer_phone
    address = checkout.customer_address or context.customer_address
    if not (name and phone and address):
        raise OrderCreationError("Checkout is missing customer details")

    first = context.cart[0]
    delivery_charge = checkout.delivery_charge or context.delivery_charge or 0
    total_amount = checkout.total_amount or (calculate_cart_total(context.cart) + delivery_charge)

    order = Order(
        workspace_id=workspace_id,
        fb_page_id=fb_page_id,
        conversation_id=conversation_id,
        product_id=_product_id(db, first.product_id, workspace_id),
        order_number=_unique_order_number(db),
        customer_name=name,
        customer_phone=phone,
        customer_address=address,
        product_price=first.product_price,
        quantity=first.quantity,
        product_size=first.selected_size or context.selected_size,
        product_color=first.selected_color or context.selected_color,
        delivery_charge=delivery_charge,
        total_amount=total_amount,
        items=[item.model_dump(mode="json", by_alias=True, exclude_none=True) for item in context.cart],
        payment_last_two_digits=checkout.payment_last_two_digits,
        status="pending",
        payment_status="unpaid",
    )
    db.add(order)
    db.flush()
    logger.info(
        "Order created",
        extra={"workspace_id": workspace_id, "order_number": order.order_number, "total_amount": total_amount},
    )
    return order
