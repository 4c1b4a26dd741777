from __future__ import annotations

import logging
import time
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

MAX_PENDING_IMAGES = 5
BATCH_WINDOW_MS = 5 * 60 * 1000
BATCH_EXPIRY_MS = 10 * 60 * 1000


class ConversationState(str, Enum):
    IDLE = "IDLE"
    CONFIRMING_PRODUCT = "CONFIRMING_PRODUCT"
    SELECTING_CART_ITEMS = "SELECTING_CART_ITEMS"
    COLLECTING_MULTI_VARIATIONS = "COLLECTING_MULTI_VARIATIONS"
    COLLECTING_NAME = "COLLECTING_NAME"
    COLLECTING_PHONE = "COLLECTING_PHONE"
    COLLECTING_ADDRESS = "COLLECTING_ADDRESS"
    COLLECTING_PAYMENT_DIGITS = "COLLECTING_PAYMENT_DIGITS"
    CONFIRMING_ORDER = "CONFIRMING_ORDER"
    AWAITING_CUSTOMER_DETAILS = "AWAITING_CUSTOMER_DETAILS"


class _ContextModel(BaseModel):
    # persisted JSON uses camelCase keys; python code uses snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartItem(_ContextModel):
    product_id: str
    product_name: str
    product_price: float = Field(..., ge=0)
    quantity: int = Field(default=1, ge=1)
    image_url: str | None = None
    description: str | None = None
    stock_quantity: int | None = None
    size_stock: list[dict[str, Any]] | None = None
    sizes: list[str] = Field(default_factory=list)
    colors: list[str] = Field(default_factory=list)
    selected_size: str | None = None
    selected_color: str | None = None

    @field_validator("product_id", mode="before")
    @classmethod
    def _coerce_product_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value

    @property
    def line_total(self) -> float:
        return self.product_price * self.quantity


class Checkout(_ContextModel):
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_address: str | None = None
    delivery_charge: float | None = None
    total_amount: float | None = None
    payment_method: Literal["cod", "bkash", "nagad", "bank"] | None = None
    payment_last_two_digits: str | None = None


class ConversationMetadata(_ContextModel):
    last_image_hash: str | None = None
    last_image_url: str | None = None
    last_product_id: str | None = None
    last_match_confidence: float | None = None
    last_match_tier: str | None = None
    started_at: str | None = None
    message_count: int = 0
    preferred_language: Literal["bn", "en", "mixed"] | None = None
    is_returning_customer: bool | None = None


class RecognitionResult(_ContextModel):
    success: bool
    product_id: str | None = None
    product_name: str | None = None
    product_price: float | None = None
    image_url: str | None = None
    confidence: float | None = None
    tier: str | None = None
    description: str | None = None
    stock_quantity: int | None = None
    sizes: list[str] = Field(default_factory=list)
    colors: list[str] = Field(default_factory=list)

    @field_validator("product_id", mode="before")
    @classmethod
    def _coerce_product_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class PendingImage(_ContextModel):
    url: str
    timestamp: float
    recognition_result: RecognitionResult


class ConversationContext(_ContextModel):
    state: ConversationState = ConversationState.IDLE
    cart: list[CartItem] = Field(default_factory=list)
    checkout: Checkout = Field(default_factory=Checkout)
    metadata: ConversationMetadata = Field(default_factory=ConversationMetadata)

    pending_images: list[PendingImage] = Field(default_factory=list)
    last_image_received_at: float | None = None

    current_variation_index: int | None = None
    collecting_size: bool | None = None

    # mirrors of cart[0] / checkout kept for rows written by older releases
    product_id: str | None = None
    product_name: str | None = None
    product_price: float | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_address: str | None = None
    delivery_charge: float | None = None
    total_amount: float | None = None

    selected_size: str | None = None
    selected_color: str | None = None

    @field_validator("state", mode="before")
    @classmethod
    def _unknown_state_is_idle(cls, value: Any) -> Any:
        if value is None:
            return ConversationState.IDLE
        if isinstance(value, ConversationState):
            return value
        if isinstance(value, str) and value not in ConversationState.__members__:
            return ConversationState.IDLE
        return value

    @field_validator("product_id", mode="before")
    @classmethod
    def _coerce_product_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


def create_empty_context() -> ConversationContext:
    return ConversationContext()


def context_to_json(context: ConversationContext) -> dict[str, Any]:
    return context.model_dump(mode="json", by_alias=True, exclude_none=True)


def apply_context_patch(context: ConversationContext, patch: dict[str, Any] | None) -> ConversationContext:
    """Returns a new context with the snake_case keys of patch overriding the current values."""
    if not patch:
        return context
    data = context.model_dump()
    data.update(patch)
    return ConversationContext.model_validate(data)


def calculate_cart_total(cart: list[CartItem]) -> float:
    return sum(item.line_total for item in cart)


def add_to_cart(cart: list[CartItem], item: CartItem) -> list[CartItem]:
    for index, existing in enumerate(cart):
        if existing.product_id == item.product_id:
            updated = list(cart)
            updated[index] = existing.model_copy(update={"quantity": existing.quantity + item.quantity})
            return updated
    return [*cart, item]


def remove_from_cart(cart: list[CartItem], product_id: str) -> list[CartItem]:
    return [item for item in cart if item.product_id != str(product_id)]


def sync_legacy_fields(context: ConversationContext) -> ConversationContext:
    first = context.cart[0] if context.cart else None
    checkout = context.checkout
    return context.model_copy(
        update={
            "product_id": first.product_id if first else None,
            "product_name": first.product_name if first else None,
            "product_price": first.product_price if first else None,
            "customer_name": checkout.customer_name,
            "customer_phone": checkout.customer_phone,
            "customer_address": checkout.customer_address,
            "delivery_charge": checkout.delivery_charge,
            "total_amount": checkout.total_amount,
        }
    )


def migrate_legacy_context(raw: dict[str, Any] | ConversationContext | None) -> ConversationContext:
    """Builds the rich context from whatever shape was persisted.

    Rich values win over legacy scalars; legacy scalars only fill gaps. The
    result always carries legacy mirrors of cart[0]/checkout, so running the
    migration on its own output is a no-op.
    """
    if isinstance(raw, ConversationContext):
        data: dict[str, Any] = raw.model_dump()
    else:
        data = dict(raw or {})

    try:
        context = ConversationContext.model_validate(data)
    except ValidationError as exc:
        logger.warning("Discarding unreadable conversation context: %s", exc.errors()[:3])
        context = ConversationContext(state=data.get("state") or ConversationState.IDLE)

    cart = context.cart
    if not cart and context.product_id and context.product_name and context.product_price is not None:
        cart = [
            CartItem(
                product_id=context.product_id,
                product_name=context.product_name,
                product_price=context.product_price,
                quantity=1,
            )
        ]

    legacy_checkout = {
        "customer_name": context.customer_name,
        "customer_phone": context.customer_phone,
        "customer_address": context.customer_address,
        "delivery_charge": context.delivery_charge,
        "total_amount": context.total_amount,
    }
    filled = {
        key: value
        for key, value in legacy_checkout.items()
        if value is not None and getattr(context.checkout, key) is None
    }
    checkout = context.checkout.model_copy(update=filled) if filled else context.checkout

    migrated = context.model_copy(update={"cart": cart, "checkout": checkout})
    return sync_legacy_fields(migrated)


def now_ms() -> float:
    return time.time() * 1000


def add_pending_image(
    pending_images: list[PendingImage],
    new_image: PendingImage,
) -> tuple[list[PendingImage], bool]:
    """Queues a recognized image; returns (images, was_limited)."""
    current = list(pending_images or [])
    new_product = new_image.recognition_result.product_id
    for index, image in enumerate(current):
        if image.recognition_result.product_id == new_product:
            current[index] = new_image
            return current, False
    if len(current) >= MAX_PENDING_IMAGES:
        return current, True
    return [*current, new_image], False


def is_within_batch_window(last_image_received_at: float | None, now: float | None = None) -> bool:
    if not last_image_received_at:
        return False
    elapsed = (now if now is not None else now_ms()) - last_image_received_at
    return elapsed < BATCH_WINDOW_MS


def is_batch_expired(last_image_received_at: float | None, now: float | None = None) -> bool:
    if not last_image_received_at:
        return True
    elapsed = (now if now is not None else now_ms()) - last_image_received_at
    return elapsed >= BATCH_EXPIRY_MS


def get_recognized_products(pending_images: list[PendingImage]) -> list[PendingImage]:
    return [image for image in pending_images or [] if image.recognition_result.success]


def reset_context(context: ConversationContext) -> ConversationContext:
    """Back to IDLE with an empty cart and checkout; metadata survives."""
    return sync_legacy_fields(
        context.model_copy(
            update={
                "state": ConversationState.IDLE,
                "cart": [],
                "checkout": Checkout(),
                "pending_images": [],
                "last_image_received_at": None,
                "current_variation_index": None,
                "collecting_size": None,
                "selected_size": None,
                "selected_color": None,
            }
        )
    )
