from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from shopbot.ai.base import LLMProvider
from shopbot.ai.schema import ActionData, Decision
from shopbot.ai.service import get_provider
from shopbot.conversation import replies
from shopbot.conversation.director import DirectorInput, HistoryTurn, direct
from shopbot.conversation.fast_lane import quick_form_prompt, try_fast_lane
from shopbot.conversation.state import (
    CartItem,
    Checkout,
    ConversationContext,
    ConversationState,
    PendingImage,
    RecognitionResult,
    add_pending_image,
    add_to_cart,
    apply_context_patch,
    calculate_cart_total,
    context_to_json,
    get_recognized_products,
    is_batch_expired,
    is_within_batch_window,
    migrate_legacy_context,
    now_ms,
    remove_from_cart,
    reset_context,
    sync_legacy_fields,
)
from shopbot.core.config import HISTORY_LIMIT
from shopbot.core.request_context import set_request_context
from shopbot.image_recognition.pipeline import FetchedImage, ImageFetchError, fetch_image, recognize_image
from shopbot.image_recognition.result import MatchResult
from shopbot.messenger.service import MessengerService, messenger_service
from shopbot.models.conversation import Conversation, Message
from shopbot.models.order import Order
from shopbot.models.product import Product
from shopbot.services.conversations import add_message, get_or_create_conversation, load_history
from shopbot.services.orders import OrderCreationError, create_order
from shopbot.services.product_search import search_products
from shopbot.services.settings import (
    SettingsCache,
    WorkspaceSettings,
    format_payment_details,
    get_cached_settings,
    get_delivery_charge,
)

logger = logging.getLogger(__name__)

PAYMENT_DETAILS_PLACEHOLDER = "{{PAYMENT_DETAILS}}"
ORDER_NUMBER_PLACEHOLDERS = ("{orderNumber}", "PENDING")
ORDER_PRODUCT_PREFIX = "ORDER_PRODUCT_"
VIEW_DETAILS_PREFIX = "VIEW_DETAILS_"

FAST_LANE_ACTIONS = {
    "CONFIRM": "TRANSITION_STATE",
    "DECLINE": "RESET_CONVERSATION",
    "COLLECT_NAME": "UPDATE_CHECKOUT",
    "COLLECT_PHONE": "UPDATE_CHECKOUT",
    "COLLECT_ADDRESS": "UPDATE_CHECKOUT",
    "GREETING": "SEND_RESPONSE",
    "CREATE_ORDER": "CREATE_ORDER",
}


@dataclass
class InboundMessage:
    page_id: str
    customer_psid: str
    text: str | None = None
    image_url: str | None = None
    postback_payload: str | None = None
    event_id: str | None = None


@dataclass
class Outcome:
    """A decision already applied to an in-memory copy of the context."""

    action: str
    response: str
    context: ConversationContext
    source: str
    confidence: float = 100


@dataclass
class ProcessResult:
    conversation_id: int
    action: str
    source: str
    response: str
    state: ConversationState
    order_number: str | None = None
    delivered: bool = False


def cart_item_from_product(product: Product, quantity: int = 1) -> CartItem:
    image_urls = product.image_urls or []
    return CartItem(
        product_id=str(product.id),
        product_name=product.name,
        product_price=float(product.price),
        quantity=quantity,
        image_url=image_urls[0] if image_urls else None,
        description=product.description,
        stock_quantity=product.stock_quantity,
        size_stock=product.size_stock,
        sizes=[str(size) for size in product.sizes or []],
        colors=[str(color) for color in product.colors or []],
    )


def _recognition_from_match(match: MatchResult, image_url: str | None) -> RecognitionResult:
    product = match.product
    image_urls = product.image_urls or []
    return RecognitionResult(
        success=True,
        product_id=str(product.id),
        product_name=product.name,
        product_price=float(product.price),
        image_url=image_urls[0] if image_urls else image_url,
        confidence=match.confidence,
        tier=match.tier,
        description=product.description,
        stock_quantity=product.stock_quantity,
        sizes=[str(size) for size in product.sizes or []],
        colors=[str(color) for color in product.colors or []],
    )


def _with_state(context: ConversationContext, state: ConversationState) -> ConversationContext:
    return sync_legacy_fields(context.model_copy(update={"state": state}))


def _workspace_product(db: Session, workspace_id: int, product_id: str | None) -> Product | None:
    if not product_id or not str(product_id).isdigit():
        return None
    product = db.get(Product, int(product_id))
    if product is None or product.workspace_id != workspace_id:
        return None
    return product


def _last_image_match(db: Session, workspace_id: int, context: ConversationContext) -> MatchResult | None:
    metadata = context.metadata
    product = _workspace_product(db, workspace_id, metadata.last_product_id)
    if product is None:
        return None
    return MatchResult(
        product=product,
        confidence=metadata.last_match_confidence or 0.0,
        tier=metadata.last_match_tier or "none",
    )


class ConversationOrchestrator:
    """Drives one inbound Messenger event from load to reply."""

    def __init__(
        self,
        *,
        llm_provider: LLMProvider | None = None,
        messenger: MessengerService | None = None,
        image_fetcher: Callable[..., FetchedImage] = fetch_image,
        settings_cache: SettingsCache | None = None,
    ) -> None:
        self._llm_provider = llm_provider
        self.messenger = messenger or messenger_service
        self.image_fetcher = image_fetcher
        self.settings_cache = settings_cache

    @property
    def llm_provider(self) -> LLMProvider:
        return self._llm_provider or get_provider()

    def process_message(self, db: Session, inbound: InboundMessage) -> ProcessResult | None:
        started = time.perf_counter()
        page = self.messenger.get_page(db, inbound.page_id)
        if page is None:
            logger.warning("Message for unknown page ignored", extra={"page_id": inbound.page_id})
            return None

        workspace_id = page.workspace_id
        settings = get_cached_settings(db, workspace_id, self.settings_cache)
        conversation = get_or_create_conversation(
            db,
            workspace_id=workspace_id,
            page_id=inbound.page_id,
            customer_psid=inbound.customer_psid,
        )
        set_request_context(workspace_id=str(workspace_id), conversation_id=str(conversation.id))

        context = migrate_legacy_context(conversation.context)
        try:
            state = ConversationState(conversation.current_state)
        except ValueError:
            state = context.state
        context = _with_state(context, state)

        try:
            outcome = self._decide(db, conversation, inbound, state, context, settings)
        except Exception:
            db.rollback()
            logger.exception("Failed to decide reply", extra={"state": state.value})
            return self._reply_only(db, conversation, inbound, state, replies.TECHNICAL_ERROR)

        if outcome is None:
            return None

        result = self._commit(db, conversation, inbound, outcome, settings)
        if result is not None:
            logger.info(
                "Message processed",
                extra={
                    "action": result.action,
                    "state": result.state.value,
                    "duration_ms": int((time.perf_counter() - started) * 1000),
                },
            )
        return result

    def _decide(
        self,
        db: Session,
        conversation: Conversation,
        inbound: InboundMessage,
        state: ConversationState,
        context: ConversationContext,
        settings: WorkspaceSettings,
    ) -> Outcome | None:
        workspace_id = conversation.workspace_id

        if inbound.postback_payload:
            return self._handle_postback(db, workspace_id, inbound.postback_payload, context, settings)

        if inbound.image_url:
            return self._handle_image(db, workspace_id, inbound.image_url, context, settings)

        text = (inbound.text or "").strip()
        if not text:
            return Outcome("SHOW_HELP", replies.NO_INPUT, context, source="default")

        fast = try_fast_lane(text, state, context, settings)
        if fast.matched:
            action = FAST_LANE_ACTIONS.get(fast.action, "SEND_RESPONSE")
            # confirming without a payment-digit step creates the order directly
            if (
                state == ConversationState.CONFIRMING_ORDER
                and fast.action == "CONFIRM"
                and fast.new_state == ConversationState.IDLE
            ):
                action = "CREATE_ORDER"
            updated = sync_legacy_fields(apply_context_patch(context, fast.context_patch))
            logger.info("Fast lane matched", extra={"action": action, "state": state.value})
            return Outcome(action, fast.response or "", updated, source="fast_lane")

        history = [
            HistoryTurn(sender=message.sender, message=message.message_text or "")
            for message in load_history(db, conversation.id, HISTORY_LIMIT)
        ]
        decision = direct(
            db,
            DirectorInput(
                user_message=text,
                current_state=state,
                context=context,
                workspace_id=workspace_id,
                settings=settings,
                image_result=_last_image_match(db, workspace_id, context),
                history=history,
            ),
            self.llm_provider,
        )
        if decision.confidence < settings.confidence_threshold:
            logger.info(
                "Low confidence decision",
                extra={"action": decision.action, "state": state.value},
            )
        return self._apply_decision(db, workspace_id, decision, context, settings)

    def _handle_postback(
        self,
        db: Session,
        workspace_id: int,
        payload: str,
        context: ConversationContext,
        settings: WorkspaceSettings,
    ) -> Outcome | None:
        if payload.startswith(ORDER_PRODUCT_PREFIX):
            product = _workspace_product(db, workspace_id, payload[len(ORDER_PRODUCT_PREFIX):])
            if product is None:
                logger.warning("Order postback for unknown product", extra={"action": payload})
                return None
            updated = context.model_copy(update={"cart": [cart_item_from_product(product)]})
            if settings.order_collection_style == "quick_form":
                target = ConversationState.AWAITING_CUSTOMER_DETAILS
                response = quick_form_prompt(updated, settings)
            else:
                target = ConversationState.COLLECTING_NAME
                response = replies.ASK_NAME
            return Outcome(
                "ADD_TO_CART",
                replies.finish(response, settings.use_emojis),
                _with_state(updated, target),
                source="postback",
            )

        if payload.startswith(VIEW_DETAILS_PREFIX):
            product = _workspace_product(db, workspace_id, payload[len(VIEW_DETAILS_PREFIX):])
            if product is None:
                logger.warning("Details postback for unknown product", extra={"action": payload})
                return None
            card = replies.product_card(
                name=product.name,
                price=float(product.price),
                description=product.description,
                stock=product.stock_quantity,
                category=product.category,
                colors=product.colors or [],
                sizes=product.sizes or [],
            )
            return Outcome("SEND_RESPONSE", replies.finish(card, settings.use_emojis), context, source="postback")

        logger.info("Unhandled postback payload", extra={"action": payload})
        return None

    def _handle_image(
        self,
        db: Session,
        workspace_id: int,
        image_url: str,
        context: ConversationContext,
        settings: WorkspaceSettings,
    ) -> Outcome:
        try:
            match = recognize_image(
                db,
                workspace_id,
                image_url=image_url,
                provider=self.llm_provider,
                fetcher=self.image_fetcher,
            )
        except ImageFetchError as exc:
            logger.warning("Image could not be fetched", extra={"error": str(exc)})
            return Outcome(
                "SEND_RESPONSE",
                replies.finish(replies.IMAGE_PROCESSING_ERROR, settings.use_emojis),
                context,
                source="image",
            )

        metadata = context.metadata.model_copy(update={"last_image_hash": match.image_hash, "last_image_url": image_url})
        if not match.matched:
            return Outcome(
                "SEND_RESPONSE",
                replies.finish(replies.IMAGE_NOT_RECOGNIZED, settings.use_emojis),
                context.model_copy(update={"metadata": metadata}),
                source="image",
            )

        product = match.product
        metadata = metadata.model_copy(
            update={
                "last_product_id": str(product.id),
                "last_match_confidence": match.confidence,
                "last_match_tier": match.tier,
            }
        )
        context = context.model_copy(update={"metadata": metadata})
        received_at = now_ms()

        if settings.behavior_rules.multi_product:
            batched = self._batch_image(match, image_url, context, received_at, settings)
            if batched is not None:
                return batched

        pending = [
            PendingImage(url=image_url, timestamp=received_at, recognition_result=_recognition_from_match(match, image_url))
        ]
        updated = context.model_copy(
            update={
                "cart": [cart_item_from_product(product)],
                "checkout": context.checkout.model_copy(update={"delivery_charge": None, "total_amount": None}),
                "pending_images": pending if settings.behavior_rules.multi_product else [],
                "last_image_received_at": received_at,
            }
        )
        logger.info(
            "Image matched product",
            extra={"tier": match.tier, "state": ConversationState.CONFIRMING_PRODUCT.value},
        )
        return Outcome(
            "ADD_TO_CART",
            replies.finish(replies.image_match_found(product.name, float(product.price)), settings.use_emojis),
            _with_state(updated, ConversationState.CONFIRMING_PRODUCT),
            source="image",
            confidence=match.confidence,
        )

    def _batch_image(
        self,
        match: MatchResult,
        image_url: str,
        context: ConversationContext,
        received_at: float,
        settings: WorkspaceSettings,
    ) -> Outcome | None:
        """Queues the image with the previous ones; None when it starts a new batch."""
        last = context.last_image_received_at
        if is_batch_expired(last, received_at) or not is_within_batch_window(last, received_at):
            return None
        if not context.pending_images:
            return None

        new_image = PendingImage(
            url=image_url,
            timestamp=received_at,
            recognition_result=_recognition_from_match(match, image_url),
        )
        pending, was_limited = add_pending_image(context.pending_images, new_image)
        recognized = get_recognized_products(pending)
        if len(recognized) < 2:
            return None

        header = f"📦 {len(recognized)}টা product পেয়েছি:\n\n"
        response = replies.pending_list(recognized, header)
        if was_limited:
            response = "⚠️ একবারে সর্বোচ্চ ৫টা product নেওয়া যাবে।\n\n" + response
        updated = context.model_copy(update={"pending_images": pending, "last_image_received_at": received_at})
        return Outcome(
            "TRANSITION_STATE",
            replies.finish(response, settings.use_emojis),
            _with_state(updated, ConversationState.SELECTING_CART_ITEMS),
            source="image",
            confidence=match.confidence,
        )

    def _apply_decision(
        self,
        db: Session,
        workspace_id: int,
        decision: Decision,
        context: ConversationContext,
        settings: WorkspaceSettings,
    ) -> Outcome:
        updated = context
        # an order is built from the stored cart, never from a model-supplied one
        if decision.updated_context is not None and decision.action != "CREATE_ORDER":
            patch = {name: getattr(decision.updated_context, name) for name in decision.updated_context.model_fields_set}
            if patch.get("checkout") is not None:
                # merged field by field so omitted customer details survive
                patch["checkout"] = updated.checkout.model_copy(
                    update=patch["checkout"].model_dump(exclude_unset=True)
                )
            updated = apply_context_patch(updated, patch)

        state = decision.new_state or updated.state
        response = decision.response
        action = decision.action
        data = decision.action_data

        if action == "ADD_TO_CART":
            product = _workspace_product(db, workspace_id, data.product_id)
            if product is not None:
                item = cart_item_from_product(product, quantity=data.quantity or 1)
            elif data.product_name and data.product_price is not None:
                item = CartItem(
                    product_id=data.product_id,
                    product_name=data.product_name,
                    product_price=data.product_price,
                    quantity=data.quantity or 1,
                )
            else:
                item = None
                logger.warning("ADD_TO_CART for unknown product ignored", extra={"action": action})
            if item is not None:
                updated = updated.model_copy(update={"cart": add_to_cart(updated.cart, item)})
        elif action == "REMOVE_FROM_CART":
            updated = updated.model_copy(update={"cart": remove_from_cart(updated.cart, data.product_id)})
        elif action == "UPDATE_CHECKOUT":
            if data is not None:
                updated = updated.model_copy(update={"checkout": self._updated_checkout(updated, data, settings)})
        elif action == "SEARCH_PRODUCTS":
            query = data.search_query
            products = search_products(db, query, workspace_id)
            if not products:
                response = replies.SEARCH_NO_RESULTS.format(query=query)
            elif len(products) == 1:
                found = products[0]
                updated = updated.model_copy(update={"cart": [cart_item_from_product(found)]})
                state = ConversationState.CONFIRMING_PRODUCT
                response = replies.image_match_found(found.name, float(found.price))
            else:
                response = replies.search_results([(found.name, float(found.price)) for found in products])
            response = replies.finish(response, settings.use_emojis)
        elif action == "SHOW_HELP":
            response = replies.finish(replies.help_text(), settings.use_emojis)
        elif action == "RESET_CONVERSATION":
            updated = reset_context(updated)
            state = ConversationState.IDLE

        return Outcome(action, response, _with_state(updated, state), source="director", confidence=decision.confidence)

    def _updated_checkout(self, context: ConversationContext, data: ActionData, settings: WorkspaceSettings) -> Checkout:
        checkout = context.checkout
        delivery_charge = data.delivery_charge
        if data.customer_address:
            delivery_charge = get_delivery_charge(data.customer_address, settings)

        total_amount = data.total_amount
        if total_amount is None and delivery_charge is not None and context.cart:
            total_amount = calculate_cart_total(context.cart) + delivery_charge

        return checkout.model_copy(
            update={
                "customer_name": data.customer_name or checkout.customer_name,
                "customer_phone": data.customer_phone or checkout.customer_phone,
                "customer_address": data.customer_address or checkout.customer_address,
                "delivery_charge": delivery_charge if delivery_charge is not None else checkout.delivery_charge,
                "total_amount": total_amount if total_amount is not None else checkout.total_amount,
            }
        )

    def _commit(
        self,
        db: Session,
        conversation: Conversation,
        inbound: InboundMessage,
        outcome: Outcome,
        settings: WorkspaceSettings,
    ) -> ProcessResult | None:
        context = outcome.context
        response = outcome.response
        action = outcome.action
        customer_name = context.checkout.customer_name or conversation.customer_name
        order: Order | None = None

        try:
            if action == "CREATE_ORDER":
                try:
                    order = create_order(
                        db,
                        workspace_id=conversation.workspace_id,
                        fb_page_id=conversation.fb_page_id,
                        conversation_id=conversation.id,
                        context=context,
                    )
                except OrderCreationError as exc:
                    logger.warning("Order could not be created", extra={"error": str(exc)})
                    db.rollback()
                    return self._reply_only(
                        db, conversation, inbound, ConversationState(conversation.current_state), replies.TECHNICAL_ERROR
                    )
                for placeholder in ORDER_NUMBER_PLACEHOLDERS:
                    response = response.replace(placeholder, order.order_number)
                if settings.payment_message and not order.payment_last_two_digits:
                    response += "\n\n" + settings.payment_message
                context = reset_context(context)

            response = response.replace(PAYMENT_DETAILS_PLACEHOLDER, format_payment_details(settings))
            metadata = context.metadata.model_copy(update={"message_count": context.metadata.message_count + 1})
            context = sync_legacy_fields(context.model_copy(update={"metadata": metadata}))

            conversation.current_state = context.state.value
            conversation.context = context_to_json(context)
            conversation.customer_name = customer_name
            conversation.last_message_at = datetime.now(timezone.utc)
            bot_message = add_message(db, conversation_id=conversation.id, sender="bot", text=response, status="pending")
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to persist conversation update", extra={"action": action})
            return None

        delivered = self._send(db, inbound, bot_message, response)
        return ProcessResult(
            conversation_id=conversation.id,
            action=action,
            source=outcome.source,
            response=response,
            state=context.state,
            order_number=order.order_number if order is not None else None,
            delivered=delivered,
        )

    def _reply_only(
        self,
        db: Session,
        conversation: Conversation,
        inbound: InboundMessage,
        state: ConversationState,
        text: str,
    ) -> ProcessResult | None:
        """Sends a canned reply without touching the conversation state."""
        try:
            bot_message = add_message(db, conversation_id=conversation.id, sender="bot", text=text, status="pending")
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to store fallback reply")
            return None
        delivered = self._send(db, inbound, bot_message, text)
        return ProcessResult(
            conversation_id=conversation.id,
            action="SEND_RESPONSE",
            source="error",
            response=text,
            state=state,
            delivered=delivered,
        )

    def _send(self, db: Session, inbound: InboundMessage, bot_message: Message, text: str) -> bool:
        result = self.messenger.send_text(
            db,
            page_id=inbound.page_id,
            recipient_psid=inbound.customer_psid,
            text=text,
        )
        bot_message.status = "sent" if result.ok else "failed"
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to update reply status")
        return result.ok
