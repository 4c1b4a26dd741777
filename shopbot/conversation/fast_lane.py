"""Deterministic, state-indexed pattern matcher that answers routine input without the LLM.

Pure: no storage access and no network. The orchestrator applies the returned
context patch and performs every side effect.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable

from shopbot.conversation import replies
from shopbot.conversation.classifier import get_interruption_type, is_details_request, is_order_intent
from shopbot.conversation.keywords import detect_all_intent, detect_item_numbers
from shopbot.conversation.state import (
    CartItem,
    Checkout,
    ConversationContext,
    ConversationState,
    PendingImage,
    calculate_cart_total,
    get_recognized_products,
)
from shopbot.services.settings import WorkspaceSettings, get_delivery_charge

logger = logging.getLogger(__name__)

PHONE_PATTERNS = (
    re.compile(r"^01[3-9]\d{8}$", re.ASCII),
    re.compile(r"^\+8801[3-9]\d{8}$", re.ASCII),
    re.compile(r"^8801[3-9]\d{8}$", re.ASCII),
    re.compile(r"^01[3-9]\s?\d{4}\s?\d{4}$", re.ASCII),
)

YES_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^(yes|yep|yeah|yup|sure|ok|okay|y)$",
        r"^(ji|jii|hae|haan|ha|hum|humm)$",
        r"^(হ্যাঁ|জি|ঠিক আছে|আছে|হুম|হবে)$",
        r"^(order korbo|order koro|order dibo|order dao|order chai)$",
        r"^(nibo|nebo|kinbo|keno|kinte chai)$",
        r"^(chai|chae|lagbe|hobe)$",
        r"^(confirm|confirmed|confirm koro|confirm korbo)$",
        r"^(অর্ডার করব|অর্ডার করবো|অর্ডার দিব|অর্ডার দাও|অর্ডার চাই)$",
        r"^(নিব|নেব|নিবো|কিনব|কিনবো|কিনতে চাই)$",
        r"^(চাই|লাগবে|হবে)$",
        r"order\s*korbo",
        r"order\s*chai",
        r"nite\s*chai",
        r"kinte\s*chai",
    )
)

NO_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^(no|nope|nah|n|cancel)$",
        r"^(na|nai|nahi)$",
        r"^(না|নাই|নাহ|ভুল|বাতিল)$",
    )
)

CANCEL_PATTERN = re.compile(r"^(no|nope|cancel|na|nai|না|নাই|বাতিল)$", re.IGNORECASE)

GREETING_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"^(hi|hello|hey|greetings)$",
        r"^(assalamualaikum|salam|salaam)$",
        r"^(হাই|হ্যালো|আসসালামু আলাইকুম)$",
    )
)

# 2-50 letters or spaces, Latin or Bengali script
NAME_PATTERN = re.compile(r"^[a-zA-Z\u0980-\u09FF\s]{2,50}$")
PAYMENT_DIGITS_PATTERN = re.compile(r"^\d{2}$", re.ASCII)
MIN_ADDRESS_LENGTH = 10

_BANGLA_DIGITS = str.maketrans("০১২৩৪৫৬৭৮৯", "0123456789")


@dataclass
class FastLaneResult:
    matched: bool
    action: str | None = None
    response: str | None = None
    new_state: ConversationState | None = None
    context_patch: dict[str, Any] = field(default_factory=dict)
    extracted: dict[str, str] = field(default_factory=dict)


NO_MATCH = FastLaneResult(matched=False)


def _matched(
    action: str,
    response: str,
    new_state: ConversationState,
    settings: WorkspaceSettings,
    patch: dict[str, Any] | None = None,
    extracted: dict[str, str] | None = None,
) -> FastLaneResult:
    context_patch = {"state": new_state}
    context_patch.update(patch or {})
    return FastLaneResult(
        matched=True,
        action=action,
        response=replies.finish(response, settings.use_emojis),
        new_state=new_state,
        context_patch=context_patch,
        extracted=extracted or {},
    )


def _reset_patch() -> dict[str, Any]:
    return {
        "cart": [],
        "checkout": Checkout(),
        "pending_images": [],
        "last_image_received_at": None,
        "current_variation_index": None,
        "collecting_size": None,
    }


def is_yes(text: str) -> bool:
    return any(pattern.search(text) for pattern in YES_PATTERNS)


def is_no(text: str) -> bool:
    return any(pattern.search(text) for pattern in NO_PATTERNS)


def is_greeting(text: str) -> bool:
    return any(pattern.search(text) for pattern in GREETING_PATTERNS)


def is_valid_phone(phone: str) -> bool:
    return any(pattern.search(phone) for pattern in PHONE_PATTERNS)


def normalize_phone(phone: str) -> str:
    """Keeps the last 11 digits, i.e. the 01XXXXXXXXX national form."""
    digits = re.sub(r"[^0-9]", "", phone.translate(_BANGLA_DIGITS))
    if len(digits) >= 11:
        return digits[-11:]
    return digits


def interruption_reply(category: str, context: ConversationContext, settings: WorkspaceSettings) -> str:
    messages = settings.fast_lane_messages
    charges = settings.delivery_charges
    if category == "delivery":
        return messages.delivery_info or (
            "🚚 Delivery Information:\n"
            f"• ঢাকার মধ্যে: ৳{replies.taka(charges.inside_dhaka)}\n"
            f"• ঢাকার বাইরে: ৳{replies.taka(charges.outside_dhaka)}\n"
            f"• Delivery সময়: {settings.delivery_time}"
        )
    if category == "payment":
        if messages.payment_info:
            return messages.payment_info
        methods = settings.payment_methods
        names = [
            label
            for label, enabled in (
                ("bKash", methods.bkash.enabled),
                ("Nagad", methods.nagad.enabled),
                ("Cash on Delivery", methods.cod.enabled),
            )
            if enabled
        ]
        return "💳 Payment Methods:\nআমরা payment methods গ্রহণ করি: " + ", ".join(names or ["bKash", "Nagad"])
    if category == "return":
        return messages.return_policy or replies.RETURN_POLICY
    if category == "urgency":
        return messages.urgency_response or replies.URGENCY_RESPONSE
    if category == "objection":
        return messages.objection_response or replies.OBJECTION_RESPONSE
    if category == "seller":
        return messages.seller_info or replies.SELLER_INFO
    # price / size
    first = context.cart[0] if context.cart else None
    return replies.product_details(first) or replies.DETAILS_ON_CARD


def _answer_and_reprompt(
    text: str,
    state: ConversationState,
    context: ConversationContext,
    settings: WorkspaceSettings,
    reprompt: str,
) -> FastLaneResult | None:
    category = get_interruption_type(text)
    if category:
        body = interruption_reply(category, context, settings)
    elif is_details_request(text):
        body = replies.product_details(context.cart[0] if context.cart else None)
        if body is None:
            return None
    else:
        return None
    return _matched("CONFIRM", f"{body}\n\n{reprompt}", state, settings)


def try_fast_lane(
    text: str,
    state: ConversationState | str,
    context: ConversationContext,
    settings: WorkspaceSettings | None = None,
) -> FastLaneResult:
    settings = settings or WorkspaceSettings()
    trimmed = (text or "").strip()
    if not trimmed:
        return NO_MATCH

    if is_greeting(trimmed):
        return _matched("GREETING", settings.greeting or replies.DEFAULT_GREETING, ConversationState.IDLE, settings)

    try:
        current = ConversationState(state)
    except ValueError:
        return NO_MATCH

    handler = _HANDLERS.get(current)
    if handler is None:
        return NO_MATCH
    return handler(trimmed, context, settings)


def _handle_confirming_product(text: str, context: ConversationContext, settings: WorkspaceSettings) -> FastLaneResult:
    state = ConversationState.CONFIRMING_PRODUCT
    answered = _answer_and_reprompt(text, state, context, settings, replies.ASK_PRODUCT_CONFIRM)
    if answered:
        return answered

    if is_yes(text):
        product = context.cart[0] if context.cart else None
        if product is not None and product.stock_quantity == 0:
            template = settings.out_of_stock_message or replies.DEFAULT_OUT_OF_STOCK
            return _matched(
                "CONFIRM",
                template.replace("{productName}", product.product_name),
                ConversationState.IDLE,
                settings,
                _reset_patch(),
            )

        if settings.order_collection_style == "quick_form":
            return _matched(
                "CONFIRM",
                quick_form_prompt(context, settings),
                ConversationState.AWAITING_CUSTOMER_DETAILS,
                settings,
            )
        return _matched(
            "CONFIRM",
            settings.fast_lane_messages.product_confirm,
            ConversationState.COLLECTING_NAME,
            settings,
        )

    if is_no(text):
        return _matched(
            "DECLINE",
            settings.fast_lane_messages.product_decline,
            ConversationState.IDLE,
            settings,
            _reset_patch(),
        )
    return NO_MATCH


def quick_form_prompt(context: ConversationContext, settings: WorkspaceSettings) -> str:
    if len(context.cart) > 1:
        return replies.MULTI_PRODUCT_QUICK_FORM_PROMPT
    product = context.cart[0] if context.cart else None
    prompt = settings.quick_form_prompt or replies.DEFAULT_QUICK_FORM_PROMPT
    if product is not None and product.sizes:
        prompt += f"\nসাইজ: ({'/'.join(product.sizes)})"
    if product is not None and len(product.colors) > 1:
        prompt += f"\nকালার: ({'/'.join(product.colors)})"
    prompt += "\nপরিমাণ: (1 হলে লিখতে হবে না)"
    return prompt


def _handle_collecting_name(text: str, context: ConversationContext, settings: WorkspaceSettings) -> FastLaneResult:
    state = ConversationState.COLLECTING_NAME
    answered = _answer_and_reprompt(text, state, context, settings, replies.ASK_NAME_INLINE)
    if answered:
        return answered

    if is_order_intent(text):
        return _matched("CONFIRM", replies.ALREADY_ORDERING, state, settings)

    if NAME_PATTERN.match(text):
        name = replies.capitalize_words(text)
        message = settings.fast_lane_messages.name_collected.replace("{name}", name)
        return _matched(
            "COLLECT_NAME",
            message,
            ConversationState.COLLECTING_PHONE,
            settings,
            {"checkout": context.checkout.model_copy(update={"customer_name": name}), "customer_name": name},
            {"name": name},
        )
    return NO_MATCH


def _handle_collecting_phone(text: str, context: ConversationContext, settings: WorkspaceSettings) -> FastLaneResult:
    state = ConversationState.COLLECTING_PHONE
    cleaned = re.sub(r"\s", "", text)
    if is_valid_phone(cleaned):
        phone = normalize_phone(cleaned)
        return _matched(
            "COLLECT_PHONE",
            settings.fast_lane_messages.phone_collected,
            ConversationState.COLLECTING_ADDRESS,
            settings,
            {"checkout": context.checkout.model_copy(update={"customer_phone": phone}), "customer_phone": phone},
            {"phone": phone},
        )

    answered = _answer_and_reprompt(text, state, context, settings, replies.ASK_PHONE)
    if answered:
        return answered

    if is_order_intent(text):
        return _matched(
            "CONFIRM",
            settings.fast_lane_messages.product_confirm,
            ConversationState.COLLECTING_NAME,
            settings,
        )

    return _matched("CONFIRM", replies.INVALID_PHONE, state, settings)


def _handle_collecting_address(text: str, context: ConversationContext, settings: WorkspaceSettings) -> FastLaneResult:
    state = ConversationState.COLLECTING_ADDRESS
    # long free text is an address even when it contains question keywords
    if len(text) >= MIN_ADDRESS_LENGTH:
        address = text.strip()
        delivery_charge = get_delivery_charge(address, settings)
        total_amount = calculate_cart_total(context.cart) + delivery_charge
        summary = replies.order_summary(
            customer_name=context.checkout.customer_name or "Customer",
            cart=context.cart,
            address=address,
            delivery_charge=delivery_charge,
            total_amount=total_amount,
            phone=context.checkout.customer_phone or context.customer_phone,
        )
        checkout = context.checkout.model_copy(
            update={
                "customer_address": address,
                "delivery_charge": delivery_charge,
                "total_amount": total_amount,
            }
        )
        return _matched(
            "COLLECT_ADDRESS",
            summary,
            ConversationState.CONFIRMING_ORDER,
            settings,
            {
                "checkout": checkout,
                "customer_address": address,
                "delivery_charge": delivery_charge,
                "total_amount": total_amount,
            },
            {"address": address},
        )

    answered = _answer_and_reprompt(text, state, context, settings, replies.ASK_ADDRESS)
    if answered:
        return answered
    return NO_MATCH


def _handle_confirming_order(text: str, context: ConversationContext, settings: WorkspaceSettings) -> FastLaneResult:
    state = ConversationState.CONFIRMING_ORDER
    messages = settings.fast_lane_messages

    if is_yes(text):
        if not settings.collect_payment_digits:
            # orchestrator turns this CONFIRM into CREATE_ORDER
            return _matched("CONFIRM", messages.order_confirmed, ConversationState.IDLE, settings)

        total_amount = context.checkout.total_amount
        if messages.payment_instructions:
            response = messages.payment_instructions.replace("{totalAmount}", replies.taka(total_amount)).replace(
                "{paymentNumber}", "{{PAYMENT_DETAILS}}"
            )
        else:
            response = replies.payment_instructions(total_amount, "{{PAYMENT_DETAILS}}")
        return _matched("CONFIRM", response, ConversationState.COLLECTING_PAYMENT_DIGITS, settings)

    if is_no(text):
        return _matched("DECLINE", messages.order_cancelled, ConversationState.IDLE, settings, _reset_patch())

    answered = _answer_and_reprompt(text, state, context, settings, replies.ASK_ORDER_CONFIRM)
    if answered:
        return answered
    return NO_MATCH


def _handle_collecting_payment_digits(
    text: str, context: ConversationContext, settings: WorkspaceSettings
) -> FastLaneResult:
    state = ConversationState.COLLECTING_PAYMENT_DIGITS
    messages = settings.fast_lane_messages
    digits = text.translate(_BANGLA_DIGITS)

    if PAYMENT_DIGITS_PATTERN.match(digits):
        name = context.checkout.customer_name or "Customer"
        if messages.payment_review:
            response = messages.payment_review.replace("{name}", name).replace("{digits}", digits)
        else:
            response = replies.payment_review(name, digits)
        return _matched(
            "CREATE_ORDER",
            response,
            ConversationState.IDLE,
            settings,
            {"checkout": context.checkout.model_copy(update={"payment_last_two_digits": digits})},
        )

    answered = _answer_and_reprompt(text, state, context, settings, replies.ASK_PAYMENT_DIGITS)
    if answered:
        return answered

    return _matched("CONFIRM", messages.invalid_payment_digits or replies.invalid_payment_digits(), state, settings)


def _cart_from_pending(images: list[PendingImage]) -> list[CartItem]:
    cart = []
    for image in images:
        result = image.recognition_result
        cart.append(
            CartItem(
                product_id=result.product_id,
                product_name=result.product_name,
                product_price=result.product_price or 0,
                image_url=result.image_url,
                description=result.description,
                stock_quantity=result.stock_quantity,
                quantity=1,
                sizes=result.sizes,
                colors=result.colors,
            )
        )
    return cart


def _needs_variation(item: CartItem) -> bool:
    return bool(item.sizes) or len(item.colors) > 1


def _variation_prompt(item: CartItem, needs_size: bool) -> str:
    if needs_size:
        return f'"{item.product_name}" এর সাইজ বলুন:\nAvailable: {", ".join(item.sizes)}'
    return f'"{item.product_name}" এর কালার বলুন:\nAvailable: {", ".join(item.colors)}'


def _select_cart(cart: list[CartItem], settings: WorkspaceSettings) -> FastLaneResult:
    summary = replies.selection_summary(cart)
    cleared = {"cart": cart, "pending_images": [], "last_image_received_at": None}

    first_index = next((index for index, item in enumerate(cart) if _needs_variation(item)), None)
    if first_index is None:
        return _matched(
            "CONFIRM",
            summary + replies.ASK_NAME,
            ConversationState.COLLECTING_NAME,
            settings,
            cleared,
        )

    first = cart[first_index]
    needs_size = bool(first.sizes)
    icon = "📏 " if needs_size else "🎨 "
    return _matched(
        "CONFIRM",
        summary + icon + _variation_prompt(first, needs_size),
        ConversationState.COLLECTING_MULTI_VARIATIONS,
        settings,
        {**cleared, "current_variation_index": first_index, "collecting_size": needs_size},
    )


def _handle_selecting_cart_items(
    text: str, context: ConversationContext, settings: WorkspaceSettings
) -> FastLaneResult:
    state = ConversationState.SELECTING_CART_ITEMS
    recognized = get_recognized_products(context.pending_images)

    if not recognized:
        return _matched(
            "DECLINE",
            "দুঃখিত, কোনো product পাওয়া যায়নি। 😔\n\nনতুন product এর ছবি পাঠান।",
            ConversationState.IDLE,
            settings,
            _reset_patch(),
        )

    if detect_all_intent(text):
        return _select_cart(_cart_from_pending(recognized), settings)

    numbers = detect_item_numbers(text)
    if numbers:
        limit = len(recognized)
        if any(number > limit for number in numbers):
            return _matched(
                "CONFIRM",
                f"⚠️ ভুল নম্বর! শুধু {limit}টা product আছে।\n\nসঠিক নম্বর দিন (1-{limit}) অথবা \"সবগুলো\" লিখুন।",
                state,
                settings,
            )
        selected = [recognized[number - 1] for number in numbers]
        return _select_cart(_cart_from_pending(selected), settings)

    if CANCEL_PATTERN.match(text):
        return _matched(
            "DECLINE",
            "কোনো সমস্যা নেই! 😊\n\nঅন্য product এর ছবি পাঠান।",
            ConversationState.IDLE,
            settings,
            _reset_patch(),
        )

    return _matched("CONFIRM", replies.pending_list(recognized, "⚠️ সঠিক নম্বর দিন!\n\nআপনার list:\n"), state, settings)


def _next_variation(cart: list[CartItem], start: int, settings: WorkspaceSettings) -> FastLaneResult:
    for index in range(start, len(cart)):
        item = cart[index]
        needs_size = bool(item.sizes) and not item.selected_size
        needs_color = len(item.colors) > 1 and not item.selected_color
        if needs_size or needs_color:
            return _matched(
                "CONFIRM",
                f"📦 Product {index + 1}/{len(cart)}\n\n{_variation_prompt(item, needs_size)}",
                ConversationState.COLLECTING_MULTI_VARIATIONS,
                settings,
                {"cart": cart, "current_variation_index": index, "collecting_size": needs_size},
            )

    return _matched(
        "CONFIRM",
        f"✅ সব product এর সাইজ নেওয়া হয়েছে! 🎉\n\nএখন {replies.ASK_NAME}",
        ConversationState.COLLECTING_NAME,
        settings,
        {"cart": cart, "current_variation_index": None, "collecting_size": None},
    )


def _handle_collecting_multi_variations(
    text: str, context: ConversationContext, settings: WorkspaceSettings
) -> FastLaneResult:
    state = ConversationState.COLLECTING_MULTI_VARIATIONS
    cart = list(context.cart)
    index = context.current_variation_index or 0
    collecting_size = True if context.collecting_size is None else context.collecting_size

    if not cart:
        return _matched(
            "DECLINE",
            "দুঃখিত, cart এ কোনো product নেই। 😔",
            ConversationState.IDLE,
            settings,
            _reset_patch(),
        )

    if CANCEL_PATTERN.match(text):
        return _matched(
            "DECLINE",
            "অর্ডার বাতিল হয়েছে। 😊\n\nনতুন product এর ছবি পাঠান।",
            ConversationState.IDLE,
            settings,
            _reset_patch(),
        )

    if index >= len(cart):
        return _matched(
            "CONFIRM",
            f"🎉 দারুণ!\n\n{replies.ASK_NAME}",
            ConversationState.COLLECTING_NAME,
            settings,
            {"current_variation_index": None, "collecting_size": None},
        )

    item = cart[index]
    wanted = text.strip().lower()

    if collecting_size and item.sizes:
        size = next((value for value in item.sizes if value.lower() == wanted), None)
        if size is None:
            return _matched(
                "CONFIRM",
                f'⚠️ "{text}" সাইজ নেই!\n\n"{item.product_name}" এ available সাইজ:\n'
                f"{', '.join(item.sizes)}\n\nউপরের থেকে একটা সাইজ লিখুন:",
                state,
                settings,
            )
        cart[index] = item.model_copy(update={"selected_size": size})
        if len(item.colors) > 1:
            return _matched(
                "CONFIRM",
                f'✅ সাইজ: {size}\n\nএখন "{item.product_name}" এর কালার বলুন:\nAvailable: {", ".join(item.colors)}',
                state,
                settings,
                {"cart": cart, "collecting_size": False},
            )
        return _next_variation(cart, index + 1, settings)

    if not collecting_size and len(item.colors) > 1:
        color = next((value for value in item.colors if value.lower() == wanted), None)
        if color is None:
            return _matched(
                "CONFIRM",
                f'⚠️ "{text}" কালার নেই!\n\n"{item.product_name}" এ available কালার:\n'
                f"{', '.join(item.colors)}\n\nউপরের থেকে একটা কালার লিখুন:",
                state,
                settings,
            )
        cart[index] = item.model_copy(update={"selected_color": color})
        return _next_variation(cart, index + 1, settings)

    return _next_variation(cart, index + 1, settings)


@dataclass
class QuickFormFields:
    name: str | None = None
    phone: str | None = None
    address: str | None = None
    size: str | None = None
    color: str | None = None
    quantity: int = 1


_LABELED = {
    "name": re.compile(r"(?:নাম|Name)\s*[:\-]\s*([^\n]+)", re.IGNORECASE),
    "phone": re.compile(r"(?:ফোন|Phone|Mobile|মোবাইল)\s*[:\-]\s*([^\n]+)", re.IGNORECASE),
    "address": re.compile(
        r"(?:ঠিকানা|Address)\s*[:\-]\s*([\s\S]+?)"
        r"(?=(?:নাম|Name|ফোন|Phone|সাইজ|Size|কালার|Color|পরিমাণ|Quantity|$))",
        re.IGNORECASE,
    ),
    "size": re.compile(r"(?:সাইজ|Size|Saiz)\s*[:\-]\s*([^\n]+)", re.IGNORECASE),
    "color": re.compile(r"(?:কালার|Color|Kalar|রং)\s*[:\-]\s*([^\n]+)", re.IGNORECASE),
    "quantity": re.compile(r"(?:পরিমাণ|Quantity|Qty|সংখ্যা)\s*[:\-]\s*(\d+)", re.IGNORECASE),
}
_PHONE_ANCHOR = re.compile(r"01[3-9]\d{8}|^\+?880", re.ASCII)
_SIZE_LINE = re.compile(r"^(xs|s|m|l|xl|xxl|xxxl)$", re.IGNORECASE)
_NUMERIC_SIZE_LINE = re.compile(r"^(2[8-9]|3[0-9]|4[0-8])$")
_QUANTITY_LINE = re.compile(
    r"^[২-৯]$|^[2-9]$|^[১-৯][০-৯]$|^[1-9][0-9]$|^[১-৯][০-৯]{2}$|^[1-9][0-9]{2}$"
)


def _digits_only(line: str) -> str:
    return re.sub(r"[^0-9]", "", line.translate(_BANGLA_DIGITS))


def parse_quick_form(text: str, available_colors: list[str] | None = None) -> QuickFormFields:
    """Labeled fields first, then positional lines for whatever is still missing."""
    fields = QuickFormFields()
    available_colors = available_colors or []

    for key in ("name", "phone", "address", "size", "color"):
        match = _LABELED[key].search(text)
        if match:
            value = match.group(1).strip()
            setattr(fields, key, value.upper() if key == "size" else value)
    quantity_match = _LABELED["quantity"].search(text)
    if quantity_match:
        fields.quantity = int(quantity_match.group(1)) or 1

    if fields.name and fields.phone and fields.address:
        return fields

    lines = [line.strip() for line in text.split("\n") if line.strip()]
    phone_index = next(
        (index for index, line in enumerate(lines) if _PHONE_ANCHOR.search(_digits_only(line))),
        None,
    )

    if len(lines) >= 3:
        if phone_index is None:
            fields.name = fields.name or lines[0]
            fields.phone = fields.phone or lines[1]
            fields.address = fields.address or "\n".join(lines[2:])
            return fields

        fields.phone = fields.phone or lines[phone_index]
        if phone_index > 0 and not fields.name:
            fields.name = lines[0]
        if phone_index < len(lines) - 1 and not fields.address:
            remaining = lines[phone_index + 1 :]
            # trailing size / quantity / colour lines are peeled off the address
            cursor = len(remaining) - 1
            while cursor >= 0 and cursor >= len(remaining) - 4:
                line = remaining[cursor]
                is_numeric_size = bool(_NUMERIC_SIZE_LINE.match(line))
                if not fields.size and (_SIZE_LINE.match(line) or is_numeric_size):
                    fields.size = line.upper()
                    del remaining[cursor]
                elif fields.quantity == 1 and _QUANTITY_LINE.match(line) and not is_numeric_size:
                    fields.quantity = int(line.translate(_BANGLA_DIGITS)) or 1
                    del remaining[cursor]
                elif not fields.color and any(color.lower() == line.lower() for color in available_colors):
                    fields.color = replies.capitalize_words(line)
                    del remaining[cursor]
                cursor -= 1
            fields.address = "\n".join(remaining)
    elif len(lines) == 2 and phone_index is not None:
        fields.phone = fields.phone or lines[phone_index]
        fields.name = fields.name or lines[1 - phone_index]

    return fields


def _stock_error(item: CartItem | None, size: str | None, quantity: int) -> str | None:
    if item is None:
        return None
    if size and item.size_stock:
        entry = next(
            (row for row in item.size_stock if str(row.get("size", "")).upper() == size.upper()),
            None,
        )
        if entry is not None:
            available = int(entry.get("quantity") or 0)
            if quantity > available:
                if available == 0:
                    return f'দুঃখিত! "{size}" সাইজ এখন স্টকে নেই। অন্য সাইজ বেছে নিন।'
                return (
                    f'দুঃখিত! "{size}" সাইজে মাত্র {available} পিস আছে। '
                    f"আপনি সর্বোচ্চ {available} পিস অর্ডার করতে পারবেন।"
                )
        return None
    if item.stock_quantity is not None and quantity > item.stock_quantity:
        if item.stock_quantity == 0:
            return "দুঃখিত! এই প্রোডাক্ট এখন স্টকে নেই।"
        return (
            f"দুঃখিত! এই প্রোডাক্টে মাত্র {item.stock_quantity} পিস আছে। "
            f"আপনি সর্বোচ্চ {item.stock_quantity} পিস অর্ডার করতে পারবেন।"
        )
    return None


def _handle_awaiting_customer_details(
    text: str, context: ConversationContext, settings: WorkspaceSettings
) -> FastLaneResult:
    state = ConversationState.AWAITING_CUSTOMER_DETAILS
    multi_product = len(context.cart) > 1
    product = context.cart[0] if context.cart else None
    sizes = product.sizes if product else []
    colors = product.colors if product else []
    requires_size = not multi_product and bool(sizes)
    requires_color = not multi_product and len(colors) > 1

    fields = parse_quick_form(text, colors)
    phone = normalize_phone(fields.phone) if fields.phone else None
    phone_valid = bool(phone) and is_valid_phone(phone)
    size_valid = not requires_size or bool(
        fields.size and any(value.upper() == fields.size.upper() for value in sizes)
    )
    color_valid = not requires_color or bool(
        fields.color and any(value.lower() == fields.color.lower() for value in colors)
    )

    stock_error = _stock_error(product, fields.size, fields.quantity)
    if stock_error:
        return _matched("CONFIRM", f"❌ {stock_error}", state, settings)

    if fields.name and phone_valid and fields.address and size_valid and color_valid:
        cart = list(context.cart)
        if cart:
            cart[0] = cart[0].model_copy(
                update={
                    "quantity": fields.quantity,
                    "selected_size": fields.size or cart[0].selected_size,
                    "selected_color": fields.color or cart[0].selected_color,
                }
            )
        delivery_charge = get_delivery_charge(fields.address, settings)
        total_amount = calculate_cart_total(cart) + delivery_charge
        summary = replies.order_summary(
            customer_name=fields.name,
            cart=cart,
            address=fields.address,
            delivery_charge=delivery_charge,
            total_amount=total_amount,
            phone=phone,
        )
        checkout = context.checkout.model_copy(
            update={
                "customer_name": fields.name,
                "customer_phone": phone,
                "customer_address": fields.address,
                "delivery_charge": delivery_charge,
                "total_amount": total_amount,
            }
        )
        return _matched(
            "COLLECT_ADDRESS",
            summary,
            ConversationState.CONFIRMING_ORDER,
            settings,
            {
                "cart": cart,
                "checkout": checkout,
                "customer_name": fields.name,
                "customer_phone": phone,
                "customer_address": fields.address,
                "delivery_charge": delivery_charge,
                "total_amount": total_amount,
                "selected_size": fields.size,
                "selected_color": fields.color,
            },
            {"name": fields.name, "phone": phone or "", "address": fields.address},
        )

    logger.info(
        "Quick form parse failed",
        extra={
            "action": "quick_form_parse_failure",
            "raw_text": text,
            "parsed": {
                "name": fields.name,
                "phone": phone,
                "phone_valid": phone_valid,
                "address": fields.address,
                "size": fields.size,
                "size_valid": size_valid,
                "color": fields.color,
                "color_valid": color_valid,
            },
        },
    )

    missing = []
    if not fields.name:
        missing.append("নাম")
    if not phone_valid:
        missing.append("সঠিক ফোন নম্বর")
    if not fields.address:
        missing.append("ঠিকানা")
    if requires_size and not size_valid:
        missing.append(f"সাইজ ({'/'.join(sizes)})")
    if requires_color and not color_valid:
        missing.append(f"কালার ({'/'.join(colors)})")

    message = settings.quick_form_error or replies.DEFAULT_QUICK_FORM_ERROR
    if missing:
        message += f"\n\n❌ Missing: {', '.join(missing)}"
    message += "\n\nঅনুগ্রহ করে নিচের ফর্ম্যাটে আবার দিন:\n\nনাম: আপনার নাম\nফোন: 017XXXXXXXX\nঠিকানা: আপনার সম্পূর্ণ ঠিকানা"
    if requires_size:
        message += f"\nসাইজ: {'/'.join(sizes)}"
    if requires_color:
        message += f"\nকালার: {'/'.join(colors)}"
    return _matched("CONFIRM", message, state, settings)


_HANDLERS: dict[ConversationState, Callable[[str, ConversationContext, WorkspaceSettings], FastLaneResult]] = {
    ConversationState.CONFIRMING_PRODUCT: _handle_confirming_product,
    ConversationState.SELECTING_CART_ITEMS: _handle_selecting_cart_items,
    ConversationState.COLLECTING_MULTI_VARIATIONS: _handle_collecting_multi_variations,
    ConversationState.COLLECTING_NAME: _handle_collecting_name,
    ConversationState.COLLECTING_PHONE: _handle_collecting_phone,
    ConversationState.COLLECTING_ADDRESS: _handle_collecting_address,
    ConversationState.CONFIRMING_ORDER: _handle_confirming_order,
    ConversationState.COLLECTING_PAYMENT_DIGITS: _handle_collecting_payment_digits,
    ConversationState.AWAITING_CUSTOMER_DETAILS: _handle_awaiting_customer_details,
}
