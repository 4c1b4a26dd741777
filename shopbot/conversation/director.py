from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field

from pydantic import ValidationError
from sqlalchemy.orm import Session

from shopbot.ai.base import LLMProvider, LLMProviderError, TokenUsage
from shopbot.ai.schema import Decision, SendResponse, parse_decision
from shopbot.ai.usage import log_api_usage
from shopbot.conversation.replies import taka
from shopbot.conversation.state import ConversationContext, ConversationState, calculate_cart_total
from shopbot.image_recognition.result import MatchResult
from shopbot.services.settings import WorkspaceSettings

logger = logging.getLogger(__name__)

HISTORY_IN_PROMPT = 5
FALLBACK_CONFIDENCE = 30

TONE_DESCRIPTIONS = {
    "friendly": "friendly, warm, and conversational - like talking to a helpful friend",
    "professional": "professional, polite, and formal - like a business representative",
    "casual": "casual, relaxed, and informal - like chatting with a peer",
}

FALLBACK_REPLIES = {
    ConversationState.IDLE: '👋 হাই! শুরু করতে product এর ছবি পাঠান, অথবা "help" লিখুন।',
    ConversationState.CONFIRMING_PRODUCT: "এই product টি অর্ডার করতে চান? YES বা NO লিখুন। ✅",
    ConversationState.SELECTING_CART_ITEMS: 'কোন product গুলো চান? নম্বর লিখুন (যেমন: 1, 3) অথবা "সবগুলো" লিখুন।',
    ConversationState.COLLECTING_MULTI_VARIATIONS: "আপনার পছন্দের সাইজ/কালারটি লিখুন। 😊",
    ConversationState.COLLECTING_NAME: "আপনার সম্পূর্ণ নামটি বলবেন? 😊",
    ConversationState.COLLECTING_PHONE: "আপনার ফোন নম্বর দিন। 📱\n(Example: 01712345678)",
    ConversationState.COLLECTING_ADDRESS: "আপনার ডেলিভারি ঠিকানাটি দিন। 📍\n(Example: House 123, Road 4, Dhanmondi, Dhaka)",
    ConversationState.COLLECTING_PAYMENT_DIGITS: "Payment এর transaction ID এর শেষের ২ ডিজিট পাঠান। 🔢",
    ConversationState.CONFIRMING_ORDER: "অর্ডার কনফার্ম করতে YES লিখুন। ✅",
    ConversationState.AWAITING_CUSTOMER_DETAILS: "আপনার নাম, ফোন নম্বর এবং সম্পূর্ণ ঠিকানা একসাথে পাঠান। 📝",
}
DEFAULT_FALLBACK_REPLY = "দুঃখিত, বুঝতে পারিনি। আবার বলবেন? 😊"


@dataclass
class HistoryTurn:
    sender: str  # customer | bot
    message: str


@dataclass
class DirectorInput:
    user_message: str
    current_state: ConversationState
    context: ConversationContext
    workspace_id: int
    settings: WorkspaceSettings
    image_result: MatchResult | None = None
    history: list[HistoryTurn] = field(default_factory=list)


def _bdt(amount: float | None) -> str:
    return f"৳{taka(amount)}"


def _language_rule(bengali_percent: int) -> str:
    if bengali_percent >= 70:
        return "Your primary language for ALL replies MUST be Bengali (বাংলা)."
    if bengali_percent >= 40:
        return "Use a balanced mix of Bengali and English."
    return "You can use more English, but keep some Bengali phrases."


def build_system_prompt(settings: WorkspaceSettings) -> str:
    """Role, states, actions, language/tone policy and worked JSON examples."""
    business = settings.business_name
    bengali = settings.bengali_percent
    inside = _bdt(settings.delivery_charges.inside_dhaka)
    outside = _bdt(settings.delivery_charges.outside_dhaka)
    tone = TONE_DESCRIPTIONS.get(settings.tone, TONE_DESCRIPTIONS["friendly"])
    emoji_rule = (
        "Use emojis to make messages engaging and friendly 😊"
        if settings.use_emojis
        else "Avoid using emojis - keep it text-only"
    )
    wrong_examples = (
        "❌ WRONG: \"Great! What's your name?\"\n  ❌ WRONG: \"Order confirmed!\""
        if bengali >= 70
        else "✅ ACCEPTABLE: \"Great! What's your name?\" (if Bengali % is lower)"
    )
    delivery_example = json.dumps(
        {
            "action": "SEND_RESPONSE",
            "response": (
                f"{'🚚 ' if settings.use_emojis else ''}Delivery charges:\n"
                f"• ঢাকার মধ্যে: {inside}\n• ঢাকার বাইরে: {outside}\n\n"
                f"এখন আপনার ফোন নম্বর দিন।{' 📱' if settings.use_emojis else ''}"
            ),
            "newState": "COLLECTING_PHONE",
            "confidence": 95,
            "reasoning": "User asked about delivery during checkout - answer and re-prompt",
        },
        ensure_ascii=False,
        indent=2,
    )
    search_example = json.dumps(
        {
            "action": "SEARCH_PRODUCTS",
            "response": "🔍 লাল শাড়ি খুঁজছি...",
            "actionData": {"searchQuery": "red saree"},
            "confidence": 90,
            "reasoning": "User is searching for a specific product",
        },
        ensure_ascii=False,
        indent=2,
    )
    confirm_example = json.dumps(
        {
            "action": "CREATE_ORDER",
            "response": (
                "✅ অর্ডারটি কনফার্ম করা হয়েছে! আপনার অর্ডার সফলভাবে সম্পন্ন হয়েছে। "
                "শীঘ্রই আমরা আপনার সাথে যোগাযোগ করবো।\n\nআমাদের সাথে কেনাকাটার জন্য ধন্যবাদ! 🎉"
            ),
            "newState": "IDLE",
            "confidence": 100,
            "reasoning": "User confirmed order - create it and reset conversation",
        },
        ensure_ascii=False,
        indent=2,
    )
    states = "\n".join(f"- {state.value}" for state in ConversationState)

    return f"""You are an AI Director for {business}'s conversational e-commerce chatbot. Your role is to make intelligent decisions about how to handle user messages.

**YOUR CAPABILITIES:**
- Understand user intent (questions, confirmations, product searches, etc.)
- Route conversations through different states
- Handle interruptions gracefully
- Manage shopping cart operations
- Collect customer information for orders

**CONVERSATION STATES:**
{states}

**AVAILABLE ACTIONS:**
- SEND_RESPONSE: Send a message to the user
- TRANSITION_STATE: Change to a different conversation state
- ADD_TO_CART: Add a product to the shopping cart (actionData.productId required)
- REMOVE_FROM_CART: Remove a product from cart (actionData.productId required)
- UPDATE_CHECKOUT: Update customer information
- CREATE_ORDER: Finalize and create the order
- SEARCH_PRODUCTS: Search for products by text query (actionData.searchQuery required)
- SHOW_HELP: Display help information
- RESET_CONVERSATION: Reset to IDLE state

**LANGUAGE POLICY (CRITICAL):**
- Language mix: {bengali}% Bengali, {100 - bengali}% English
- {_language_rule(bengali)}
- You can and SHOULD use common English/Banglish words that are frequently used in Bengali conversation in Bangladesh (e.g., 'Price', 'Stock', 'Order', 'Delivery', 'Address', 'Confirm', 'Product', 'Phone').
- Your persona is a helpful {business} shop assistant.
- Examples:
  ✅ CORRECT: "দারুণ! 🎉 আপনার সম্পূর্ণ নামটি বলবেন?"
  ✅ CORRECT: "পেয়েছি! 📱 এখন আপনার ডেলিভারি ঠিকানাটি দিন।"
  ✅ CORRECT: "অর্ডারটি কনফার্ম করা হয়েছে! ✅"
  {wrong_examples}

**TONE & STYLE:**
- Your tone should be {tone}
- {emoji_rule}
- Keep responses concise but helpful

**RESPONSE FORMAT:**
You MUST respond with valid JSON in this exact format:
{{
  "action": "ACTION_NAME",
  "response": "Message to send to user (follow language and tone guidelines above)",
  "newState": "NEW_STATE" (optional),
  "updatedContext": {{ ... }} (optional),
  "actionData": {{ ... }} (optional),
  "confidence": 85,
  "reasoning": "Brief explanation of your decision"
}}

**IMPORTANT GUIDELINES:**
1. Follow the {tone} tone in all responses
2. {emoji_rule}
3. If user asks a question during checkout, answer it and re-prompt for the needed information
4. Always validate phone numbers (Bangladesh format: 01XXXXXXXXX)
5. Calculate delivery charges: Dhaka {inside}, Outside Dhaka {outside}
6. For product searches, use SEARCH_PRODUCTS action with searchQuery in actionData
7. Keep responses concise but helpful
8. If uncertain, ask clarifying questions

**EXAMPLES:**

Example 1 - Product Search:
User: "Do you have red sarees?"
State: IDLE
Response:
{search_example}

Example 2 - Interruption During Phone Collection:
User: "What's the delivery charge?"
State: COLLECTING_PHONE
Response:
{delivery_example}

Example 3 - Order Confirmation:
User: "Yes, confirm it"
State: CONFIRMING_ORDER
Response:
{confirm_example}"""


def build_user_prompt(director_input: DirectorInput) -> str:
    context = director_input.context
    lines = ["**CURRENT SITUATION:**", "", f"State: {director_input.current_state.value}", ""]

    if context.cart:
        lines.append(f"Cart ({len(context.cart)} items):")
        for index, item in enumerate(context.cart, start=1):
            lines.append(f"{index}. {item.product_name} - {_bdt(item.product_price)} × {item.quantity}")
        lines.append(f"Subtotal: {_bdt(calculate_cart_total(context.cart))}")
    else:
        lines.append("Cart: Empty")

    checkout = context.checkout
    if checkout.customer_name or checkout.customer_phone or checkout.customer_address:
        lines.extend(["", "Checkout Info:"])
        if checkout.customer_name:
            lines.append(f"- Name: {checkout.customer_name}")
        if checkout.customer_phone:
            lines.append(f"- Phone: {checkout.customer_phone}")
        if checkout.customer_address:
            lines.append(f"- Address: {checkout.customer_address}")
        if checkout.delivery_charge:
            lines.append(f"- Delivery: {_bdt(checkout.delivery_charge)}")
        if checkout.total_amount:
            lines.append(f"- Total: {_bdt(checkout.total_amount)}")

    match = director_input.image_result
    if match is not None and match.matched:
        lines.extend(
            [
                "",
                "Image Recognition Result:",
                f"- Product Found: {match.product.name}",
                f"- Price: {_bdt(float(match.product.price))}",
                f"- Confidence: {match.confidence}%",
                f"- Tier: {match.tier}",
            ]
        )

    recent = director_input.history[-HISTORY_IN_PROMPT:]
    if recent:
        lines.extend(["", f"Recent Messages (last {len(recent)}):"])
        for turn in recent:
            sender = "👤 Customer" if turn.sender == "customer" else "🤖 Bot"
            lines.append(f"{sender}: {turn.message}")

    lines.extend(
        [
            "",
            "**USER'S CURRENT MESSAGE:**",
            f'"{director_input.user_message}"',
            "",
            "**YOUR TASK:**",
            "Analyze the user's message in the context of the current state and decide what action to take.",
            "Respond with a JSON object following the format specified in the system prompt.",
        ]
    )
    return "\n".join(lines) + "\n"


def fallback_decision(state: ConversationState) -> SendResponse:
    """Canned per-state reply that keeps the conversation where it is."""
    return SendResponse(
        response=FALLBACK_REPLIES.get(state, DEFAULT_FALLBACK_REPLY),
        new_state=state,
        confidence=FALLBACK_CONFIDENCE,
        reasoning="Fallback decision due to AI error",
    )


def _record_usage(db: Session, workspace_id: int, usage: TokenUsage | None) -> None:
    if usage is None or usage.total_tokens == 0:
        return
    log_api_usage(db, workspace_id=workspace_id, api_type="ai_director", usage=usage)


def direct(db: Session, director_input: DirectorInput, provider: LLMProvider) -> Decision:
    """Asks the model for the next decision; any failure yields the state fallback."""
    started = time.perf_counter()
    system_prompt = build_system_prompt(director_input.settings)
    user_prompt = build_user_prompt(director_input)

    try:
        completion = provider.complete(
            system_prompt,
            user_prompt,
            json_mode=True,
            temperature=0.7,
            max_tokens=1000,
        )
    except LLMProviderError as exc:
        logger.warning(
            "AI director call failed, using fallback",
            extra={"error": str(exc), "state": director_input.current_state.value},
        )
        _record_usage(db, director_input.workspace_id, exc.usage)
        return fallback_decision(director_input.current_state)

    _record_usage(db, director_input.workspace_id, completion.usage)

    try:
        decision = parse_decision(completion.text)
    except (json.JSONDecodeError, ValueError, ValidationError) as exc:
        logger.warning(
            "AI director returned an invalid decision, using fallback",
            extra={"error": str(exc)[:500], "raw_text": completion.text[:500]},
        )
        return fallback_decision(director_input.current_state)

    logger.info(
        "AI director decided %s (confidence %s)",
        decision.action,
        decision.confidence,
        extra={
            "action": decision.action,
            "state": director_input.current_state.value,
            "duration_ms": int((time.perf_counter() - started) * 1000),
        },
    )
    return decision
