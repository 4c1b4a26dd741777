import pytest

from shopbot.conversation.fast_lane import (
    is_valid_phone,
    normalize_phone,
    parse_quick_form,
    try_fast_lane,
)
from shopbot.conversation.state import (
    CartItem,
    Checkout,
    ConversationContext,
    ConversationState,
    PendingImage,
    RecognitionResult,
    apply_context_patch,
)
from shopbot.services.settings import WorkspaceSettings


def _context(state: ConversationState, **updates) -> ConversationContext:
    cart = [CartItem(product_id="1", product_name="Red Polo T-Shirt", product_price=450, stock_quantity=12)]
    return ConversationContext(state=state, cart=cart, **updates)


@pytest.mark.parametrize("state", list(ConversationState))
def test_greeting_resets_to_idle_in_any_state(state):
    settings = WorkspaceSettings(greeting="Demo Fashion এ স্বাগতম!")

    result = try_fast_lane("hello", state, _context(state), settings)

    assert result.matched is True
    assert result.action == "GREETING"
    assert result.new_state == ConversationState.IDLE
    assert result.response == "Demo Fashion এ স্বাগতম!"


def test_empty_text_never_matches():
    result = try_fast_lane("   ", ConversationState.COLLECTING_NAME, _context(ConversationState.COLLECTING_NAME))

    assert result.matched is False


def test_yes_on_product_confirmation_starts_name_collection():
    context = _context(ConversationState.CONFIRMING_PRODUCT)

    result = try_fast_lane("ji", ConversationState.CONFIRMING_PRODUCT, context, WorkspaceSettings())

    assert result.matched is True
    assert result.action == "CONFIRM"
    assert result.new_state == ConversationState.COLLECTING_NAME


def test_yes_with_quick_form_style_asks_for_all_details():
    context = _context(ConversationState.CONFIRMING_PRODUCT)
    settings = WorkspaceSettings(order_collection_style="quick_form")

    result = try_fast_lane("yes", ConversationState.CONFIRMING_PRODUCT, context, settings)

    assert result.new_state == ConversationState.AWAITING_CUSTOMER_DETAILS
    assert "পরিমাণ" in result.response


def test_yes_on_out_of_stock_product_resets():
    cart = [CartItem(product_id="1", product_name="Red Polo T-Shirt", product_price=450, stock_quantity=0)]
    context = ConversationContext(state=ConversationState.CONFIRMING_PRODUCT, cart=cart)

    result = try_fast_lane("yes", ConversationState.CONFIRMING_PRODUCT, context, WorkspaceSettings())

    assert result.new_state == ConversationState.IDLE
    assert result.context_patch["cart"] == []


def test_no_on_product_confirmation_declines_and_clears_cart():
    context = _context(ConversationState.CONFIRMING_PRODUCT)

    result = try_fast_lane("na", ConversationState.CONFIRMING_PRODUCT, context, WorkspaceSettings())

    assert result.action == "DECLINE"
    assert result.new_state == ConversationState.IDLE
    assert result.context_patch["cart"] == []


def test_name_is_capitalized_and_stored_in_checkout():
    context = _context(ConversationState.COLLECTING_NAME)

    result = try_fast_lane("zayed bin hamid", ConversationState.COLLECTING_NAME, context, WorkspaceSettings())

    assert result.action == "COLLECT_NAME"
    assert result.new_state == ConversationState.COLLECTING_PHONE
    assert result.extracted == {"name": "Zayed Bin Hamid"}
    assert result.context_patch["checkout"].customer_name == "Zayed Bin Hamid"
    assert "Zayed Bin Hamid" in result.response


@pytest.mark.parametrize(
    "raw",
    ["01712345678", "+8801712345678", "8801712345678", "017 1234 5678"],
)
def test_phone_variants_normalize_to_national_form(raw):
    context = _context(ConversationState.COLLECTING_PHONE)

    result = try_fast_lane(raw, ConversationState.COLLECTING_PHONE, context, WorkspaceSettings())

    assert result.action == "COLLECT_PHONE"
    assert result.new_state == ConversationState.COLLECTING_ADDRESS
    assert result.extracted["phone"] == "01712345678"
    assert result.context_patch["customer_phone"] == "01712345678"


def test_phone_helpers():
    assert is_valid_phone("01912345678") is True
    assert is_valid_phone("01212345678") is False
    assert is_valid_phone("0171234567") is False
    assert normalize_phone("+880 1712-345678") == "01712345678"
    assert normalize_phone("০১৭১২৩৪৫৬৭৮") == "01712345678"


def test_delivery_question_while_collecting_phone_keeps_state():
    context = _context(ConversationState.COLLECTING_PHONE)

    result = try_fast_lane(
        "what's the delivery charge?",
        ConversationState.COLLECTING_PHONE,
        context,
        WorkspaceSettings(),
    )

    assert result.matched is True
    assert result.new_state == ConversationState.COLLECTING_PHONE
    assert "৳60" in result.response
    assert "৳120" in result.response
    assert "ফোন নম্বর" in result.response


def test_invalid_phone_reprompts():
    context = _context(ConversationState.COLLECTING_PHONE)

    result = try_fast_lane("12345", ConversationState.COLLECTING_PHONE, context, WorkspaceSettings())

    assert result.new_state == ConversationState.COLLECTING_PHONE
    assert "সঠিক phone number" in result.response


def test_address_in_dhaka_gets_inside_charge_and_summary():
    context = _context(
        ConversationState.COLLECTING_ADDRESS,
        checkout=Checkout(customer_name="Zayed Bin Hamid", customer_phone="01712345678"),
    )

    result = try_fast_lane(
        "House 12, Road 4, Dhanmondi, Dhaka",
        ConversationState.COLLECTING_ADDRESS,
        context,
        WorkspaceSettings(),
    )

    assert result.action == "COLLECT_ADDRESS"
    assert result.new_state == ConversationState.CONFIRMING_ORDER
    checkout = result.context_patch["checkout"]
    assert checkout.delivery_charge == 60
    assert checkout.total_amount == 510
    assert "Order Summary" in result.response
    assert "৳510" in result.response


def test_address_outside_dhaka_gets_outside_charge():
    context = _context(ConversationState.COLLECTING_ADDRESS)

    result = try_fast_lane("Agrabad, Chittagong", ConversationState.COLLECTING_ADDRESS, context, WorkspaceSettings())

    assert result.context_patch["checkout"].delivery_charge == 120


def test_long_address_with_question_words_is_still_an_address():
    context = _context(ConversationState.COLLECTING_ADDRESS)

    result = try_fast_lane(
        "delivery to Mirpur 10, Dhaka",
        ConversationState.COLLECTING_ADDRESS,
        context,
        WorkspaceSettings(),
    )

    assert result.action == "COLLECT_ADDRESS"
    assert result.new_state == ConversationState.CONFIRMING_ORDER


def test_short_question_while_collecting_address_is_answered():
    context = _context(ConversationState.COLLECTING_ADDRESS)

    result = try_fast_lane("charge?", ConversationState.COLLECTING_ADDRESS, context, WorkspaceSettings())

    assert result.new_state == ConversationState.COLLECTING_ADDRESS
    assert "Delivery Information" in result.response


def test_order_confirmation_with_payment_digits_step():
    context = _context(ConversationState.CONFIRMING_ORDER, checkout=Checkout(total_amount=510))

    result = try_fast_lane("yes", ConversationState.CONFIRMING_ORDER, context, WorkspaceSettings())

    assert result.action == "CONFIRM"
    assert result.new_state == ConversationState.COLLECTING_PAYMENT_DIGITS
    assert "{{PAYMENT_DETAILS}}" in result.response
    assert "৳510" in result.response


def test_order_confirmation_without_payment_digits_goes_idle():
    context = _context(ConversationState.CONFIRMING_ORDER)
    settings = WorkspaceSettings(collect_payment_digits=False)

    result = try_fast_lane("yes", ConversationState.CONFIRMING_ORDER, context, settings)

    assert result.action == "CONFIRM"
    assert result.new_state == ConversationState.IDLE


def test_order_cancel_resets():
    context = _context(ConversationState.CONFIRMING_ORDER)

    result = try_fast_lane("no", ConversationState.CONFIRMING_ORDER, context, WorkspaceSettings())

    assert result.action == "DECLINE"
    assert result.context_patch["checkout"] == Checkout()


def test_payment_digits_create_order():
    context = _context(
        ConversationState.COLLECTING_PAYMENT_DIGITS,
        checkout=Checkout(customer_name="Zayed Bin Hamid"),
    )

    result = try_fast_lane("78", ConversationState.COLLECTING_PAYMENT_DIGITS, context, WorkspaceSettings())

    assert result.action == "CREATE_ORDER"
    assert result.new_state == ConversationState.IDLE
    assert result.context_patch["checkout"].payment_last_two_digits == "78"
    assert "(78)" in result.response


def test_payment_digits_must_be_exactly_two():
    context = _context(ConversationState.COLLECTING_PAYMENT_DIGITS)

    result = try_fast_lane("789", ConversationState.COLLECTING_PAYMENT_DIGITS, context, WorkspaceSettings())

    assert result.new_state == ConversationState.COLLECTING_PAYMENT_DIGITS
    assert "২টা digit" in result.response


def test_emojis_are_stripped_when_disabled():
    context = _context(ConversationState.COLLECTING_PHONE)
    settings = WorkspaceSettings(use_emojis=False)

    result = try_fast_lane("01712345678", ConversationState.COLLECTING_PHONE, context, settings)

    assert "📱" not in result.response


def test_quick_form_labeled_fields():
    fields = parse_quick_form("Name: Rahim\nPhone: 01712345678\nAddress: House 5, Mirpur, Dhaka")

    assert fields.name == "Rahim"
    assert fields.phone == "01712345678"
    assert fields.address == "House 5, Mirpur, Dhaka"
    assert fields.quantity == 1


def test_quick_form_positional_lines_peel_size():
    fields = parse_quick_form("Rahim\n01712345678\nHouse 5, Mirpur, Dhaka\nM")

    assert fields.name == "Rahim"
    assert fields.phone == "01712345678"
    assert fields.address == "House 5, Mirpur, Dhaka"
    assert fields.size == "M"


def test_quick_form_success_moves_to_order_confirmation():
    cart = [CartItem(product_id="1", product_name="Red Polo T-Shirt", product_price=450, sizes=["M", "L"])]
    context = ConversationContext(state=ConversationState.AWAITING_CUSTOMER_DETAILS, cart=cart)

    result = try_fast_lane(
        "Rahim\n01712345678\nHouse 5, Mirpur, Dhaka\nM",
        ConversationState.AWAITING_CUSTOMER_DETAILS,
        context,
        WorkspaceSettings(order_collection_style="quick_form"),
    )

    assert result.new_state == ConversationState.CONFIRMING_ORDER
    assert result.context_patch["cart"][0].selected_size == "M"
    assert result.context_patch["checkout"].total_amount == 510


def test_quick_form_failure_stays_and_lists_missing_fields():
    cart = [CartItem(product_id="1", product_name="Red Polo T-Shirt", product_price=450)]
    context = ConversationContext(state=ConversationState.AWAITING_CUSTOMER_DETAILS, cart=cart)

    result = try_fast_lane(
        "Rahim\nMirpur",
        ConversationState.AWAITING_CUSTOMER_DETAILS,
        context,
        WorkspaceSettings(order_collection_style="quick_form"),
    )

    assert result.new_state == ConversationState.AWAITING_CUSTOMER_DETAILS
    assert "সঠিক ফোন নম্বর" in result.response


def test_selecting_all_pending_items_builds_cart():
    pending = [
        PendingImage(
            url=f"https://cdn.example.com/{index}.jpg",
            timestamp=1000 + index,
            recognition_result=RecognitionResult(
                success=True,
                product_id=str(index),
                product_name=f"Item {index}",
                product_price=100 * index,
            ),
        )
        for index in (1, 2)
    ]
    context = ConversationContext(state=ConversationState.SELECTING_CART_ITEMS, pending_images=pending)

    result = try_fast_lane("sobgulo", ConversationState.SELECTING_CART_ITEMS, context, WorkspaceSettings())

    assert result.new_state == ConversationState.COLLECTING_NAME
    assert [item.product_id for item in result.context_patch["cart"]] == ["1", "2"]
    assert result.context_patch["pending_images"] == []


def _variation_cart() -> list[CartItem]:
    return [
        CartItem(product_id="1", product_name="Red Polo T-Shirt", product_price=450, sizes=["M", "L", "XL"], colors=["Red"]),
        CartItem(product_id="2", product_name="Blue Denim Jeans", product_price=1200, sizes=["30", "32", "34"], colors=["Blue", "Black"]),
    ]


def _variation_context() -> ConversationContext:
    return ConversationContext(
        state=ConversationState.COLLECTING_MULTI_VARIATIONS,
        cart=_variation_cart(),
        current_variation_index=0,
        collecting_size=True,
    )


def test_multi_variations_walk_size_then_colour_per_item():
    state = ConversationState.COLLECTING_MULTI_VARIATIONS
    settings = WorkspaceSettings()
    context = _variation_context()

    # single-colour shirt skips straight to the jeans
    result = try_fast_lane("l", state, context, settings)
    assert result.new_state == state
    assert "Product 2/2" in result.response
    assert result.context_patch["current_variation_index"] == 1
    assert result.context_patch["cart"][0].selected_size == "L"
    context = apply_context_patch(context, result.context_patch)

    result = try_fast_lane("32", state, context, settings)
    assert result.new_state == state
    assert "কালার" in result.response
    assert result.context_patch["collecting_size"] is False
    context = apply_context_patch(context, result.context_patch)

    result = try_fast_lane("black", state, context, settings)
    assert result.new_state == ConversationState.COLLECTING_NAME
    assert result.context_patch["current_variation_index"] is None
    jeans = result.context_patch["cart"][1]
    assert jeans.selected_size == "32"
    assert jeans.selected_color == "Black"


def test_multi_variations_reject_unknown_size_and_colour():
    state = ConversationState.COLLECTING_MULTI_VARIATIONS
    context = _variation_context()

    bad_size = try_fast_lane("XXL", state, context, WorkspaceSettings())
    assert bad_size.new_state == state
    assert '"XXL" সাইজ নেই' in bad_size.response
    assert "M, L, XL" in bad_size.response

    colour_step = context.model_copy(update={"current_variation_index": 1, "collecting_size": False})
    bad_colour = try_fast_lane("green", state, colour_step, WorkspaceSettings())
    assert bad_colour.new_state == state
    assert '"green" কালার নেই' in bad_colour.response


def test_multi_variations_cancel_resets_cart():
    result = try_fast_lane(
        "cancel", ConversationState.COLLECTING_MULTI_VARIATIONS, _variation_context(), WorkspaceSettings()
    )

    assert result.action == "DECLINE"
    assert result.new_state == ConversationState.IDLE
    assert result.context_patch["cart"] == []
    assert result.context_patch["current_variation_index"] is None


def test_quick_form_labeled_name_with_positional_phone_and_address():
    fields = parse_quick_form("Name: Karim Ahmed\n01812345678\nRoad 7, Uttara, Dhaka")

    assert fields.name == "Karim Ahmed"
    assert fields.phone == "01812345678"
    assert fields.address == "Road 7, Uttara, Dhaka"


def test_quick_form_labeled_phone_is_kept_over_positional_line():
    fields = parse_quick_form("Karim\nPhone: 01812345678\nRoad 7, Uttara, Dhaka")

    assert fields.name == "Karim"
    assert fields.phone == "01812345678"
    assert fields.address == "Road 7, Uttara, Dhaka"
