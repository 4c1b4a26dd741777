import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import shopbot.models  # noqa: F401
from shopbot.conversation.state import CartItem, Checkout, ConversationContext, ConversationState, migrate_legacy_context
from shopbot.core.database import Base
from shopbot.models.order import Order
from shopbot.models.product import Product
from shopbot.models.workspace_settings import WorkspaceSettings as WorkspaceSettingsRow
from shopbot.services.conversations import add_message, get_or_create_conversation, load_history
from shopbot.services.orders import OrderCreationError, create_order, generate_order_number
from shopbot.services.product_search import search_products
from shopbot.services.settings import (
    SettingsCache,
    WorkspaceSettings,
    format_payment_details,
    get_cached_settings,
    get_delivery_charge,
    load_settings,
    resolve_settings,
    settings_cache,
)
from tests.fixtures_data import (
    BLUE_JEANS,
    CHECKOUT_READY_CONTEXT,
    CUSTOMER_PSID,
    PAGE_ID,
    RED_TSHIRT,
    WORKSPACE_ID,
    WORKSPACE_SETTINGS_ROW,
)


class _Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _build_db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal()


def _seed_products(db):
    shirt = Product(**RED_TSHIRT)
    jeans = Product(**BLUE_JEANS)
    other = Product(**{**RED_TSHIRT, "workspace_id": WORKSPACE_ID + 1, "name": "Red Polo Other Shop"})
    db.add_all([shirt, jeans, other])
    db.commit()
    return shirt, jeans


def test_missing_settings_row_gives_defaults():
    db = _build_db()

    settings = load_settings(db, WORKSPACE_ID)

    assert settings.workspace_id == WORKSPACE_ID
    assert settings.business_name == "Your Business"
    assert settings.delivery_charges.inside_dhaka == 60
    assert settings.delivery_charges.outside_dhaka == 120
    assert settings.order_collection_style == "conversational"


def test_settings_row_overrides_defaults_and_reads_camel_case_json():
    row = WorkspaceSettingsRow(
        **{
            **WORKSPACE_SETTINGS_ROW,
            "delivery_charge_inside_dhaka": 80,
            "behavior_rules": {"multiProduct": True},
            "fast_lane_messages": {"productConfirm": "নাম বলুন"},
        }
    )

    settings = resolve_settings(row)

    assert settings.business_name == "Demo Fashion"
    assert settings.greeting == "Demo Fashion এ স্বাগতম!"
    assert settings.delivery_charges.inside_dhaka == 80
    assert settings.behavior_rules.multi_product is True
    assert settings.fast_lane_messages.product_confirm == "নাম বলুন"
    assert settings.fast_lane_messages.phone_collected.startswith("পেয়েছি")


def test_invalid_json_sections_and_enums_fall_back_to_defaults():
    row = WorkspaceSettingsRow(
        workspace_id=WORKSPACE_ID,
        conversation_tone="grumpy",
        payment_methods={"bkash": {"enabled": "definitely"}},
    )

    settings = resolve_settings(row)

    assert settings.tone == "friendly"
    assert settings.payment_methods.bkash.enabled is True
    assert settings.payment_methods.bkash.number == ""


def test_settings_cache_expires_after_ttl():
    db = _build_db()
    clock = _Clock()
    cache = SettingsCache(max_entries=10, ttl_seconds=300, clock=clock)

    first = get_cached_settings(db, WORKSPACE_ID, cache)
    db.add(WorkspaceSettingsRow(**WORKSPACE_SETTINGS_ROW))
    db.commit()

    clock.now = 299
    assert get_cached_settings(db, WORKSPACE_ID, cache) is first

    clock.now = 300
    refreshed = get_cached_settings(db, WORKSPACE_ID, cache)
    assert refreshed.business_name == "Demo Fashion"


def test_empty_injected_cache_is_used_instead_of_shared_cache():
    db = _build_db()
    injected = SettingsCache()
    workspace_id = 4242
    settings_cache.invalidate(workspace_id)

    get_cached_settings(db, workspace_id, injected)

    assert len(injected) == 1
    assert settings_cache.get(workspace_id) is None


def test_settings_cache_evicts_least_recently_used():
    clock = _Clock()
    cache = SettingsCache(max_entries=2, ttl_seconds=300, clock=clock)
    cache.set(1, WorkspaceSettings(workspace_id=1))
    cache.set(2, WorkspaceSettings(workspace_id=2))

    assert cache.get(1) is not None
    cache.set(3, WorkspaceSettings(workspace_id=3))

    assert cache.get(2) is None
    assert cache.get(1) is not None
    assert cache.get(3) is not None
    assert len(cache) == 2

    cache.invalidate(1)
    assert cache.get(1) is None


def test_delivery_charge_and_payment_details():
    settings = resolve_settings(WorkspaceSettingsRow(**WORKSPACE_SETTINGS_ROW))

    assert get_delivery_charge("Banani, ঢাকা", settings) == 60
    assert get_delivery_charge("Comilla", settings) == 120
    assert format_payment_details(settings) == "💳 bKash: 01711111111\n💵 Cash on Delivery"


def test_zero_delivery_charge_means_free_delivery():
    row = WorkspaceSettingsRow(**{**WORKSPACE_SETTINGS_ROW, "delivery_charge_inside_dhaka": 0})

    settings = resolve_settings(row)

    assert settings.delivery_charges.inside_dhaka == 0
    assert settings.delivery_charges.outside_dhaka == 120
    assert get_delivery_charge("Gulshan, Dhaka", settings) == 0


def test_product_search_ranks_by_relevance_within_workspace():
    db = _build_db()
    shirt, jeans = _seed_products(db)

    results = search_products(db, "red polo", WORKSPACE_ID)

    assert [product.id for product in results] == [shirt.id]
    assert [product.id for product in search_products(db, "denim", WORKSPACE_ID)] == [jeans.id]
    assert search_products(db, "saree", WORKSPACE_ID) == []
    assert search_products(db, "   ", WORKSPACE_ID) == []


def test_product_search_respects_limit():
    db = _build_db()
    db.add_all([Product(**{**RED_TSHIRT, "name": f"Red Polo {index}", "image_hash": None}) for index in range(8)])
    db.commit()

    assert len(search_products(db, "polo", WORKSPACE_ID)) == 5
    assert len(search_products(db, "polo", WORKSPACE_ID, limit=2)) == 2


def test_order_number_shape():
    number = generate_order_number(now_ms=1700000123456)

    assert len(number) == 9
    assert number.startswith("123456")


def test_create_order_from_checkout():
    db = _build_db()
    shirt, _ = _seed_products(db)
    raw = dict(CHECKOUT_READY_CONTEXT)
    raw["cart"] = [dict(raw["cart"][0], productId=str(shirt.id), selectedSize="L")]
    raw["checkout"] = dict(raw["checkout"], paymentLastTwoDigits="78")
    context = migrate_legacy_context(raw)

    order = create_order(db, workspace_id=WORKSPACE_ID, fb_page_id=PAGE_ID, conversation_id=None, context=context)
    db.commit()

    stored = db.query(Order).one()
    assert stored.order_number == order.order_number
    assert stored.product_id == shirt.id
    assert stored.customer_phone == "01712345678"
    assert stored.product_size == "L"
    assert float(stored.delivery_charge) == 60
    assert float(stored.total_amount) == 510
    assert stored.payment_last_two_digits == "78"
    assert stored.status == "pending"
    assert stored.payment_status == "unpaid"
    assert stored.items[0]["productName"] == "Red Polo T-Shirt"


def test_create_order_computes_total_when_missing():
    db = _build_db()
    context = ConversationContext(
        cart=[CartItem(product_id="999", product_name="Custom", product_price=300, quantity=2)],
        checkout=Checkout(
            customer_name="Rahim",
            customer_phone="01812345678",
            customer_address="Agrabad, Chittagong",
            delivery_charge=120,
        ),
    )

    order = create_order(db, workspace_id=WORKSPACE_ID, fb_page_id=PAGE_ID, conversation_id=None, context=context)

    assert order.product_id is None
    assert float(order.total_amount) == 720


def test_create_order_requires_cart_and_customer_details():
    db = _build_db()

    with pytest.raises(OrderCreationError):
        create_order(db, workspace_id=WORKSPACE_ID, fb_page_id=PAGE_ID, conversation_id=None, context=ConversationContext())

    missing_address = ConversationContext(
        cart=[CartItem(product_id="1", product_name="Shirt", product_price=450)],
        checkout=Checkout(customer_name="Rahim", customer_phone="01812345678"),
    )
    with pytest.raises(OrderCreationError):
        create_order(db, workspace_id=WORKSPACE_ID, fb_page_id=PAGE_ID, conversation_id=None, context=missing_address)


def test_conversation_is_created_once_per_customer():
    db = _build_db()

    first = get_or_create_conversation(db, workspace_id=WORKSPACE_ID, page_id=PAGE_ID, customer_psid=CUSTOMER_PSID)
    second = get_or_create_conversation(db, workspace_id=WORKSPACE_ID, page_id=PAGE_ID, customer_psid=CUSTOMER_PSID)

    assert first.id == second.id
    assert first.current_state == ConversationState.IDLE.value
    assert first.context["state"] == "IDLE"


def test_history_is_oldest_first_and_limited():
    db = _build_db()
    conversation = get_or_create_conversation(
        db, workspace_id=WORKSPACE_ID, page_id=PAGE_ID, customer_psid=CUSTOMER_PSID
    )
    for index in range(6):
        add_message(db, conversation_id=conversation.id, sender="customer", text=f"message {index}")
    db.commit()

    history = load_history(db, conversation.id, 3)

    assert [message.message_text for message in history] == ["message 3", "message 4", "message 5"]
