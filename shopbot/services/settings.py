from __future__ import annotations

import logging
import time
from collections import OrderedDict
from threading import Lock
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from shopbot.conversation.keywords import is_in_metro_address
from shopbot.core.config import SETTINGS_CACHE_MAX_ENTRIES, SETTINGS_CACHE_TTL_SECONDS
from shopbot.models.workspace_settings import WorkspaceSettings as WorkspaceSettingsRow

logger = logging.getLogger(__name__)

DEFAULT_GREETING = "আসসালামু আলাইকুম! 👋\nআমি আপনার AI assistant।\nআপনি কোন product খুঁজছেন?"
DEFAULT_PAYMENT_MESSAGE = "Payment করতে আমাদের bKash এ send করুন।\nScreenshot পাঠালে আমরা verify করব।"


class _SettingsModel(BaseModel):
    # JSON columns are written by the dashboard in camelCase
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class DeliveryCharges(_SettingsModel):
    inside_dhaka: float = 60
    outside_dhaka: float = 120


class PaymentMethod(_SettingsModel):
    enabled: bool = False
    number: str = ""


class PaymentMethods(_SettingsModel):
    bkash: PaymentMethod = Field(default_factory=lambda: PaymentMethod(enabled=True))
    nagad: PaymentMethod = Field(default_factory=lambda: PaymentMethod(enabled=True))
    cod: PaymentMethod = Field(default_factory=PaymentMethod)


class BehaviorRules(_SettingsModel):
    multi_product: bool = False
    ask_size: bool = True
    show_stock: bool = True
    offer_alternatives: bool = False
    send_confirmation: bool = True


class FastLaneMessages(_SettingsModel):
    product_confirm: str = "দারুণ! 🎉\n\nআপনার সম্পূর্ণ নামটি বলবেন?\n(Example: Zayed Bin Hamid)"
    product_decline: str = "কোনো সমস্যা নেই! 😊\n\nঅন্য product এর ছবি পাঠান অথবা \"help\" লিখুন।"
    name_collected: str = (
        "আপনার সাথে পরিচিত হয়ে ভালো লাগলো, {name}! 😊\n\nএখন আপনার ফোন নম্বর দিন। 📱\n(Example: 01712345678)"
    )
    phone_collected: str = (
        "পেয়েছি! 📱\n\nএখন আপনার ডেলিভারি ঠিকানাটি দিন। 📍\n(Example: House 123, Road 4, Dhanmondi, Dhaka)"
    )
    order_confirmed: str = (
        "✅ অর্ডারটি কনফার্ম করা হয়েছে!\n\nআপনার অর্ডার সফলভাবে সম্পন্ন হয়েছে। "
        "শীঘ্রই আমরা আপনার সাথে যোগাযোগ করবো।\n\nআমাদের সাথে কেনাকাটার জন্য ধন্যবাদ! 🎉"
    )
    order_cancelled: str = "অর্ডার cancel করা হয়েছে। 😊\n\nকোনো সমস্যা নেই! নতুন অর্ডার করতে product এর ছবি পাঠান।"

    # optional overrides; None means the built-in reply is used
    delivery_info: str | None = None
    payment_info: str | None = None
    return_policy: str | None = None
    urgency_response: str | None = None
    objection_response: str | None = None
    seller_info: str | None = None
    payment_instructions: str | None = None
    payment_review: str | None = None
    invalid_payment_digits: str | None = None


class WorkspaceSettings(_SettingsModel):
    """Fully-defaulted settings for one workspace, read-only downstream."""

    workspace_id: int | None = None
    business_name: str = "Your Business"
    greeting: str = DEFAULT_GREETING
    tone: Literal["friendly", "professional", "casual"] = "friendly"
    bengali_percent: int = Field(default=80, ge=0, le=100)
    use_emojis: bool = True
    confidence_threshold: int = Field(default=75, ge=0, le=100)
    delivery_charges: DeliveryCharges = Field(default_factory=DeliveryCharges)
    delivery_time: str = "3-5 business days"
    payment_methods: PaymentMethods = Field(default_factory=PaymentMethods)
    payment_message: str = DEFAULT_PAYMENT_MESSAGE
    behavior_rules: BehaviorRules = Field(default_factory=BehaviorRules)
    fast_lane_messages: FastLaneMessages = Field(default_factory=FastLaneMessages)
    order_collection_style: Literal["conversational", "quick_form"] = "conversational"
    quick_form_prompt: str | None = None
    quick_form_error: str | None = None
    out_of_stock_message: str | None = None
    collect_payment_digits: bool = True


def _json_section(model: type[BaseModel], raw: Any, field: str, workspace_id: int | None) -> BaseModel:
    if not raw:
        return model()
    try:
        return model.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "Invalid %s in workspace settings, using defaults",
            field,
            extra={"workspace_id": workspace_id, "errors": exc.errors()[:3]},
        )
        return model()


def resolve_settings(row: WorkspaceSettingsRow | None, workspace_id: int | None = None) -> WorkspaceSettings:
    if row is None:
        return WorkspaceSettings(workspace_id=workspace_id)

    defaults = WorkspaceSettings()
    values: dict[str, Any] = {"workspace_id": row.workspace_id}

    scalar_columns = {
        "business_name": row.business_name,
        "greeting": row.greeting_message,
        "tone": row.conversation_tone,
        "bengali_percent": row.bengali_percent,
        "use_emojis": row.use_emojis,
        "confidence_threshold": row.confidence_threshold,
        "delivery_time": row.delivery_time,
        "payment_message": row.payment_message,
        "order_collection_style": row.order_collection_style,
        "quick_form_prompt": row.quick_form_prompt,
        "quick_form_error": row.quick_form_error,
        "out_of_stock_message": row.out_of_stock_message,
        "collect_payment_digits": row.collect_payment_digits,
    }
    for key, value in scalar_columns.items():
        if value is None or value == "":
            continue
        values[key] = value

    if row.conversation_tone not in (None, "friendly", "professional", "casual"):
        values.pop("tone", None)
    if row.order_collection_style not in (None, "conversational", "quick_form"):
        values.pop("order_collection_style", None)

    inside_dhaka = row.delivery_charge_inside_dhaka
    outside_dhaka = row.delivery_charge_outside_dhaka
    # 0 is a valid charge (free delivery)
    values["delivery_charges"] = DeliveryCharges(
        inside_dhaka=defaults.delivery_charges.inside_dhaka if inside_dhaka is None else inside_dhaka,
        outside_dhaka=defaults.delivery_charges.outside_dhaka if outside_dhaka is None else outside_dhaka,
    )
    values["payment_methods"] = _json_section(PaymentMethods, row.payment_methods, "payment_methods", row.workspace_id)
    values["behavior_rules"] = _json_section(BehaviorRules, row.behavior_rules, "behavior_rules", row.workspace_id)
    values["fast_lane_messages"] = _json_section(
        FastLaneMessages, row.fast_lane_messages, "fast_lane_messages", row.workspace_id
    )

    try:
        return WorkspaceSettings(**values)
    except ValidationError as exc:
        logger.warning(
            "Invalid workspace settings row, using defaults",
            extra={"workspace_id": row.workspace_id, "errors": exc.errors()[:3]},
        )
        return WorkspaceSettings(workspace_id=row.workspace_id)


def load_settings(db: Session, workspace_id: int) -> WorkspaceSettings:
    row = (
        db.query(WorkspaceSettingsRow)
        .filter(WorkspaceSettingsRow.workspace_id == workspace_id)
        .first()
    )
    return resolve_settings(row, workspace_id=workspace_id)


class SettingsCache:
    """Thread-safe LRU with a per-entry TTL."""

    def __init__(
        self,
        *,
        max_entries: int = SETTINGS_CACHE_MAX_ENTRIES,
        ttl_seconds: float = SETTINGS_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: OrderedDict[int, tuple[float, WorkspaceSettings]] = OrderedDict()
        self._lock = Lock()

    def get(self, workspace_id: int) -> WorkspaceSettings | None:
        with self._lock:
            entry = self._entries.get(workspace_id)
            if entry is None:
                return None
            stored_at, settings = entry
            if self._clock() - stored_at >= self.ttl_seconds:
                self._entries.pop(workspace_id, None)
                return None
            self._entries.move_to_end(workspace_id)
            return settings

    def set(self, workspace_id: int, settings: WorkspaceSettings) -> None:
        with self._lock:
            self._entries[workspace_id] = (self._clock(), settings)
            self._entries.move_to_end(workspace_id)
            while len(self._entries) > self.max_entries:
                self._entries.popitem(last=False)

    def invalidate(self, workspace_id: int) -> None:
        with self._lock:
            self._entries.pop(workspace_id, None)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


settings_cache = SettingsCache()


def get_cached_settings(db: Session, workspace_id: int, cache: SettingsCache | None = None) -> WorkspaceSettings:
    if cache is None:
        cache = settings_cache
    cached = cache.get(workspace_id)
    if cached is not None:
        return cached
    settings = load_settings(db, workspace_id)
    cache.set(workspace_id, settings)
    return settings


def get_delivery_charge(address: str, settings: WorkspaceSettings) -> float:
    if is_in_metro_address(address):
        return settings.delivery_charges.inside_dhaka
    return settings.delivery_charges.outside_dhaka


def format_payment_details(settings: WorkspaceSettings) -> str:
    methods = settings.payment_methods
    lines: list[str] = []
    if methods.bkash.enabled:
        lines.append(f"💳 bKash: {methods.bkash.number}" if methods.bkash.number else "💳 bKash")
    if methods.nagad.enabled:
        lines.append(f"💳 Nagad: {methods.nagad.number}" if methods.nagad.number else "💳 Nagad")
    if methods.cod.enabled:
        lines.append("💵 Cash on Delivery")
    return "\n".join(lines)
