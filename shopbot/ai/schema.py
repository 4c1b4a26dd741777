from __future__ import annotations

import json
import re
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, field_validator
from pydantic.alias_generators import to_camel

from shopbot.conversation.state import CartItem, Checkout, ConversationState

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")


class _DecisionModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ActionData(_DecisionModel):
    product_id: str | None = None
    product_name: str | None = None
    product_price: float | None = Field(default=None, ge=0)
    quantity: int | None = Field(default=None, ge=1)
    search_query: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    customer_address: str | None = None
    delivery_charge: float | None = Field(default=None, ge=0)
    total_amount: float | None = Field(default=None, ge=0)

    @field_validator("product_id", mode="before")
    @classmethod
    def _coerce_product_id(cls, value: Any) -> Any:
        if isinstance(value, int):
            return str(value)
        return value


class ProductActionData(ActionData):
    product_id: str = Field(..., min_length=1)


class SearchActionData(ActionData):
    search_query: str = Field(..., min_length=1)


class ContextPatch(_DecisionModel):
    """Partial context the model may ask to merge; only keys it sent are applied."""

    state: ConversationState | None = None
    cart: list[CartItem] | None = None
    checkout: Checkout | None = None
    selected_size: str | None = None
    selected_color: str | None = None


class _DecisionBase(_DecisionModel):
    response: str = Field(..., min_length=1)
    new_state: ConversationState | None = None
    updated_context: ContextPatch | None = None
    action_data: ActionData | None = None
    confidence: float = Field(default=50, ge=0, le=100)
    reasoning: str | None = None


class SendResponse(_DecisionBase):
    action: Literal["SEND_RESPONSE"] = "SEND_RESPONSE"


class TransitionState(_DecisionBase):
    action: Literal["TRANSITION_STATE"] = "TRANSITION_STATE"


class AddToCart(_DecisionBase):
    action: Literal["ADD_TO_CART"] = "ADD_TO_CART"
    action_data: ProductActionData


class RemoveFromCart(_DecisionBase):
    action: Literal["REMOVE_FROM_CART"] = "REMOVE_FROM_CART"
    action_data: ProductActionData


class UpdateCheckout(_DecisionBase):
    action: Literal["UPDATE_CHECKOUT"] = "UPDATE_CHECKOUT"


class CreateOrder(_DecisionBase):
    action: Literal["CREATE_ORDER"] = "CREATE_ORDER"


class SearchProducts(_DecisionBase):
    action: Literal["SEARCH_PRODUCTS"] = "SEARCH_PRODUCTS"
    action_data: SearchActionData


class ShowHelp(_DecisionBase):
    action: Literal["SHOW_HELP"] = "SHOW_HELP"


class ResetConversation(_DecisionBase):
    action: Literal["RESET_CONVERSATION"] = "RESET_CONVERSATION"


Decision = Annotated[
    Union[
        SendResponse,
        TransitionState,
        AddToCart,
        RemoveFromCart,
        UpdateCheckout,
        CreateOrder,
        SearchProducts,
        ShowHelp,
        ResetConversation,
    ],
    Field(discriminator="action"),
]

_decision_adapter: TypeAdapter[Decision] = TypeAdapter(Decision)


class VisionAnalysis(BaseModel):
    category: str | None = None
    color: str | None = None
    material: str | None = None
    visual_description_keywords: list[str] = Field(default_factory=list)
    brand_text: str | None = None

    @field_validator("category", "color", "material", "brand_text", mode="before")
    @classmethod
    def _blank_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("visual_description_keywords", mode="before")
    @classmethod
    def _keywords_as_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    def is_empty(self) -> bool:
        return not (
            self.category or self.color or self.material or self.brand_text or self.visual_description_keywords
        )


def parse_json_object(text: str) -> dict[str, Any]:
    """Loads a JSON object, tolerating a markdown code fence around it."""
    cleaned = _CODE_FENCE_RE.sub("", (text or "").strip())
    payload = json.loads(cleaned or "{}")
    if not isinstance(payload, dict):
        raise ValueError("expected a JSON object")
    return payload


def parse_decision(raw: str | dict[str, Any]) -> Decision:
    """Raises json.JSONDecodeError, ValueError or pydantic.ValidationError on a bad shape."""
    payload = parse_json_object(raw) if isinstance(raw, str) else raw
    return _decision_adapter.validate_python(payload)
