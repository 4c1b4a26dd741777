import json
from types import SimpleNamespace

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import shopbot.models  # noqa: F401
from shopbot.ai.base import CompletionResult, LLMProviderError, TokenUsage
from shopbot.ai.mock_provider import MockLLMProvider
from shopbot.ai.schema import parse_decision
from shopbot.ai.usage import calculate_cost
from shopbot.conversation.director import (
    FALLBACK_CONFIDENCE,
    FALLBACK_REPLIES,
    DirectorInput,
    HistoryTurn,
    build_system_prompt,
    build_user_prompt,
    direct,
)
from shopbot.conversation.state import CartItem, Checkout, ConversationContext, ConversationState
from shopbot.core.database import Base
from shopbot.image_recognition.result import MatchResult
from shopbot.models.api_usage import ApiUsage
from shopbot.services.settings import DeliveryCharges, WorkspaceSettings


class _ScriptedProvider:
    name = "scripted"

    def __init__(self, text=None, error=None, usage=None):
        self.text = text
        self.error = error
        self.usage = usage or TokenUsage(input_tokens=900, output_tokens=150)
        self.prompts = []

    def complete(self, system_prompt, user_prompt, *, json_mode=True, temperature=0.7, max_tokens=1000):
        self.prompts.append((system_prompt, user_prompt))
        if self.error is not None:
            raise self.error
        return CompletionResult(text=self.text, usage=self.usage)

    def vision_analyze(self, image, instructions, *, content_type="image/jpeg"):
        raise AssertionError("vision is not used by the director")


def _build_db():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    Base.metadata.create_all(bind=engine)
    return TestingSessionLocal()


def _input(message="do you have red polo?", state=ConversationState.IDLE, **overrides) -> DirectorInput:
    values = {
        "user_message": message,
        "current_state": state,
        "context": ConversationContext(state=state),
        "workspace_id": 1,
        "settings": WorkspaceSettings(business_name="Demo Fashion"),
    }
    values.update(overrides)
    return DirectorInput(**values)


def test_system_prompt_carries_business_settings():
    settings = WorkspaceSettings(
        business_name="Demo Fashion",
        tone="professional",
        bengali_percent=30,
        use_emojis=False,
        delivery_charges=DeliveryCharges(inside_dhaka=70, outside_dhaka=150),
    )

    prompt = build_system_prompt(settings)

    assert "Demo Fashion's conversational e-commerce chatbot" in prompt
    assert "30% Bengali, 70% English" in prompt
    assert "professional, polite, and formal" in prompt
    assert "Avoid using emojis" in prompt
    assert "Dhaka ৳70, Outside Dhaka ৳150" in prompt
    for state in ConversationState:
        assert f"- {state.value}" in prompt
    assert '"searchQuery": "red saree"' in prompt


def test_user_prompt_includes_cart_checkout_image_and_recent_history():
    context = ConversationContext(
        state=ConversationState.COLLECTING_ADDRESS,
        cart=[CartItem(product_id="1", product_name="Red Polo T-Shirt", product_price=450, quantity=2)],
        checkout=Checkout(customer_name="Rahim", customer_phone="01712345678"),
    )
    history = [HistoryTurn(sender="customer" if i % 2 == 0 else "bot", message=f"turn {i}") for i in range(8)]
    image_result = MatchResult(
        product=SimpleNamespace(name="Red Polo T-Shirt", price=450),
        confidence=95.0,
        tier="tier2",
    )

    prompt = build_user_prompt(
        _input(
            "kobe pabo?",
            ConversationState.COLLECTING_ADDRESS,
            context=context,
            history=history,
            image_result=image_result,
        )
    )

    assert "State: COLLECTING_ADDRESS" in prompt
    assert "1. Red Polo T-Shirt - ৳450 × 2" in prompt
    assert "Subtotal: ৳900" in prompt
    assert "- Name: Rahim" in prompt
    assert "- Tier: tier2" in prompt
    assert "Recent Messages (last 5):" in prompt
    assert "turn 2" not in prompt
    assert "👤 Customer: turn 4" in prompt
    assert "🤖 Bot: turn 7" in prompt
    assert '**USER\'S CURRENT MESSAGE:**\n"kobe pabo?"' in prompt


def test_empty_cart_is_reported():
    assert "Cart: Empty" in build_user_prompt(_input())


def test_valid_decision_is_returned_and_usage_logged():
    db = _build_db()
    provider = _ScriptedProvider(
        text=json.dumps(
            {
                "action": "SEARCH_PRODUCTS",
                "response": "🔍 খুঁজছি...",
                "actionData": {"searchQuery": "red polo"},
                "confidence": 88,
            }
        )
    )

    decision = direct(db, _input(), provider)

    assert decision.action == "SEARCH_PRODUCTS"
    assert decision.action_data.search_query == "red polo"
    assert decision.confidence == 88
    usage = db.query(ApiUsage).one()
    assert usage.api_type == "ai_director"
    assert usage.input_tokens == 900
    assert float(usage.cost) == pytest.approx(calculate_cost(900, 150), abs=1e-6)


def test_fenced_json_is_accepted():
    db = _build_db()
    provider = _ScriptedProvider(text='```json\n{"action": "SHOW_HELP", "response": "help", "confidence": 70}\n```')

    assert direct(db, _input(), provider).action == "SHOW_HELP"


@pytest.mark.parametrize(
    "text",
    [
        "not json at all",
        '{"action": "DANCE", "response": "x"}',
        '{"action": "ADD_TO_CART", "response": "x"}',
        '["SEND_RESPONSE"]',
    ],
)
def test_bad_model_output_falls_back_per_state(text):
    db = _build_db()
    provider = _ScriptedProvider(text=text)

    decision = direct(db, _input(state=ConversationState.COLLECTING_PHONE), provider)

    assert decision.action == "SEND_RESPONSE"
    assert decision.new_state == ConversationState.COLLECTING_PHONE
    assert decision.response == FALLBACK_REPLIES[ConversationState.COLLECTING_PHONE]
    assert decision.confidence == FALLBACK_CONFIDENCE
    # the call was billed even though its output was unusable
    assert db.query(ApiUsage).count() == 1


def test_provider_error_falls_back_and_logs_partial_usage():
    db = _build_db()
    provider = _ScriptedProvider(error=LLMProviderError("timeout", usage=TokenUsage(input_tokens=50)))

    decision = direct(db, _input(state=ConversationState.CONFIRMING_ORDER), provider)

    assert decision.response == FALLBACK_REPLIES[ConversationState.CONFIRMING_ORDER]
    assert decision.new_state == ConversationState.CONFIRMING_ORDER
    assert db.query(ApiUsage).one().input_tokens == 50


def test_every_state_has_a_fallback_reply():
    assert set(FALLBACK_REPLIES) == set(ConversationState)


def test_mock_provider_is_free_and_answers_help():
    db = _build_db()

    decision = direct(db, _input("help please"), MockLLMProvider())

    assert decision.action == "SHOW_HELP"
    assert db.query(ApiUsage).count() == 0


def test_decision_union_rejects_missing_payload():
    with pytest.raises(ValidationError):
        parse_decision({"action": "SEARCH_PRODUCTS", "response": "x"})

    decision = parse_decision({"action": "ADD_TO_CART", "response": "ok", "actionData": {"productId": 7}})
    assert decision.action_data.product_id == "7"
