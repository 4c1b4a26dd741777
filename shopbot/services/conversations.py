from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shopbot.conversation.state import ConversationState, context_to_json, create_empty_context
from shopbot.models.conversation import Conversation, Message


def get_conversation(db: Session, *, page_id: str, customer_psid: str) -> Conversation | None:
    return (
        db.query(Conversation)
        .filter(Conversation.fb_page_id == page_id, Conversation.customer_psid == customer_psid)
        .first()
    )


def get_or_create_conversation(
    db: Session,
    *,
    workspace_id: int,
    page_id: str,
    customer_psid: str,
) -> Conversation:
    """Committed on creation so messages can reference it before the reply is decided."""
    conversation = get_conversation(db, page_id=page_id, customer_psid=customer_psid)
    if conversation:
        return conversation

    conversation = Conversation(
        workspace_id=workspace_id,
        fb_page_id=page_id,
        customer_psid=customer_psid,
        current_state=ConversationState.IDLE.value,
        context=context_to_json(create_empty_context()),
    )
    db.add(conversation)
    try:
        db.commit()
    except IntegrityError:
        # created concurrently by another delivery for the same customer
        db.rollback()
        return get_conversation(db, page_id=page_id, customer_psid=customer_psid)
    db.refresh(conversation)
    return conversation


def add_message(
    db: Session,
    *,
    conversation_id: int,
    sender: str,
    text: str | None,
    message_type: str = "text",
    attachments: list[dict[str, Any]] | None = None,
    status: str = "received",
) -> Message:
    """Adds to the session without committing."""
    message = Message(
        conversation_id=conversation_id,
        sender=sender,
        message_text=text,
        message_type=message_type,
        attachments=attachments,
        status=status,
    )
    db.add(message)
    return message


def log_customer_message(
    db: Session,
    conversation: Conversation,
    *,
    text: str | None,
    message_type: str,
    attachments: list[dict[str, Any]] | None = None,
) -> Message:
    message = add_message(
        db,
        conversation_id=conversation.id,
        sender="customer",
        text=text,
        message_type=message_type,
        attachments=attachments,
    )
    conversation.last_message_at = datetime.now(timezone.utc)
    db.commit()
    return message


def load_history(db: Session, conversation_id: int, limit: int) -> list[Message]:
    """Most recent messages, oldest first."""
    recent = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.id.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(recent))
