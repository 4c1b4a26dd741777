import sqlalchemy as sa
from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship

from shopbot.core.database import Base


class Conversation(Base):
    __tablename__ = "conversations"
    __table_args__ = (UniqueConstraint("fb_page_id", "customer_psid", name="uq_conversation_page_customer"),)

    id = Column(Integer, primary_key=True)
    workspace_id = Column(Integer, index=True, nullable=False)
    fb_page_id = Column(String, index=True, nullable=False)
    customer_psid = Column(String, index=True, nullable=False)
    customer_name = Column(String(120), nullable=True)

    current_state = Column(String(40), nullable=False, default="IDLE")
    # serialized ConversationContext; state inside must equal current_state
    context = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)

    last_message_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by="Message.id",
    )


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), index=True, nullable=False)
    sender = Column(String(20), nullable=False)  # customer | bot
    message_text = Column(Text, nullable=True)
    message_type = Column(String(20), nullable=False, default="text")
    attachments = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)
    status = Column(String(20), nullable=False, default="received")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    conversation = relationship("Conversation", back_populates="messages")
