import sqlalchemy as sa
from sqlalchemy import Boolean, Column, DateTime, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB

from shopbot.core.database import Base


_JSON = JSONB().with_variant(sa.JSON(), "sqlite")


class WorkspaceSettings(Base):
    __tablename__ = "workspace_settings"

    id = Column(Integer, primary_key=True)
    workspace_id = Column(Integer, unique=True, index=True, nullable=False)

    business_name = Column(String(200), nullable=True)
    greeting_message = Column(Text, nullable=True)
    conversation_tone = Column(String(20), nullable=True)
    bengali_percent = Column(Integer, nullable=True)
    use_emojis = Column(Boolean, nullable=True)
    confidence_threshold = Column(Integer, nullable=True)

    delivery_charge_inside_dhaka = Column(Integer, nullable=True)
    delivery_charge_outside_dhaka = Column(Integer, nullable=True)
    delivery_time = Column(String(80), nullable=True)

    payment_methods = Column(_JSON, nullable=True)
    payment_message = Column(Text, nullable=True)
    behavior_rules = Column(_JSON, nullable=True)
    fast_lane_messages = Column(_JSON, nullable=True)

    order_collection_style = Column(String(20), nullable=True)
    quick_form_prompt = Column(Text, nullable=True)
    quick_form_error = Column(Text, nullable=True)
    out_of_stock_message = Column(Text, nullable=True)
    collect_payment_digits = Column(Boolean, nullable=True)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
