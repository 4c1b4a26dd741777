import sqlalchemy as sa
from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB

from shopbot.core.database import Base


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    workspace_id = Column(Integer, index=True, nullable=False)
    fb_page_id = Column(String, index=True, nullable=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), index=True, nullable=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True)
    order_number = Column(String(40), unique=True, index=True, nullable=False)

    customer_name = Column(String(120), nullable=False)
    customer_phone = Column(String(30), nullable=False)
    customer_address = Column(Text, nullable=False)

    product_price = Column(Numeric(12, 2), nullable=False, default=0)
    quantity = Column(Integer, nullable=False, default=1)
    product_size = Column(String(20), nullable=True)
    product_color = Column(String(40), nullable=True)
    delivery_charge = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(Numeric(12, 2), nullable=False, default=0)
    items = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)

    payment_last_two_digits = Column(String(2), nullable=True)
    status = Column(String(20), nullable=False, default="pending")
    payment_status = Column(String(20), nullable=False, default="unpaid")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
