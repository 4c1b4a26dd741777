import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Float, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB

from shopbot.core.database import Base


class ImageRecognitionCache(Base):
    __tablename__ = "image_recognition_cache"

    image_hash = Column(String(64), primary_key=True)
    workspace_id = Column(Integer, index=True, nullable=False)
    # null product_id is a cached negative result
    product_id = Column(Integer, nullable=True)
    confidence = Column(Float, nullable=False, default=0)
    ai_response = Column(JSONB().with_variant(sa.JSON(), "sqlite"), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
