import sqlalchemy as sa
from sqlalchemy import Column, DateTime, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB

from shopbot.core.database import Base


_JSON = JSONB().with_variant(sa.JSON(), "sqlite")


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True)
    workspace_id = Column(Integer, index=True, nullable=False)
    name = Column(String(200), nullable=False)
    price = Column(Numeric(12, 2), nullable=False)
    description = Column(Text, nullable=True)
    category = Column(String(80), nullable=True)

    # precomputed at upload time for tier 3 scoring
    search_keywords = Column(_JSON, nullable=True)
    # color names, used by the tier 3 fallback path
    dominant_colors = Column(_JSON, nullable=True)
    # {"aspectRatio": float, "dominantColors": [{"r", "g", "b"}]}
    visual_features = Column(_JSON, nullable=True)
    image_hash = Column(String(64), index=True, nullable=True)
    image_urls = Column(_JSON, nullable=True)

    sizes = Column(_JSON, nullable=True)
    colors = Column(_JSON, nullable=True)
    stock_quantity = Column(Integer, nullable=True)
    # [{"size": "M", "quantity": 3}]
    size_stock = Column(_JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
