from sqlalchemy import Column, DateTime, Integer, Numeric, String, func

from shopbot.core.database import Base


class ApiUsage(Base):
    __tablename__ = "api_usage"

    id = Column(Integer, primary_key=True)
    workspace_id = Column(Integer, index=True, nullable=False)
    api_type = Column(String(40), nullable=False)  # ai_director | openai_vision
    input_tokens = Column(Integer, nullable=False, default=0)
    output_tokens = Column(Integer, nullable=False, default=0)
    cost = Column(Numeric(12, 6), nullable=False, default=0)
    image_hash = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
