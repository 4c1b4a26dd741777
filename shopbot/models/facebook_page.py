from sqlalchemy import Column, DateTime, Integer, String, func

from shopbot.core.database import Base


class FacebookPage(Base):
    __tablename__ = "facebook_pages"

    id = Column(String, primary_key=True)
    workspace_id = Column(Integer, index=True, nullable=False)
    page_name = Column(String(200), nullable=True)
    access_token = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
