"""Generation model for committed caption/hashtag results."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Generation(Base):
    """A generation result the user paid a credit for."""

    __tablename__ = "generations"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("profiles.id"), nullable=False, index=True)
    theme = Column(String, nullable=False)
    strategy = Column(String, nullable=False)
    caption = Column(Text, nullable=False)
    hashtags_json = Column(JSON, nullable=False, default=list)
    analysis = Column(Text, nullable=True)
    sources_json = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    profile = relationship("Profile", back_populates="generations")
