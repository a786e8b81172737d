"""Profile model holding the authoritative credit balance."""

from sqlalchemy import CheckConstraint, Column, DateTime, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Profile(Base):
    """One row per authenticated identity."""

    __tablename__ = "profiles"
    __table_args__ = (CheckConstraint("credits >= 0", name="ck_profiles_credits_non_negative"),)

    id = Column(String, primary_key=True)
    email = Column(String, nullable=False, default="")
    credits = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    # Relationships
    credit_entries = relationship("CreditLedger", back_populates="profile", cascade="all, delete-orphan")
    generations = relationship("Generation", back_populates="profile", cascade="all, delete-orphan")
