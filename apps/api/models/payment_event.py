"""Processed payment webhook events, kept for idempotent crediting."""

from sqlalchemy import Column, DateTime, Integer, String
from sqlalchemy.sql import func

from database import Base


class ProcessedPaymentEvent(Base):
    """A provider event that already resulted in a credit grant."""

    __tablename__ = "processed_payment_events"

    event_id = Column(String, primary_key=True)
    checkout_session_id = Column(String, nullable=True, unique=True)
    user_id = Column(String, nullable=False, index=True)
    event_type = Column(String, nullable=False)
    credits_granted = Column(Integer, nullable=False)
    amount_total = Column(Integer, nullable=True)
    processed_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)
