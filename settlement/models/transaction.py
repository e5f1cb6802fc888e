"""
Trade aggregate models: advertisements, transactions and their timeline.
"""
from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, Numeric, String, Text

from settlement.database import Base


class AdvertisementModel(Base):
    """Sale advertisement posted on the trading venue."""
    __tablename__ = "advertisements"

    id = Column(String, primary_key=True)
    external_ad_id = Column(String, nullable=False, index=True)  # venue id, "temp_..." for placeholders
    account_id = Column(String, nullable=False, index=True)
    quantity = Column(Numeric(24, 8), nullable=False)  # crypto amount
    price = Column(Numeric(18, 4))
    payment_method = Column(String)
    is_placeholder = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class TransactionModel(Base):
    """Trade aggregate root."""
    __tablename__ = "transactions"

    id = Column(String, primary_key=True)
    order_id = Column(String, index=True)  # assigned by the venue
    advertisement_id = Column(String, index=True)
    # Not a foreign key: a dangling reference must be representable so the
    # sweeper can find and clear it.
    payout_id = Column(String, unique=True, index=True)
    status = Column(String, nullable=False, default="pending", index=True)
    chat_step = Column(Integer, nullable=False, default=0)
    amount = Column(Numeric(18, 2))
    counterparty_name = Column(String)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime)


class TransactionEventModel(Base):
    """Transaction status timeline."""
    __tablename__ = "transaction_events"

    id = Column(String, primary_key=True)
    transaction_id = Column(String, nullable=False, index=True)
    from_status = Column(String)
    to_status = Column(String, nullable=False)
    reason = Column(Text)
    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False)
