"""
Payout model (fiat obligation synced from the payment gateway).
"""
from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Column, DateTime, Integer, String

from settlement.database import Base


class PayoutModel(Base):
    """Payout mirrored from the upstream gateway."""
    __tablename__ = "payouts"

    id = Column(String, primary_key=True)
    gateway_payout_id = Column(String, nullable=False, unique=True, index=True)
    status = Column(Integer, nullable=False, index=True)  # opaque upstream code
    amount_by_currency = Column(JSON, nullable=False, default=dict)  # {"643": 4500}
    wallet = Column(String)  # card / phone / free-form destination
    linked_receipt_id = Column(String, unique=True, index=True)  # at most one receipt
    advertisement_id = Column(String, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def fiat_amount(self, currency_code: str) -> Decimal | None:
        """Return the amount for *currency_code* or ``None`` if absent."""
        value = (self.amount_by_currency or {}).get(str(currency_code))
        if value is None:
            return None
        return Decimal(str(value))
