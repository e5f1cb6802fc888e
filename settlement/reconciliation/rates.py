"""
Exchange rate holder for the amount-based match path.

The rate is acquired elsewhere and pushed in through ``set_rate``. One
instance lives on ``app.state`` for the lifetime of the application; tests
build their own.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from decimal import Decimal

logger = logging.getLogger(__name__)


class ExchangeRateService:
    """Current crypto → fiat rate."""

    def __init__(self, rate: Decimal):
        self._lock = threading.Lock()
        self._rate = Decimal(str(rate))
        self._updated_at: datetime | None = None

    @property
    def rate(self) -> Decimal:
        with self._lock:
            return self._rate

    @property
    def updated_at(self) -> datetime | None:
        return self._updated_at

    def set_rate(self, rate: Decimal) -> None:
        rate = Decimal(str(rate))
        if rate <= 0:
            raise ValueError("exchange rate must be positive")
        with self._lock:
            previous, self._rate = self._rate, rate
            self._updated_at = datetime.utcnow()
        logger.info("Exchange rate updated: %s -> %s", previous, rate)

    def to_fiat(self, quantity: Decimal) -> Decimal:
        return Decimal(str(quantity)) * self.rate
