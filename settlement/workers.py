"""
Background polling workers started from the application lifespan.

Each worker calls a blocking ``step`` in a thread every ``interval``
seconds. A step opens and closes its own database session; an exception
in one pass is logged and the loop carries on.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from settlement.config import settings
from settlement.database import SessionLocal
from settlement.pipeline.ingestion import parse_pending_receipts
from settlement.reconciliation.matching import MatchingEngine
from settlement.reconciliation.rates import ExchangeRateService
from settlement.reconciliation.signals import SettlementSignals
from settlement.reconciliation.sweeper import Sweeper

logger = logging.getLogger(__name__)


class PollingWorker:
    def __init__(self, name: str, interval: float, step: Callable[[], object]):
        self.name = name
        self.interval = interval
        self.step = step
        self._task: Optional[asyncio.Task] = None

    async def _loop(self) -> None:
        logger.info("Worker %s started (every %.1fs)", self.name, self.interval)
        while True:
            try:
                await asyncio.to_thread(self.step)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker %s pass failed", self.name)
            await asyncio.sleep(self.interval)

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._loop(), name=self.name)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("Worker %s stopped", self.name)


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def parse_step() -> None:
    db = SessionLocal()
    try:
        parse_pending_receipts(db)
    finally:
        db.close()


def make_match_step(rates: ExchangeRateService, signals: SettlementSignals) -> Callable[[], None]:
    def match_step() -> None:
        db = SessionLocal()
        try:
            MatchingEngine(db, rates, signals).run_pass()
        finally:
            db.close()
    return match_step


def make_sweep_step(rates: ExchangeRateService, signals: SettlementSignals) -> Callable[[], None]:
    def sweep_step() -> None:
        db = SessionLocal()
        try:
            Sweeper(db, MatchingEngine(db, rates, signals)).run_once()
        finally:
            db.close()
    return sweep_step


def build_workers(rates: ExchangeRateService, signals: SettlementSignals) -> list[PollingWorker]:
    return [
        PollingWorker("parse-retry", settings.PARSE_INTERVAL_SECONDS, parse_step),
        PollingWorker("matching", settings.MATCH_INTERVAL_SECONDS, make_match_step(rates, signals)),
        PollingWorker("sweeper", settings.SWEEP_INTERVAL_SECONDS, make_sweep_step(rates, signals)),
    ]
