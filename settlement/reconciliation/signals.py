"""
Outbound settlement signals.

The asset-release collaborator subscribes here; the core only notifies it
when a transaction reaches ``payment_confirmed``.
"""
from __future__ import annotations

import logging
from typing import Callable

logger = logging.getLogger(__name__)

Listener = Callable[[str, str, str], None]  # (transaction_id, from_status, to_status)


class SettlementSignals:
    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def payment_confirmed(self, transaction_id: str, from_status: str) -> None:
        logger.info("Transaction %s payment_confirmed (from %s)", transaction_id, from_status)
        for listener in list(self._listeners):
            try:
                listener(transaction_id, from_status, "payment_confirmed")
            except Exception:
                # transition already committed
                logger.exception("Settlement listener %r failed for %s", listener, transaction_id)
