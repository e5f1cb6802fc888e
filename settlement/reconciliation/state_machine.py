"""
Transaction state machine.

    pending → chat_started → waiting_payment → payment_sent
    waiting_payment | payment_sent → payment_confirmed → completed
    any non-terminal → appeal | cancelled
    appeal → payment_confirmed | completed | cancelled

``completed`` and ``cancelled`` are terminal; only an administrative
override leaves them.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from settlement.errors import IntegrityViolation, InvalidTransition
from settlement.models import TransactionEventModel, TransactionModel
from settlement.reconciliation.signals import SettlementSignals

logger = logging.getLogger(__name__)


class TransactionStatus(str, Enum):
    PENDING = "pending"
    CHAT_STARTED = "chat_started"
    WAITING_PAYMENT = "waiting_payment"
    PAYMENT_SENT = "payment_sent"
    PAYMENT_CONFIRMED = "payment_confirmed"
    COMPLETED = "completed"
    APPEAL = "appeal"
    CANCELLED = "cancelled"


S = TransactionStatus

TERMINAL = frozenset({S.COMPLETED, S.CANCELLED})
CONFIRMABLE = frozenset({S.WAITING_PAYMENT, S.PAYMENT_SENT})

_FORWARD: dict[S, frozenset[S]] = {
    S.PENDING: frozenset({S.CHAT_STARTED}),
    S.CHAT_STARTED: frozenset({S.WAITING_PAYMENT}),
    S.WAITING_PAYMENT: frozenset({S.PAYMENT_SENT, S.PAYMENT_CONFIRMED}),
    S.PAYMENT_SENT: frozenset({S.PAYMENT_CONFIRMED}),
    S.PAYMENT_CONFIRMED: frozenset({S.COMPLETED}),
    S.APPEAL: frozenset({S.PAYMENT_CONFIRMED, S.COMPLETED, S.CANCELLED}),
}


def can_transition(from_status: str, to_status: str) -> bool:
    try:
        src, dst = S(from_status), S(to_status)
    except ValueError:
        return False
    if src in TERMINAL:
        return False
    if dst in (S.APPEAL, S.CANCELLED) and src != dst:
        return True
    return dst in _FORWARD.get(src, frozenset())


def transition(
    db: Session,
    tx: TransactionModel,
    to_status: str,
    reason: Optional[str] = None,
    override: bool = False,
) -> TransactionEventModel:
    """Move *tx* to *to_status* inside the caller's DB transaction.

    The write is conditional on the status the caller observed, so two
    workers cannot both advance the same transaction. The caller commits
    and then calls ``notify``.
    """
    try:
        to_status = S(to_status).value
    except ValueError:
        raise InvalidTransition(tx.status, to_status) from None

    from_status = tx.status
    if not can_transition(from_status, to_status):
        if not override:
            raise InvalidTransition(from_status, to_status)
        logger.warning(
            "Administrative override: transaction %s %s -> %s (%s)",
            tx.id, from_status, to_status, reason or "no reason given",
        )

    now = datetime.utcnow()
    values = {"status": to_status, "updated_at": now}
    if to_status == S.COMPLETED:
        values["completed_at"] = now

    db.flush()
    result = db.execute(
        update(TransactionModel)
        .where(TransactionModel.id == tx.id, TransactionModel.status == from_status)
        .values(**values)
    )
    if result.rowcount != 1:
        raise IntegrityViolation(f"Transaction {tx.id} changed status concurrently")
    db.refresh(tx)

    event = TransactionEventModel(
        id=str(uuid.uuid4()),
        transaction_id=tx.id,
        from_status=from_status,
        to_status=to_status,
        reason=reason,
        occurred_at=now,
    )
    db.add(event)
    db.flush()
    logger.info("Transaction %s: %s -> %s", tx.id, from_status, to_status)
    return event


def notify(signals: Optional[SettlementSignals], event: TransactionEventModel) -> None:
    """Fire outbound signals for a committed transition."""
    if signals is None:
        return
    if event.to_status == S.PAYMENT_CONFIRMED.value:
        signals.payment_confirmed(event.transaction_id, event.from_status)


def change_status(
    db: Session,
    tx: TransactionModel,
    to_status: str,
    reason: Optional[str] = None,
    override: bool = False,
    signals: Optional[SettlementSignals] = None,
) -> TransactionEventModel:
    """Transition, commit and notify in one call."""
    event = transition(db, tx, to_status, reason=reason, override=override)
    db.commit()
    notify(signals, event)
    return event
