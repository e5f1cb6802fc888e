"""
Link / bind primitives and the repair operations built on them.

Every write to ``payouts.linked_receipt_id`` or ``transactions.payout_id``
goes through a conditional UPDATE (compare-and-set) so that two workers
reading the same free candidate cannot both claim it. The unique indexes on
both columns back this up.

Repairs check the current state before acting: re-running one that already
succeeded changes nothing and reports ``changed=False``.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.config import settings
from settlement.errors import IntegrityViolation, RecordNotFound
from settlement.models import (
    AdvertisementModel,
    LinkEventModel,
    PayoutModel,
    ReceiptModel,
    TransactionEventModel,
    TransactionModel,
)
from settlement.reconciliation.signals import SettlementSignals
from settlement.reconciliation.state_machine import CONFIRMABLE, notify, transition

logger = logging.getLogger(__name__)


@dataclass
class RepairResult:
    action: str
    changed: bool
    detail: dict[str, Any] = field(default_factory=dict)
    events: list[TransactionEventModel] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def get_payout(db: Session, payout_id: str) -> PayoutModel:
    row = db.query(PayoutModel).filter(PayoutModel.id == payout_id).first()
    if not row:
        raise RecordNotFound(f"Payout not found: {payout_id}")
    return row


def get_transaction(db: Session, transaction_id: str) -> TransactionModel:
    row = db.query(TransactionModel).filter(TransactionModel.id == transaction_id).first()
    if not row:
        raise RecordNotFound(f"Transaction not found: {transaction_id}")
    return row


def get_receipt(db: Session, receipt_id: str) -> ReceiptModel:
    row = db.query(ReceiptModel).filter(ReceiptModel.id == receipt_id).first()
    if not row:
        raise RecordNotFound(f"Receipt not found: {receipt_id}")
    return row


def owning_transaction(db: Session, payout_id: str) -> Optional[TransactionModel]:
    return db.query(TransactionModel).filter(TransactionModel.payout_id == payout_id).first()


def is_placeholder(ad: AdvertisementModel) -> bool:
    return bool(ad.is_placeholder) or (ad.external_ad_id or "").startswith(
        settings.PLACEHOLDER_AD_PREFIX
    )


def record_event(
    db: Session,
    action: str,
    method: str,
    receipt_id: Optional[str] = None,
    payout_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    detail: Optional[dict[str, Any]] = None,
) -> LinkEventModel:
    event = LinkEventModel(
        id=str(uuid.uuid4()),
        action=action,
        method=method,
        receipt_id=receipt_id,
        payout_id=payout_id,
        transaction_id=transaction_id,
        detail_json=detail or {},
        occurred_at=datetime.utcnow(),
    )
    db.add(event)
    return event


# ---------------------------------------------------------------------------
# Compare-and-set writes
# ---------------------------------------------------------------------------

def cas_link(db: Session, receipt_id: str, payout_id: str) -> bool:
    """Set ``payouts.linked_receipt_id`` only if it is still empty.

    A unique-index conflict (the receipt got linked elsewhere meanwhile)
    rolls the session back and raises ``IntegrityViolation``.
    """
    db.flush()
    try:
        result = db.execute(
            update(PayoutModel)
            .where(PayoutModel.id == payout_id, PayoutModel.linked_receipt_id.is_(None))
            .values(linked_receipt_id=receipt_id, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
    except IntegrityError as exc:
        db.rollback()
        raise IntegrityViolation(f"Receipt {receipt_id} is already linked to another payout") from exc
    if result.rowcount == 1:
        db.expire_all()
        return True
    return False


def cas_bind(db: Session, transaction_id: str, payout_id: str) -> bool:
    """Set ``transactions.payout_id`` only if it is still empty.

    Raises ``IntegrityViolation`` (after rolling back) when another
    transaction already holds the payout.
    """
    db.flush()
    try:
        result = db.execute(
            update(TransactionModel)
            .where(TransactionModel.id == transaction_id, TransactionModel.payout_id.is_(None))
            .values(payout_id=payout_id, updated_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
    except IntegrityError as exc:
        db.rollback()
        raise IntegrityViolation(f"Payout {payout_id} is already held by another transaction") from exc
    if result.rowcount == 1:
        db.expire_all()
        return True
    return False


def _cas_clear_transaction(db: Session, transaction_id: str, expected: str) -> bool:
    db.flush()
    result = db.execute(
        update(TransactionModel)
        .where(TransactionModel.id == transaction_id, TransactionModel.payout_id == expected)
        .values(payout_id=None, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.expire_all()
    return result.rowcount == 1


def confirm_owner(
    db: Session, payout_id: str, reason: str
) -> Optional[TransactionEventModel]:
    """Advance the transaction owning *payout_id* to ``payment_confirmed``."""
    tx = owning_transaction(db, payout_id)
    if tx is None:
        return None
    if tx.status not in {s.value for s in CONFIRMABLE}:
        logger.info(
            "Transaction %s owning payout %s is %s; not confirming", tx.id, payout_id, tx.status
        )
        return None
    return transition(db, tx, "payment_confirmed", reason=reason)


def _finish(db: Session, result: RepairResult, commit: bool, signals: Optional[SettlementSignals]) -> RepairResult:
    if commit:
        db.commit()
        for event in result.events:
            notify(signals, event)
    return result


# ---------------------------------------------------------------------------
# Receipt ↔ payout
# ---------------------------------------------------------------------------

def link_receipt(
    db: Session,
    receipt_id: str,
    payout_id: str,
    method: str = "manual",
    signals: Optional[SettlementSignals] = None,
    commit: bool = True,
) -> RepairResult:
    """Link a parsed receipt to a payout and confirm the owning transaction."""
    receipt = get_receipt(db, receipt_id)
    payout = get_payout(db, payout_id)
    if receipt.parse_status != "ok":
        raise IntegrityViolation(f"Receipt {receipt_id} is not parsed (status {receipt.parse_status})")
    if payout.linked_receipt_id == receipt_id:
        return RepairResult("link", False, {"receipt_id": receipt_id, "payout_id": payout_id})
    if payout.linked_receipt_id is not None:
        raise IntegrityViolation(
            f"Payout {payout_id} is already linked to receipt {payout.linked_receipt_id}"
        )
    other = db.query(PayoutModel).filter(PayoutModel.linked_receipt_id == receipt_id).first()
    if other is not None:
        raise IntegrityViolation(f"Receipt {receipt_id} is already linked to payout {other.id}")

    if not cas_link(db, receipt_id, payout_id):
        db.refresh(payout)
        if payout.linked_receipt_id == receipt_id:
            return RepairResult("link", False, {"receipt_id": receipt_id, "payout_id": payout_id})
        raise IntegrityViolation(f"Payout {payout_id} was linked concurrently")

    receipt.match_status = "linked"
    receipt.matched_at = datetime.utcnow()
    tx = owning_transaction(db, payout_id)
    record_event(
        db, "link", method,
        receipt_id=receipt_id, payout_id=payout_id,
        transaction_id=tx.id if tx else None,
        detail={"amount": str(receipt.amount) if receipt.amount is not None else None},
    )
    result = RepairResult(
        "link", True,
        {"receipt_id": receipt_id, "payout_id": payout_id, "transaction_id": tx.id if tx else None},
    )
    event = confirm_owner(db, payout_id, reason=f"receipt {receipt_id} linked ({method})")
    if event is not None:
        result.events.append(event)
    logger.info("Linked receipt %s -> payout %s (%s)", receipt_id, payout_id, method)
    return _finish(db, result, commit, signals)


def unlink_receipt(db: Session, payout_id: str, method: str = "manual", commit: bool = True) -> RepairResult:
    """Clear a payout's receipt link. The transaction status is left as is."""
    payout = get_payout(db, payout_id)
    receipt_id = payout.linked_receipt_id
    if receipt_id is None:
        return RepairResult("unlink", False, {"payout_id": payout_id})

    db.flush()
    result = db.execute(
        update(PayoutModel)
        .where(PayoutModel.id == payout_id, PayoutModel.linked_receipt_id == receipt_id)
        .values(linked_receipt_id=None, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    )
    db.expire_all()
    if result.rowcount != 1:
        raise IntegrityViolation(f"Payout {payout_id} link changed concurrently")

    receipt = db.query(ReceiptModel).filter(ReceiptModel.id == receipt_id).first()
    if receipt is not None:
        # kept out of the automatic matching pass until an operator acts
        receipt.match_status = "unlinked"
        receipt.matched_at = None
    tx = owning_transaction(db, payout_id)
    if tx is not None and tx.status == "payment_confirmed":
        logger.warning(
            "Unlinked receipt %s from payout %s; transaction %s stays payment_confirmed",
            receipt_id, payout_id, tx.id,
        )
    record_event(db, "unlink", method, receipt_id=receipt_id, payout_id=payout_id,
                 transaction_id=tx.id if tx else None)
    logger.info("Unlinked receipt %s from payout %s", receipt_id, payout_id)
    return _finish(db, RepairResult("unlink", True, {"payout_id": payout_id, "receipt_id": receipt_id}), commit, None)


# ---------------------------------------------------------------------------
# Transaction ↔ payout
# ---------------------------------------------------------------------------

def bind_payout(
    db: Session,
    transaction_id: str,
    payout_id: str,
    method: str = "manual",
    signals: Optional[SettlementSignals] = None,
    commit: bool = True,
    detail: Optional[dict[str, Any]] = None,
) -> RepairResult:
    """Attach a payout to a transaction that holds none."""
    tx = get_transaction(db, transaction_id)
    payout = get_payout(db, payout_id)
    if tx.payout_id == payout_id:
        return RepairResult("bind", False, {"transaction_id": transaction_id, "payout_id": payout_id})
    if tx.payout_id is not None:
        raise IntegrityViolation(f"Transaction {transaction_id} already holds payout {tx.payout_id}")
    holder = owning_transaction(db, payout_id)
    if holder is not None:
        raise IntegrityViolation(f"Payout {payout_id} is already held by transaction {holder.id}")

    if not cas_bind(db, transaction_id, payout_id):
        db.refresh(tx)
        if tx.payout_id == payout_id:
            return RepairResult("bind", False, {"transaction_id": transaction_id, "payout_id": payout_id})
        raise IntegrityViolation(f"Transaction {transaction_id} was bound concurrently")

    record_event(db, "bind", method, payout_id=payout_id, transaction_id=transaction_id,
                 receipt_id=payout.linked_receipt_id, detail=detail)
    result = RepairResult("bind", True, {"transaction_id": transaction_id, "payout_id": payout_id})
    if payout.linked_receipt_id is not None:
        event = confirm_owner(db, payout_id, reason=f"payout {payout_id} bound ({method})")
        if event is not None:
            result.events.append(event)
    logger.info("Bound payout %s -> transaction %s (%s)", payout_id, transaction_id, method)
    return _finish(db, result, commit, signals)


def unbind_payout(db: Session, transaction_id: str, method: str = "manual", commit: bool = True) -> RepairResult:
    """Clear a transaction's payout reference, dangling or not."""
    tx = get_transaction(db, transaction_id)
    former = tx.payout_id
    if former is None:
        return RepairResult("unbind", False, {"transaction_id": transaction_id})
    dangling = db.query(PayoutModel.id).filter(PayoutModel.id == former).first() is None
    if not _cas_clear_transaction(db, transaction_id, former):
        raise IntegrityViolation(f"Transaction {transaction_id} payout changed concurrently")
    record_event(db, "unbind", method, payout_id=former, transaction_id=transaction_id,
                 detail={"dangling": dangling})
    logger.info("Unbound payout %s from transaction %s (dangling=%s)", former, transaction_id, dangling)
    return _finish(
        db,
        RepairResult("unbind", True, {"transaction_id": transaction_id, "payout_id": former, "dangling": dangling}),
        commit,
        None,
    )


def _reassign(
    db: Session, order_tx_id: str, donor_tx_id: str, moved: str, former: Optional[str]
) -> Optional[str]:
    if not _cas_clear_transaction(db, donor_tx_id, moved):
        raise IntegrityViolation(f"Transaction {donor_tx_id} payout changed concurrently")
    if former is not None and not _cas_clear_transaction(db, order_tx_id, former):
        raise IntegrityViolation(f"Transaction {order_tx_id} payout changed concurrently")

    if not cas_bind(db, order_tx_id, moved):
        raise IntegrityViolation(f"Could not bind payout {moved} to {order_tx_id}")
    if former is None:
        return None
    if db.query(PayoutModel.id).filter(PayoutModel.id == former).first() is None:
        logger.info("Swap: former payout %s of %s no longer exists; dropped", former, order_tx_id)
        return None
    if not cas_bind(db, donor_tx_id, former):
        raise IntegrityViolation(f"Could not bind payout {former} to {donor_tx_id}")
    return former


def swap_payouts(db: Session, order_tx_id: str, donor_tx_id: str, method: str = "manual") -> RepairResult:
    """Move the donor's payout onto the transaction that holds the order.

    Both references are cleared first so the unique index on
    ``transactions.payout_id`` holds at every step. The order holder's former
    payout goes to the donor only if it still exists.
    """
    if order_tx_id == donor_tx_id:
        raise IntegrityViolation("Cannot swap a transaction with itself")
    order_tx = get_transaction(db, order_tx_id)
    donor_tx = get_transaction(db, donor_tx_id)

    last = (
        db.query(LinkEventModel)
        .filter(
            LinkEventModel.action == "swap",
            LinkEventModel.transaction_id == order_tx_id,
        )
        .order_by(LinkEventModel.occurred_at.desc())
        .first()
    )
    if last is not None:
        after = (last.detail_json or {}).get("after", {})
        if (
            (last.detail_json or {}).get("donor_transaction_id") == donor_tx_id
            and after.get("order") == order_tx.payout_id
            and after.get("donor") == donor_tx.payout_id
        ):
            return RepairResult("swap", False, dict(last.detail_json))

    if not order_tx.order_id:
        raise IntegrityViolation(f"Transaction {order_tx_id} has no order")
    if donor_tx.order_id:
        raise IntegrityViolation(f"Transaction {donor_tx_id} already has an order")
    if donor_tx.payout_id is None:
        raise IntegrityViolation(f"Transaction {donor_tx_id} holds no payout")

    moved = donor_tx.payout_id
    former = order_tx.payout_id

    try:
        donor_gets = _reassign(db, order_tx_id, donor_tx_id, moved, former)
    except IntegrityViolation:
        db.rollback()
        raise

    detail = {
        "order_transaction_id": order_tx_id,
        "donor_transaction_id": donor_tx_id,
        "before": {"order": former, "donor": moved},
        "after": {"order": moved, "donor": donor_gets},
    }
    record_event(db, "swap", method, payout_id=moved, transaction_id=order_tx_id, detail=detail)
    db.commit()
    logger.info("Swapped payouts: %s now holds %s, %s holds %s", order_tx_id, moved, donor_tx_id, donor_gets)
    return RepairResult("swap", True, detail)


# ---------------------------------------------------------------------------
# Placeholder advertisements
# ---------------------------------------------------------------------------

def merge_placeholder_advertisement(
    db: Session, placeholder_id: str, real_id: str, method: str = "manual", commit: bool = True
) -> RepairResult:
    """Move every transaction and payout off a placeholder ad, then delete it.

    The move is unconditional: a placeholder never keeps dependents, so the
    delete always follows.
    """
    real = db.query(AdvertisementModel).filter(AdvertisementModel.id == real_id).first()
    if real is None:
        raise RecordNotFound(f"Advertisement not found: {real_id}")
    placeholder = db.query(AdvertisementModel).filter(AdvertisementModel.id == placeholder_id).first()
    if placeholder is None:
        merged = db.query(LinkEventModel).filter(LinkEventModel.action == "merge").all()
        if any((e.detail_json or {}).get("placeholder_id") == placeholder_id for e in merged):
            return RepairResult("merge", False, {"placeholder_id": placeholder_id, "real_id": real_id})
        raise RecordNotFound(f"Advertisement not found: {placeholder_id}")
    if not is_placeholder(placeholder):
        raise IntegrityViolation(f"Advertisement {placeholder_id} is not a placeholder")
    if is_placeholder(real):
        raise IntegrityViolation(f"Advertisement {real_id} is itself a placeholder")

    db.flush()
    moved_tx = db.execute(
        update(TransactionModel)
        .where(TransactionModel.advertisement_id == placeholder_id)
        .values(advertisement_id=real_id, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    moved_payouts = db.execute(
        update(PayoutModel)
        .where(PayoutModel.advertisement_id == placeholder_id)
        .values(advertisement_id=real_id, updated_at=datetime.utcnow())
        .execution_options(synchronize_session=False)
    ).rowcount
    db.expire_all()
    db.delete(placeholder)

    detail = {
        "placeholder_id": placeholder_id,
        "real_id": real_id,
        "transactions": moved_tx,
        "payouts": moved_payouts,
        "deleted": True,
    }
    record_event(db, "merge", method, detail=detail)
    logger.info(
        "Merged placeholder ad %s into %s (%d transactions, %d payouts)",
        placeholder_id, real_id, moved_tx, moved_payouts,
    )
    return _finish(db, RepairResult("merge", True, detail), commit, None)
