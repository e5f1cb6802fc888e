"""
Transaction API: view, administrative status change, timeline.
"""
from __future__ import annotations

import logging
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from settlement.database import get_db
from settlement.errors import SettlementError
from settlement.models import TransactionEventModel, TransactionModel
from settlement.reconciliation.signals import SettlementSignals
from settlement.reconciliation.state_machine import change_status
from settlement.routers.deps import get_signals, http_error
from settlement.schemas import StatusChangeRequest, TimelineEvent, TransactionResponse

logger = logging.getLogger(__name__)
router = APIRouter()


def transform_transaction(model: TransactionModel) -> TransactionResponse:
    """TransactionModel → TransactionResponse"""
    return TransactionResponse(
        id=model.id,
        order_id=model.order_id,
        advertisement_id=model.advertisement_id,
        payout_id=model.payout_id,
        status=model.status,
        chat_step=model.chat_step or 0,
        amount=model.amount,
        counterparty_name=model.counterparty_name,
        created_at=model.created_at,
        updated_at=model.updated_at,
        completed_at=model.completed_at,
    )


def _get_or_404(db: Session, transaction_id: str) -> TransactionModel:
    tx = db.query(TransactionModel).filter(TransactionModel.id == transaction_id).first()
    if not tx:
        raise HTTPException(status_code=404, detail="Transaction not found")
    return tx


# ── GET /api/transactions/{transaction_id} ───────────────────────────────
@router.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(transaction_id: str, db: Session = Depends(get_db)):
    return transform_transaction(_get_or_404(db, transaction_id))


# ── POST /api/transactions/{transaction_id}/status ───────────────────────
@router.post("/transactions/{transaction_id}/status", response_model=TransactionResponse)
def set_status(
    transaction_id: str,
    req: StatusChangeRequest,
    db: Session = Depends(get_db),
    signals: SettlementSignals = Depends(get_signals),
):
    tx = _get_or_404(db, transaction_id)
    try:
        change_status(db, tx, req.to_status, reason=req.reason, override=req.override, signals=signals)
    except SettlementError as exc:
        db.rollback()
        raise http_error(exc) from exc
    return transform_transaction(tx)


# ── GET /api/transactions/{transaction_id}/timeline ──────────────────────
@router.get("/transactions/{transaction_id}/timeline", response_model=List[TimelineEvent])
def get_timeline(transaction_id: str, db: Session = Depends(get_db)):
    _get_or_404(db, transaction_id)
    events = (
        db.query(TransactionEventModel)
        .filter(TransactionEventModel.transaction_id == transaction_id)
        .order_by(TransactionEventModel.occurred_at.asc())
        .all()
    )
    return [
        TimelineEvent(
            from_status=e.from_status,
            to_status=e.to_status,
            reason=e.reason,
            occurred_at=e.occurred_at,
        )
        for e in events
    ]
