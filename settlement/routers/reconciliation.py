"""
Reconciliation API endpoints: payout feed, ambiguity review, sweeper
findings, repair primitives and the amount-match exchange rate.
"""
from __future__ import annotations

import logging
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from settlement.database import get_db
from settlement.errors import SettlementError
from settlement.models import AmbiguousMatchModel, AnomalyModel, PayoutModel
from settlement.reconciliation import repairs
from settlement.reconciliation.matching import MatchingEngine
from settlement.reconciliation.rates import ExchangeRateService
from settlement.reconciliation.signals import SettlementSignals
from settlement.reconciliation.sweeper import Sweeper
from settlement.routers.deps import get_engine, get_rates, get_signals, http_error
from settlement.schemas import (
    AmbiguityResponse,
    AnomalyResponse,
    BindRequest,
    ExchangeRateResponse,
    ExchangeRateUpdate,
    LinkRequest,
    LinkResult,
    MergeAdvertisementRequest,
    PayoutResponse,
    PayoutSyncRequest,
    PayoutSyncResponse,
    RepairResponse,
    ResolveAmbiguityRequest,
    SwapRequest,
    SweepReport,
    UnbindRequest,
    UnlinkRequest,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def transform_ambiguity(model: AmbiguousMatchModel) -> AmbiguityResponse:
    return AmbiguityResponse(
        id=model.id,
        subject_type=model.subject_type,
        subject_id=model.subject_id,
        candidate_ids=list(model.candidate_ids or []),
        status=model.status,
        resolution=model.resolution,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def transform_anomaly(model: AnomalyModel) -> AnomalyResponse:
    return AnomalyResponse(
        id=model.id,
        kind=model.kind,
        subject_id=model.subject_id,
        detail=model.detail_json or {},
        status=model.status,
        occurrences=model.occurrences,
        first_seen_at=model.first_seen_at,
        last_seen_at=model.last_seen_at,
    )


def transform_repair(result: repairs.RepairResult) -> RepairResponse:
    return RepairResponse(action=result.action, changed=result.changed, detail=result.detail)


# ── POST /api/payouts/sync ───────────────────────────────────────────────
@router.post("/payouts/sync", response_model=PayoutSyncResponse)
def sync_payouts(req: PayoutSyncRequest, db: Session = Depends(get_db)):
    """Upsert payouts from the gateway feed. Link fields are never touched."""
    created = updated = 0
    for item in req.payouts:
        amounts = {str(code): str(value) for code, value in item.amount_by_currency.items()}
        row = db.query(PayoutModel).filter(PayoutModel.gateway_payout_id == item.gateway_payout_id).first()
        if row is None:
            db.add(PayoutModel(
                id=str(uuid.uuid4()),
                gateway_payout_id=item.gateway_payout_id,
                status=item.status,
                amount_by_currency=amounts,
                wallet=item.wallet,
                advertisement_id=item.advertisement_id,
            ))
            created += 1
            continue
        row.status = item.status
        row.amount_by_currency = amounts
        row.wallet = item.wallet
        if item.advertisement_id is not None:
            row.advertisement_id = item.advertisement_id
        updated += 1
    db.commit()
    logger.info("Payout sync: %d created, %d updated", created, updated)
    return PayoutSyncResponse(created=created, updated=updated)


# ── GET /api/payouts/{payout_id} ─────────────────────────────────────────
@router.get("/payouts/{payout_id}", response_model=PayoutResponse)
def get_payout(payout_id: str, db: Session = Depends(get_db)):
    payout = db.query(PayoutModel).filter(PayoutModel.id == payout_id).first()
    if not payout:
        raise HTTPException(status_code=404, detail="Payout not found")
    owner = repairs.owning_transaction(db, payout_id)
    return PayoutResponse(
        id=payout.id,
        gateway_payout_id=payout.gateway_payout_id,
        status=payout.status,
        amount_by_currency=payout.amount_by_currency or {},
        wallet=payout.wallet,
        linked_receipt_id=payout.linked_receipt_id,
        advertisement_id=payout.advertisement_id,
        transaction_id=owner.id if owner else None,
        created_at=payout.created_at,
    )


# ── GET /api/ambiguities ─────────────────────────────────────────────────
@router.get("/ambiguities", response_model=List[AmbiguityResponse])
def list_ambiguities(status: Optional[str] = "open", db: Session = Depends(get_db)):
    query = db.query(AmbiguousMatchModel)
    if status:
        query = query.filter(AmbiguousMatchModel.status == status)
    rows = query.order_by(AmbiguousMatchModel.created_at.desc()).all()
    return [transform_ambiguity(r) for r in rows]


# ── POST /api/ambiguities/{ambiguity_id}/resolve ─────────────────────────
@router.post("/ambiguities/{ambiguity_id}/resolve", response_model=LinkResult)
def resolve_ambiguity(
    ambiguity_id: str,
    req: ResolveAmbiguityRequest,
    engine: MatchingEngine = Depends(get_engine),
):
    choice = req.transaction_id or req.payout_id
    if not choice:
        raise HTTPException(status_code=400, detail="payout_id or transaction_id is required")
    try:
        return engine.resolve_ambiguity(ambiguity_id, choice, note=req.note)
    except SettlementError as exc:
        raise http_error(exc) from exc


# ── GET /api/anomalies ───────────────────────────────────────────────────
@router.get("/anomalies", response_model=List[AnomalyResponse])
def list_anomalies(
    kind: Optional[str] = None,
    status: Optional[str] = None,
    db: Session = Depends(get_db),
):
    query = db.query(AnomalyModel)
    if kind:
        query = query.filter(AnomalyModel.kind == kind)
    if status:
        query = query.filter(AnomalyModel.status == status)
    rows = query.order_by(AnomalyModel.last_seen_at.desc()).all()
    return [transform_anomaly(r) for r in rows]


# ── POST /api/sweep ──────────────────────────────────────────────────────
@router.post("/sweep", response_model=SweepReport)
def sweep(engine: MatchingEngine = Depends(get_engine)):
    return Sweeper(engine.db, engine).run_once()


# ── POST /api/repairs/* ──────────────────────────────────────────────────
@router.post("/repairs/link", response_model=RepairResponse)
def repair_link(
    req: LinkRequest,
    db: Session = Depends(get_db),
    signals: SettlementSignals = Depends(get_signals),
):
    try:
        result = repairs.link_receipt(db, req.receipt_id, req.payout_id, signals=signals)
    except SettlementError as exc:
        raise http_error(exc) from exc
    return transform_repair(result)


@router.post("/repairs/unlink", response_model=RepairResponse)
def repair_unlink(req: UnlinkRequest, db: Session = Depends(get_db)):
    try:
        result = repairs.unlink_receipt(db, req.payout_id)
    except SettlementError as exc:
        raise http_error(exc) from exc
    return transform_repair(result)


@router.post("/repairs/bind", response_model=RepairResponse)
def repair_bind(
    req: BindRequest,
    db: Session = Depends(get_db),
    signals: SettlementSignals = Depends(get_signals),
):
    try:
        result = repairs.bind_payout(db, req.transaction_id, req.payout_id, signals=signals)
    except SettlementError as exc:
        raise http_error(exc) from exc
    return transform_repair(result)


@router.post("/repairs/unbind", response_model=RepairResponse)
def repair_unbind(req: UnbindRequest, db: Session = Depends(get_db)):
    try:
        result = repairs.unbind_payout(db, req.transaction_id)
    except SettlementError as exc:
        raise http_error(exc) from exc
    return transform_repair(result)


@router.post("/repairs/swap", response_model=RepairResponse)
def repair_swap(req: SwapRequest, db: Session = Depends(get_db)):
    try:
        result = repairs.swap_payouts(db, req.order_transaction_id, req.donor_transaction_id)
    except SettlementError as exc:
        raise http_error(exc) from exc
    return transform_repair(result)


@router.post("/repairs/merge-advertisement", response_model=RepairResponse)
def repair_merge_advertisement(req: MergeAdvertisementRequest, db: Session = Depends(get_db)):
    try:
        result = repairs.merge_placeholder_advertisement(db, req.placeholder_id, req.real_id)
    except SettlementError as exc:
        raise http_error(exc) from exc
    return transform_repair(result)


# ── GET/PUT /api/exchange-rate ───────────────────────────────────────────
@router.get("/exchange-rate", response_model=ExchangeRateResponse)
def get_exchange_rate(rates: ExchangeRateService = Depends(get_rates)):
    return ExchangeRateResponse(rate=rates.rate, updated_at=rates.updated_at)


@router.put("/exchange-rate", response_model=ExchangeRateResponse)
def set_exchange_rate(req: ExchangeRateUpdate, rates: ExchangeRateService = Depends(get_rates)):
    rates.set_rate(req.rate)
    return ExchangeRateResponse(rate=rates.rate, updated_at=rates.updated_at)
