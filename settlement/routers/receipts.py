"""
Receipt API endpoints.

POST   /api/receipts/ingest          — upload a PDF → stored + parsed receipt
GET    /api/receipts                 — list receipts
GET    /api/receipts/quarantine      — receipts no layout could read
GET    /api/receipts/{id}            — one receipt
POST   /api/receipts/{id}/reparse    — re-run layouts on stored lines
POST   /api/receipts/{id}/match      — try to link it now
DELETE /api/receipts/{id}            — explicit purge
"""
from __future__ import annotations

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from sqlalchemy.orm import Session

from settlement.database import get_db
from settlement.errors import SettlementError
from settlement.models import ReceiptModel
from settlement.pipeline import ingestion
from settlement.reconciliation.matching import MatchingEngine
from settlement.routers.deps import get_engine, http_error
from settlement.schemas import (
    IngestResponse,
    LinkResult,
    QuarantineEntry,
    ReceiptResponse,
)

logger = logging.getLogger(__name__)
router = APIRouter()


def transform_receipt(row: ReceiptModel, db: Session) -> ReceiptResponse:
    payout = ingestion.linked_payout(db, row.id)
    return ReceiptResponse(
        id=row.id,
        created_at=row.created_at,
        filename=row.filename,
        content_hash=row.content_hash,
        parse_status=row.parse_status,
        parse_error=row.parse_error,
        parse_error_line=row.parse_error_line,
        layout=row.layout,
        match_status=row.match_status,
        amount=row.amount,
        transaction_date=row.transaction_date,
        sender_name=row.sender_name,
        recipient_name=row.recipient_name,
        recipient_phone=row.recipient_phone,
        recipient_card=row.recipient_card,
        recipient_bank=row.recipient_bank,
        transfer_kind=row.transfer_kind,
        operation_id=row.operation_id,
        bank=row.bank,
        payout_id=payout.id if payout else None,
    )


def _get_or_404(db: Session, receipt_id: str) -> ReceiptModel:
    row = db.query(ReceiptModel).filter(ReceiptModel.id == receipt_id).first()
    if not row:
        logger.warning("Receipt not found: %s", receipt_id)
        raise HTTPException(status_code=404, detail="Receipt not found")
    return row


# ── POST /api/receipts/ingest ────────────────────────────────────────────
@router.post("/receipts/ingest", response_model=IngestResponse)
def ingest(
    file: UploadFile = File(...),
    source: Optional[str] = Form(None),
    db: Session = Depends(get_db),
):
    document = file.file.read()
    if not document:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")

    metadata = {}
    if source:
        try:
            metadata = json.loads(source)
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="source must be a JSON object") from None
        if not isinstance(metadata, dict):
            raise HTTPException(status_code=400, detail="source must be a JSON object")

    logger.info("Ingest: filename=%s  size=%d", file.filename, len(document))
    row, deduplicated = ingestion.ingest_document(
        db, document, filename=file.filename or "receipt.pdf", metadata=metadata
    )
    return IngestResponse(receipt=transform_receipt(row, db), deduplicated=deduplicated)


# ── GET /api/receipts ────────────────────────────────────────────────────
@router.get("/receipts", response_model=List[ReceiptResponse])
def list_receipts(
    parse_status: Optional[str] = None,
    match_status: Optional[str] = None,
    db: Session = Depends(get_db),
):
    query = db.query(ReceiptModel)
    if parse_status:
        query = query.filter(ReceiptModel.parse_status == parse_status)
    if match_status:
        query = query.filter(ReceiptModel.match_status == match_status)
    rows = query.order_by(ReceiptModel.created_at.desc()).all()
    logger.info("Found %d receipts in database", len(rows))
    return [transform_receipt(r, db) for r in rows]


# ── GET /api/receipts/quarantine ─────────────────────────────────────────
@router.get("/receipts/quarantine", response_model=List[QuarantineEntry])
def quarantine(db: Session = Depends(get_db)):
    return [
        QuarantineEntry(
            id=r.id,
            filename=r.filename,
            raw_text=r.raw_text,
            lines=r.lines_json or [],
            reason=r.parse_error,
            error_line=r.parse_error_line,
            created_at=r.created_at,
        )
        for r in ingestion.list_quarantine(db)
    ]


# ── GET /api/receipts/{receipt_id} ───────────────────────────────────────
@router.get("/receipts/{receipt_id}", response_model=ReceiptResponse)
def get_receipt(receipt_id: str, db: Session = Depends(get_db)):
    return transform_receipt(_get_or_404(db, receipt_id), db)


# ── POST /api/receipts/{receipt_id}/reparse ──────────────────────────────
@router.post("/receipts/{receipt_id}/reparse", response_model=ReceiptResponse)
def reparse(receipt_id: str, db: Session = Depends(get_db)):
    try:
        row = ingestion.reparse_receipt(db, receipt_id)
    except SettlementError as exc:
        raise http_error(exc) from exc
    return transform_receipt(row, db)


# ── POST /api/receipts/{receipt_id}/match ────────────────────────────────
@router.post("/receipts/{receipt_id}/match", response_model=LinkResult)
def match(receipt_id: str, engine: MatchingEngine = Depends(get_engine)):
    row = _get_or_404(engine.db, receipt_id)
    # operator-triggered: also retries receipts held back as ambiguous or unlinked
    return engine.link_one(row)


# ── DELETE /api/receipts/{receipt_id} ────────────────────────────────────
@router.delete("/receipts/{receipt_id}")
def delete_receipt(receipt_id: str, db: Session = Depends(get_db)):
    try:
        ingestion.purge_receipt(db, receipt_id)
    except SettlementError as exc:
        raise http_error(exc) from exc
    return {"message": "Receipt deleted successfully", "receipt_id": receipt_id}
