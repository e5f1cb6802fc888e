"""
Receipt store: ingestion with content-hash dedup, the parse-retry pass,
re-parsing from stored lines, the quarantine listing and explicit purge.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from settlement.config import settings
from settlement.errors import ExternalDependencyFailure, IntegrityViolation, RecordNotFound
from settlement.models import AmbiguousMatchModel, PayoutModel, ReceiptModel
from settlement.pipeline.extractor import extract_text
from settlement.pipeline.parser import content_hash, parse_document, parse_lines
from settlement.schemas import ParsedReceipt

logger = logging.getLogger(__name__)

_PARSED_FIELDS = (
    "amount",
    "total",
    "commission",
    "transaction_date",
    "sender_name",
    "sender_account",
    "recipient_name",
    "recipient_phone",
    "recipient_card",
    "recipient_bank",
    "transfer_type",
    "transfer_kind",
    "operation_id",
    "sbp_code",
    "receipt_number",
    "bank",
    "status_text",
    "layout",
    "raw_text",
)


def apply_parsed(row: ReceiptModel, parsed: ParsedReceipt) -> None:
    """Copy a parse result onto the stored receipt."""
    for name in _PARSED_FIELDS:
        setattr(row, name, getattr(parsed, name))
    row.lines_json = list(parsed.lines)
    row.parse_status = parsed.status
    row.parse_error = parsed.error_reason
    row.parse_error_line = parsed.error_line


def linked_payout(db: Session, receipt_id: str) -> Optional[PayoutModel]:
    return db.query(PayoutModel).filter(PayoutModel.linked_receipt_id == receipt_id).first()


def _get(db: Session, receipt_id: str) -> ReceiptModel:
    row = db.query(ReceiptModel).filter(ReceiptModel.id == receipt_id).first()
    if not row:
        raise RecordNotFound(f"Receipt not found: {receipt_id}")
    return row


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

def ingest_document(
    db: Session,
    document: bytes,
    filename: str = "receipt.pdf",
    metadata: Optional[dict[str, Any]] = None,
    extractor: Callable[[bytes], str] = extract_text,
) -> tuple[ReceiptModel, bool]:
    """Store and parse a new receipt document.

    Returns ``(receipt, deduplicated)``. A document whose hash is already
    stored is not parsed again; the existing row comes back.
    """
    digest = content_hash(document)
    existing = db.query(ReceiptModel).filter(ReceiptModel.content_hash == digest).first()
    if existing:
        logger.info("Duplicate document %s -> receipt %s", digest[:12], existing.id)
        return existing, True

    row = ReceiptModel(
        id=str(uuid.uuid4()),
        filename=filename,
        source_json=metadata or {},
        content_hash=digest,
        document=document,
        parse_status="pending",
        match_status="pending",
        extraction_attempts=1,
    )
    try:
        parsed = parse_document(document, extractor=extractor)
    except ExternalDependencyFailure as exc:
        logger.warning("Extraction unavailable for %s, left pending: %s", filename, exc)
    else:
        apply_parsed(row, parsed)

    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # same document ingested concurrently
        db.rollback()
        existing = db.query(ReceiptModel).filter(ReceiptModel.content_hash == digest).first()
        if existing is None:
            raise
        return existing, True

    logger.info(
        "Ingested receipt %s (%s): parse_status=%s", row.id, filename, row.parse_status
    )
    return row, False


def parse_pending_receipts(
    db: Session,
    extractor: Callable[[bytes], str] = extract_text,
    limit: int = 20,
) -> dict[str, int]:
    """Retry extraction for receipts left ``pending``."""
    rows = (
        db.query(ReceiptModel)
        .filter(
            ReceiptModel.parse_status == "pending",
            ReceiptModel.extraction_attempts < settings.EXTRACTION_MAX_ROUNDS,
        )
        .order_by(ReceiptModel.created_at)
        .limit(limit)
        .all()
    )
    counts = {"ok": 0, "failed": 0, "pending": 0}
    for row in rows:
        row.extraction_attempts = (row.extraction_attempts or 0) + 1
        try:
            parsed = parse_document(row.document or b"", extractor=extractor)
        except ExternalDependencyFailure as exc:
            logger.warning(
                "Receipt %s still pending (round %d/%d): %s",
                row.id, row.extraction_attempts, settings.EXTRACTION_MAX_ROUNDS, exc,
            )
            counts["pending"] += 1
        else:
            apply_parsed(row, parsed)
            counts[parsed.status] += 1
        db.commit()
    if rows:
        logger.info("Parse pass: %s", counts)
    return counts


def reparse_receipt(db: Session, receipt_id: str) -> ReceiptModel:
    """Run the layouts again over the stored lines of a receipt."""
    row = _get(db, receipt_id)
    if linked_payout(db, receipt_id) is not None:
        raise IntegrityViolation(f"Receipt {receipt_id} is linked to a payout")
    if row.lines_json is None:
        raise IntegrityViolation(f"Receipt {receipt_id} has no extracted text yet")

    parsed = parse_lines(list(row.lines_json), text=row.raw_text)
    before = row.parse_status
    apply_parsed(row, parsed)
    row.match_status = "pending"
    row.matched_at = None
    db.commit()
    logger.info("Re-parsed receipt %s: %s -> %s", receipt_id, before, row.parse_status)
    return row


# ---------------------------------------------------------------------------
# Quarantine / purge
# ---------------------------------------------------------------------------

def list_quarantine(db: Session) -> list[ReceiptModel]:
    return (
        db.query(ReceiptModel)
        .filter(ReceiptModel.parse_status == "failed")
        .order_by(ReceiptModel.created_at.desc())
        .all()
    )


def purge_receipt(db: Session, receipt_id: str) -> None:
    """Delete a receipt that is not linked to any payout."""
    row = _get(db, receipt_id)
    if linked_payout(db, receipt_id) is not None:
        raise IntegrityViolation(f"Receipt {receipt_id} is linked to a payout")
    db.query(AmbiguousMatchModel).filter(
        AmbiguousMatchModel.subject_type == "receipt",
        AmbiguousMatchModel.subject_id == receipt_id,
    ).delete(synchronize_session=False)
    db.delete(row)
    db.commit()
    logger.info("Purged receipt %s", receipt_id)
