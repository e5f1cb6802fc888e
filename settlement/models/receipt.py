"""
SQLAlchemy model for receipt persistence.

A receipt row is created at ingestion, its parsed fields are written by the
parser and its match fields by the matching engine. The link itself lives on
``payouts.linked_receipt_id``.
"""
from datetime import datetime

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Integer,
    LargeBinary,
    Numeric,
    String,
    Text,
)

from settlement.database import Base


class ReceiptModel(Base):
    __tablename__ = "receipts"

    id = Column(String, primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Source document
    filename = Column(String, nullable=False, default="receipt.pdf")
    source_json = Column(JSON)  # sender, subject, message id ...
    content_hash = Column(String(64), nullable=False, unique=True, index=True)
    document = Column(LargeBinary)

    # Parse state
    parse_status = Column(String, nullable=False, default="pending", index=True)  # pending, ok, failed
    parse_error = Column(Text)
    parse_error_line = Column(Integer)
    layout = Column(String)
    extraction_attempts = Column(Integer, nullable=False, default=0)
    raw_text = Column(Text)
    lines_json = Column(JSON)

    # Parsed fields
    amount = Column(Numeric(18, 2), index=True)
    total = Column(Numeric(18, 2))
    commission = Column(Numeric(18, 2))
    transaction_date = Column(DateTime, index=True)
    sender_name = Column(String)
    sender_account = Column(String)
    recipient_name = Column(String)
    recipient_phone = Column(String)  # verbatim, normalized only at match time
    recipient_card = Column(String)  # masked
    recipient_bank = Column(String)
    transfer_type = Column(String)
    transfer_kind = Column(String)  # phone, card, other
    operation_id = Column(String)
    sbp_code = Column(String)
    receipt_number = Column(String)
    bank = Column(String)
    status_text = Column(String)

    # Matching state
    match_status = Column(String, nullable=False, default="pending", index=True)  # pending, linked, no_candidate, ambiguous, unlinked
    matched_at = Column(DateTime)
