"""
Canonical models of the reconciliation core.

The parser produces ``ParsedReceipt``; the matching engine produces
``LinkResult``. Both are Pydantic v2 models.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field

from settlement.normalize import normalize_phone


# ---------------------------------------------------------------------------
# Parsed receipt
# ---------------------------------------------------------------------------

class ParsedReceipt(BaseModel):
    """Structured form of one bank payment confirmation."""
    model_config = ConfigDict(frozen=True)

    status: str = Field(..., description="ok | failed")
    amount: Optional[Decimal] = None
    total: Optional[Decimal] = None
    commission: Optional[Decimal] = None
    transaction_date: Optional[datetime] = None
    sender_name: Optional[str] = None
    sender_account: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = Field(
        None, description="Verbatim phone as printed on the receipt"
    )
    recipient_card: Optional[str] = Field(None, description="Masked card number")
    recipient_bank: Optional[str] = None
    transfer_type: Optional[str] = None
    transfer_kind: str = Field("other", description="phone | card | other")
    operation_id: Optional[str] = None
    sbp_code: Optional[str] = None
    receipt_number: Optional[str] = None
    bank: str = "unknown"
    status_text: Optional[str] = None
    layout: Optional[str] = Field(None, description="Layout strategy that matched")
    raw_text: str = ""
    lines: list[str] = Field(default_factory=list)
    error_reason: Optional[str] = None
    error_line: Optional[int] = Field(
        None, description="Index into ``lines`` of the offending label line"
    )
    content_hash: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def normalized_phone(self) -> Optional[str]:
        if not self.recipient_phone:
            return None
        return normalize_phone(self.recipient_phone)

    @property
    def is_ok(self) -> bool:
        return self.status == "ok"


# ---------------------------------------------------------------------------
# Link result
# ---------------------------------------------------------------------------

class LinkOutcome(str, Enum):
    LINKED = "linked"
    AMBIGUOUS = "ambiguous"
    NO_CANDIDATE = "no_candidate"
    ALREADY_LINKED = "already_linked"
    INELIGIBLE = "ineligible"


class LinkResult(BaseModel):
    outcome: LinkOutcome
    method: str = Field("receipt", description="receipt | amount | manual")
    receipt_id: Optional[str] = None
    payout_id: Optional[str] = None
    transaction_id: Optional[str] = None
    candidate_ids: list[str] = Field(default_factory=list)
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Receipt API envelopes
# ---------------------------------------------------------------------------

class ReceiptResponse(BaseModel):
    id: str
    created_at: datetime
    filename: str
    content_hash: str
    parse_status: str
    parse_error: Optional[str] = None
    parse_error_line: Optional[int] = None
    layout: Optional[str] = None
    match_status: str
    amount: Optional[Decimal] = None
    transaction_date: Optional[datetime] = None
    sender_name: Optional[str] = None
    recipient_name: Optional[str] = None
    recipient_phone: Optional[str] = None
    recipient_card: Optional[str] = None
    recipient_bank: Optional[str] = None
    transfer_kind: Optional[str] = None
    operation_id: Optional[str] = None
    bank: Optional[str] = None
    payout_id: Optional[str] = None


class IngestResponse(BaseModel):
    receipt: ReceiptResponse
    deduplicated: bool = False


class QuarantineEntry(BaseModel):
    """Failed receipt shown to an operator for layout diagnosis."""
    id: str
    filename: str
    raw_text: Optional[str] = None
    lines: list[str] = Field(default_factory=list)
    reason: Optional[str] = None
    error_line: Optional[int] = None
    created_at: datetime
