"""
Reconciliation API schemas: payouts feed, ambiguity queue, anomalies,
repairs, transactions and the exchange rate.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Payout sync feed
# ---------------------------------------------------------------------------

class PayoutSyncItem(BaseModel):
    gateway_payout_id: str
    status: int
    amount_by_currency: Dict[str, Decimal] = Field(default_factory=dict)
    wallet: Optional[str] = None
    advertisement_id: Optional[str] = None


class PayoutSyncRequest(BaseModel):
    payouts: List[PayoutSyncItem]


class PayoutSyncResponse(BaseModel):
    created: int = 0
    updated: int = 0


class PayoutResponse(BaseModel):
    id: str
    gateway_payout_id: str
    status: int
    amount_by_currency: Dict[str, Any]
    wallet: Optional[str] = None
    linked_receipt_id: Optional[str] = None
    advertisement_id: Optional[str] = None
    transaction_id: Optional[str] = None
    created_at: datetime


# ---------------------------------------------------------------------------
# Ambiguity queue / anomalies / sweep
# ---------------------------------------------------------------------------

class AmbiguityResponse(BaseModel):
    id: str
    subject_type: str
    subject_id: str
    candidate_ids: List[str]
    status: str
    resolution: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class ResolveAmbiguityRequest(BaseModel):
    payout_id: Optional[str] = Field(None, description="Chosen payout (receipt and transaction subjects)")
    transaction_id: Optional[str] = Field(None, description="Chosen transaction (payout subjects)")
    note: Optional[str] = None


class AnomalyResponse(BaseModel):
    id: str
    kind: str
    subject_id: str
    detail: Dict[str, Any] = Field(default_factory=dict)
    status: str
    occurrences: int
    first_seen_at: datetime
    last_seen_at: datetime


class SweepReport(BaseModel):
    dangling_payouts: List[str] = Field(default_factory=list)
    placeholder_merges: List[str] = Field(default_factory=list)
    orphaned_payouts: List[str] = Field(default_factory=list)
    amount_matches: List[str] = Field(default_factory=list)
    amount_mismatches: List[str] = Field(default_factory=list)
    errors: int = 0


# ---------------------------------------------------------------------------
# Repairs
# ---------------------------------------------------------------------------

class LinkRequest(BaseModel):
    receipt_id: str
    payout_id: str


class UnlinkRequest(BaseModel):
    payout_id: str


class BindRequest(BaseModel):
    transaction_id: str
    payout_id: str


class UnbindRequest(BaseModel):
    transaction_id: str


class SwapRequest(BaseModel):
    order_transaction_id: str = Field(..., description="Transaction holding the venue order")
    donor_transaction_id: str = Field(..., description="Transaction holding the correct payout")


class MergeAdvertisementRequest(BaseModel):
    placeholder_id: str
    real_id: str


class RepairResponse(BaseModel):
    action: str
    changed: bool
    detail: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------

class TransactionResponse(BaseModel):
    id: str
    order_id: Optional[str] = None
    advertisement_id: Optional[str] = None
    payout_id: Optional[str] = None
    status: str
    chat_step: int = 0
    amount: Optional[Decimal] = None
    counterparty_name: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class StatusChangeRequest(BaseModel):
    to_status: str
    reason: Optional[str] = None
    override: bool = False


class TimelineEvent(BaseModel):
    from_status: Optional[str] = None
    to_status: str
    reason: Optional[str] = None
    occurred_at: datetime


# ---------------------------------------------------------------------------
# Exchange rate
# ---------------------------------------------------------------------------

class ExchangeRateResponse(BaseModel):
    rate: Decimal
    updated_at: Optional[datetime] = None


class ExchangeRateUpdate(BaseModel):
    rate: Decimal = Field(..., gt=0)
