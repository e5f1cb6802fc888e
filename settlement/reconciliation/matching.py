"""
Matching engine: parsed receipts → pending payouts.

Candidate selection is a fixed filter pipeline, evaluated in this order:

1. exact fiat amount (no tolerance);
2. recipient identity: normalized phone digits contained in the payout
   wallet, or the card's last four digits ending it;
3. eligibility: awaiting-confirmation status, no linked receipt, and not
   owned by a transaction that already has a venue order.

One survivor is linked. Several are recorded as an ambiguity for an
operator; the engine never picks one. None leaves the receipt for the next
pass.

``match_by_amount`` is the separate, lower-confidence path that binds a
payout to a transaction from the advertisement quantity and the current
exchange rate. It binds only when the pick is unique both ways: one
payout for the transaction and one live transaction for the payout.
"""
from __future__ import annotations

import logging
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.config import Settings, settings as default_settings
from settlement.errors import IntegrityViolation, RecordNotFound
from settlement.models import (
    AdvertisementModel,
    AmbiguousMatchModel,
    PayoutModel,
    ReceiptModel,
    TransactionModel,
)
from settlement.normalize import card_suffix, digits_only, normalize_phone
from settlement.reconciliation import repairs
from settlement.reconciliation.rates import ExchangeRateService
from settlement.reconciliation.signals import SettlementSignals
from settlement.reconciliation.state_machine import TERMINAL, notify
from settlement.schemas import LinkOutcome, LinkResult

logger = logging.getLogger(__name__)


def wallet_matches(wallet: str | None, phone: str | None = None, card: str | None = None) -> bool:
    """Identity filter between a payout destination and a receipt recipient."""
    if phone:
        wanted = normalize_phone(phone)
        if not wanted:
            return False
        return wanted in normalize_phone(wallet) or wanted in digits_only(wallet)
    if card:
        suffix = card_suffix(card)
        return bool(suffix) and digits_only(wallet).endswith(suffix)
    return True


class MatchingEngine:
    def __init__(
        self,
        db: Session,
        rates: ExchangeRateService,
        signals: Optional[SettlementSignals] = None,
        config: Settings = default_settings,
    ):
        self.db = db
        self.rates = rates
        self.signals = signals
        self.config = config

    # ------------------------------------------------------------------
    # Candidate pipeline
    # ------------------------------------------------------------------

    def _awaiting(self):
        return self.db.query(PayoutModel).filter(
            PayoutModel.status.in_(self.config.AWAITING_CONFIRMATION_STATUSES)
        )

    def find_candidates(
        self,
        amount: Decimal,
        phone: str | None = None,
        card: str | None = None,
    ) -> list[PayoutModel]:
        order_bound = select(TransactionModel.payout_id).where(
            TransactionModel.order_id.isnot(None),
            TransactionModel.payout_id.isnot(None),
        )
        rows = (
            self._awaiting()
            .filter(
                PayoutModel.linked_receipt_id.is_(None),
                PayoutModel.id.notin_(order_bound),
            )
            .order_by(PayoutModel.id)
            .all()
        )
        amount = Decimal(str(amount))
        currency = self.config.FIAT_CURRENCY_CODE
        return [
            p for p in rows
            if p.fiat_amount(currency) == amount and wallet_matches(p.wallet, phone, card)
        ]

    # ------------------------------------------------------------------
    # Ambiguity queue
    # ------------------------------------------------------------------

    def _record_ambiguity(self, subject_type: str, subject_id: str, candidate_ids: list[str]) -> bool:
        row = (
            self.db.query(AmbiguousMatchModel)
            .filter(
                AmbiguousMatchModel.subject_type == subject_type,
                AmbiguousMatchModel.subject_id == subject_id,
            )
            .first()
        )
        if row is not None and row.status == "open" and list(row.candidate_ids) == candidate_ids:
            return False
        if row is None:
            row = AmbiguousMatchModel(
                id=str(uuid.uuid4()),
                subject_type=subject_type,
                subject_id=subject_id,
                candidate_ids=candidate_ids,
                status="open",
            )
            self.db.add(row)
        else:
            row.candidate_ids = candidate_ids
            row.status = "open"
            row.resolution = None
        return True

    # ------------------------------------------------------------------
    # Receipt path
    # ------------------------------------------------------------------

    def link_one(self, receipt: ReceiptModel) -> LinkResult:
        """Try to link one receipt. Writes only when the outcome changes state."""
        db = self.db
        base = {"receipt_id": receipt.id, "method": "receipt"}

        if receipt.parse_status != "ok":
            return LinkResult(outcome=LinkOutcome.INELIGIBLE, reason=f"parse_status={receipt.parse_status}", **base)

        linked = db.query(PayoutModel).filter(PayoutModel.linked_receipt_id == receipt.id).first()
        if linked is not None:
            if receipt.match_status != "linked":
                receipt.match_status = "linked"
                db.commit()
            owner = repairs.owning_transaction(db, linked.id)
            return LinkResult(
                outcome=LinkOutcome.ALREADY_LINKED,
                payout_id=linked.id,
                transaction_id=owner.id if owner else None,
                **base,
            )

        if receipt.amount is None:
            return LinkResult(outcome=LinkOutcome.INELIGIBLE, reason="no amount", **base)

        candidates = self.find_candidates(
            receipt.amount, phone=receipt.recipient_phone, card=receipt.recipient_card
        )
        candidate_ids = [p.id for p in candidates]

        if not candidates:
            if receipt.match_status != "no_candidate":
                receipt.match_status = "no_candidate"
                db.commit()
            logger.debug("Receipt %s: no candidate for amount %s", receipt.id, receipt.amount)
            return LinkResult(outcome=LinkOutcome.NO_CANDIDATE, **base)

        if len(candidates) > 1:
            changed = self._record_ambiguity("receipt", receipt.id, candidate_ids)
            if receipt.match_status != "ambiguous":
                receipt.match_status = "ambiguous"
                changed = True
            if changed:
                db.commit()
                logger.warning(
                    "Receipt %s is ambiguous: %d payouts for amount %s: %s",
                    receipt.id, len(candidate_ids), receipt.amount, candidate_ids,
                )
            return LinkResult(outcome=LinkOutcome.AMBIGUOUS, candidate_ids=candidate_ids, **base)

        payout = candidates[0]
        try:
            result = repairs.link_receipt(
                db, receipt.id, payout.id, method="receipt", signals=self.signals
            )
        except IntegrityViolation as exc:
            db.rollback()
            db.expire_all()
            current = db.query(PayoutModel).filter(PayoutModel.id == payout.id).first()
            if current is not None and current.linked_receipt_id == receipt.id:
                return LinkResult(outcome=LinkOutcome.ALREADY_LINKED, payout_id=payout.id, **base)
            logger.info("Receipt %s lost the race for payout %s: %s", receipt.id, payout.id, exc)
            return LinkResult(outcome=LinkOutcome.NO_CANDIDATE, reason="candidate taken concurrently", **base)

        return LinkResult(
            outcome=LinkOutcome.LINKED if result.changed else LinkOutcome.ALREADY_LINKED,
            payout_id=payout.id,
            transaction_id=result.detail.get("transaction_id"),
            candidate_ids=candidate_ids,
            **base,
        )

    def run_pass(self, limit: int | None = None) -> dict[str, int]:
        """Link every parsed, unlinked receipt that is waiting for a payout."""
        db = self.db
        limit = limit or self.config.MATCH_BATCH_SIZE
        linked_ids = select(PayoutModel.linked_receipt_id).where(PayoutModel.linked_receipt_id.isnot(None))
        receipt_ids = [
            r.id
            for r in db.query(ReceiptModel.id)
            .filter(
                ReceiptModel.parse_status == "ok",
                ReceiptModel.match_status.in_(("pending", "no_candidate")),
                ReceiptModel.id.notin_(linked_ids),
            )
            .order_by(ReceiptModel.created_at, ReceiptModel.id)
            .limit(limit)
            .all()
        ]

        counts = {outcome.value: 0 for outcome in LinkOutcome}
        counts["error"] = 0
        for receipt_id in receipt_ids:
            try:
                receipt = db.query(ReceiptModel).filter(ReceiptModel.id == receipt_id).first()
                if receipt is None:
                    continue
                result = self.link_one(receipt)
                counts[result.outcome.value] += 1
            except Exception:
                logger.exception("Matching failed for receipt %s", receipt_id)
                db.rollback()
                counts["error"] += 1
        if receipt_ids:
            logger.info("Matching pass over %d receipts: %s", len(receipt_ids), counts)
        return counts

    # ------------------------------------------------------------------
    # Advertisement-amount path
    # ------------------------------------------------------------------

    def expected_fiat(self, tx: TransactionModel) -> Optional[Decimal]:
        if not tx.advertisement_id:
            return None
        ad = self.db.query(AdvertisementModel).filter(AdvertisementModel.id == tx.advertisement_id).first()
        if ad is None or ad.quantity is None:
            return None
        return self.rates.to_fiat(ad.quantity)

    def amount_candidates(self, expected: Decimal) -> list[tuple[PayoutModel, Decimal]]:
        """Unowned awaiting payouts strictly within tolerance of *expected*."""
        owned = select(TransactionModel.payout_id).where(TransactionModel.payout_id.isnot(None))
        rows = self._awaiting().filter(PayoutModel.id.notin_(owned)).order_by(PayoutModel.id).all()
        tolerance = Decimal(str(self.config.AMOUNT_MATCH_TOLERANCE))
        found = []
        for payout in rows:
            fiat = payout.fiat_amount(self.config.FIAT_CURRENCY_CODE)
            if fiat is None:
                continue
            diff = abs(fiat - expected)
            if diff < tolerance:
                found.append((payout, diff))
        return found

    def competing_transactions(self, payout: PayoutModel) -> list[str]:
        """Payout-less, live transactions whose expected amount fits *payout*."""
        fiat = payout.fiat_amount(self.config.FIAT_CURRENCY_CODE)
        if fiat is None:
            return []
        tolerance = Decimal(str(self.config.AMOUNT_MATCH_TOLERANCE))
        rows = (
            self.db.query(TransactionModel)
            .filter(
                TransactionModel.payout_id.is_(None),
                TransactionModel.advertisement_id.isnot(None),
                TransactionModel.status.notin_([s.value for s in TERMINAL]),
            )
            .order_by(TransactionModel.id)
            .all()
        )
        competing = []
        for tx in rows:
            expected = self.expected_fiat(tx)
            if expected is not None and abs(fiat - expected) < tolerance:
                competing.append(tx.id)
        return competing

    def match_by_amount(self, tx: TransactionModel) -> LinkResult:
        db = self.db
        base = {"transaction_id": tx.id, "method": "amount"}
        if tx.payout_id is not None:
            return LinkResult(outcome=LinkOutcome.ALREADY_LINKED, payout_id=tx.payout_id, **base)
        if tx.status in {s.value for s in TERMINAL}:
            return LinkResult(outcome=LinkOutcome.INELIGIBLE, reason=f"status={tx.status}", **base)

        expected = self.expected_fiat(tx)
        if expected is None:
            return LinkResult(outcome=LinkOutcome.INELIGIBLE, reason="no advertisement quantity", **base)

        found = self.amount_candidates(expected)
        candidate_ids = [p.id for p, _ in found]

        if not found:
            logger.info("amount-based match: transaction %s expected %s, no payout within tolerance", tx.id, expected)
            return LinkResult(outcome=LinkOutcome.NO_CANDIDATE, **base)

        if len(found) > 1:
            if self._record_ambiguity("transaction", tx.id, candidate_ids):
                db.commit()
                logger.warning(
                    "amount-based match: transaction %s ambiguous, %d payouts near %s: %s",
                    tx.id, len(found), expected, candidate_ids,
                )
            return LinkResult(outcome=LinkOutcome.AMBIGUOUS, candidate_ids=candidate_ids, **base)

        payout, diff = found[0]
        rivals = self.competing_transactions(payout)
        if len(rivals) > 1:
            if self._record_ambiguity("payout", payout.id, rivals):
                db.commit()
                logger.warning(
                    "amount-based match: payout %s fits %d transactions: %s",
                    payout.id, len(rivals), rivals,
                )
            return LinkResult(
                outcome=LinkOutcome.AMBIGUOUS, payout_id=payout.id, candidate_ids=rivals, **base
            )

        try:
            repairs.bind_payout(
                db, tx.id, payout.id, method="amount", signals=self.signals,
                detail={"expected": str(expected), "difference": str(diff), "rate": str(self.rates.rate)},
            )
        except IntegrityViolation as exc:
            db.rollback()
            logger.info("amount-based match: transaction %s lost payout %s: %s", tx.id, payout.id, exc)
            return LinkResult(outcome=LinkOutcome.NO_CANDIDATE, reason="candidate taken concurrently", **base)

        logger.info(
            "amount-based match: transaction %s -> payout %s (expected %s, difference %s)",
            tx.id, payout.id, expected, diff,
        )
        return LinkResult(outcome=LinkOutcome.LINKED, payout_id=payout.id, candidate_ids=candidate_ids, **base)

    # ------------------------------------------------------------------
    # Operator decisions
    # ------------------------------------------------------------------

    def resolve_ambiguity(self, ambiguity_id: str, choice_id: str, note: str | None = None) -> LinkResult:
        """Apply an operator's pick among the recorded candidates.

        For receipt and transaction subjects *choice_id* is a payout; for a
        payout subject it is the transaction that should hold the payout.
        """
        db = self.db
        row = db.query(AmbiguousMatchModel).filter(AmbiguousMatchModel.id == ambiguity_id).first()
        if row is None:
            raise RecordNotFound(f"Ambiguity not found: {ambiguity_id}")
        subject_type, subject_id = row.subject_type, row.subject_id

        if subject_type == "receipt":
            payout_id, transaction_id = choice_id, None
        elif subject_type == "transaction":
            payout_id, transaction_id = choice_id, subject_id
        else:
            payout_id, transaction_id = subject_id, choice_id
        receipt_id = subject_id if subject_type == "receipt" else None

        if row.status == "resolved":
            if row.resolution == choice_id:
                return LinkResult(
                    outcome=LinkOutcome.ALREADY_LINKED, method="manual",
                    receipt_id=receipt_id, payout_id=payout_id, transaction_id=transaction_id,
                )
            raise IntegrityViolation(f"Ambiguity {ambiguity_id} was already resolved to {row.resolution}")
        if choice_id not in (row.candidate_ids or []):
            raise IntegrityViolation(f"{choice_id} is not a candidate of ambiguity {ambiguity_id}")

        if subject_type == "receipt":
            result = repairs.link_receipt(db, subject_id, payout_id, method="manual", commit=False)
            transaction_id = result.detail.get("transaction_id")
        else:
            result = repairs.bind_payout(
                db, transaction_id, payout_id, method="manual", commit=False,
                detail={"ambiguity_id": ambiguity_id, "note": note},
            )

        row = db.query(AmbiguousMatchModel).filter(AmbiguousMatchModel.id == ambiguity_id).first()
        row.status = "resolved"
        row.resolution = choice_id
        db.commit()
        for event in result.events:
            notify(self.signals, event)
        logger.info(
            "Ambiguity %s (%s %s) resolved to %s%s",
            ambiguity_id, subject_type, subject_id, choice_id, f": {note}" if note else "",
        )
        return LinkResult(
            outcome=LinkOutcome.LINKED,
            method="manual",
            receipt_id=receipt_id,
            payout_id=payout_id,
            transaction_id=transaction_id,
        )
