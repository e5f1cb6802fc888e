"""
Reconciliation sweeper.

A periodic audit over transactions, payouts and advertisements. Each pass
checks, in order:

* dangling payout references (repaired: unbind, then amount match);
* placeholder advertisements with a confirmed counterpart (repaired: merge);
* orphaned payouts (reported, then offered to the amount-based pass);
* amount mismatches on order-bound transactions (reported only).

Findings go to the ``anomalies`` table. A finding seen again inside the
dedup window only bumps its counters.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from settlement.config import Settings, settings as default_settings
from settlement.models import AdvertisementModel, AnomalyModel, PayoutModel, TransactionModel
from settlement.reconciliation import repairs
from settlement.reconciliation.matching import MatchingEngine
from settlement.reconciliation.state_machine import TERMINAL
from settlement.schemas import LinkOutcome, SweepReport

logger = logging.getLogger(__name__)


class Sweeper:
    def __init__(self, db: Session, engine: MatchingEngine, config: Settings = default_settings):
        self.db = db
        self.engine = engine
        self.config = config

    # ------------------------------------------------------------------
    # Anomaly bookkeeping
    # ------------------------------------------------------------------

    def _report(self, kind: str, subject_id: str, detail: dict[str, Any], status: str = "open") -> bool:
        """Upsert an anomaly. Returns True when it should be logged."""
        now = datetime.utcnow()
        window = timedelta(seconds=self.config.SWEEP_DEDUP_WINDOW_SECONDS)
        row = (
            self.db.query(AnomalyModel)
            .filter(AnomalyModel.kind == kind, AnomalyModel.subject_id == subject_id)
            .first()
        )
        if row is None:
            self.db.add(AnomalyModel(
                id=str(uuid.uuid4()),
                kind=kind,
                subject_id=subject_id,
                detail_json=detail,
                status=status,
                occurrences=1,
                first_seen_at=now,
                last_seen_at=now,
            ))
            self.db.commit()
            return True

        fresh = now - row.last_seen_at < window
        row.occurrences = (row.occurrences or 0) + 1
        row.last_seen_at = now
        row.detail_json = detail
        row.status = status
        self.db.commit()
        return not fresh

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _dangling(self, report: SweepReport) -> None:
        db = self.db
        existing = select(PayoutModel.id)
        rows = (
            db.query(TransactionModel)
            .filter(TransactionModel.payout_id.isnot(None), TransactionModel.payout_id.notin_(existing))
            .order_by(TransactionModel.id)
            .all()
        )
        for tx in rows:
            tx_id, missing = tx.id, tx.payout_id
            try:
                repairs.unbind_payout(db, tx_id, method="sweeper")
                tx = repairs.get_transaction(db, tx_id)
                result = self.engine.match_by_amount(tx)
            except Exception:
                logger.exception("Sweeper: repair of dangling payout on %s failed", tx_id)
                db.rollback()
                report.errors += 1
                continue

            detail = {"missing_payout_id": missing, "amount_match": result.outcome.value,
                      "payout_id": result.payout_id}
            status = "repaired"
            if result.outcome != LinkOutcome.LINKED:
                # cleared but still payout-less
                status = "reported"
            if self._report("dangling_payout", tx_id, detail, status=status):
                logger.warning(
                    "Sweeper: transaction %s referenced missing payout %s; cleared, amount match: %s",
                    tx_id, missing, result.outcome.value,
                )
            report.dangling_payouts.append(tx_id)
            if result.outcome == LinkOutcome.LINKED:
                report.amount_matches.append(tx_id)

    def find_real_advertisement(self, placeholder: AdvertisementModel) -> Optional[AdvertisementModel]:
        """Most recent confirmed ad with the same account and quantity near the placeholder."""
        created = placeholder.created_at or datetime.utcnow()
        lower = created - timedelta(minutes=self.config.PLACEHOLDER_MATCH_BEFORE_MINUTES)
        upper = created + timedelta(minutes=self.config.PLACEHOLDER_MATCH_AFTER_MINUTES)
        rows = (
            self.db.query(AdvertisementModel)
            .filter(
                AdvertisementModel.id != placeholder.id,
                AdvertisementModel.account_id == placeholder.account_id,
                AdvertisementModel.is_placeholder.is_(False),
                AdvertisementModel.created_at >= lower,
                AdvertisementModel.created_at <= upper,
            )
            .order_by(AdvertisementModel.created_at.desc(), AdvertisementModel.id)
            .all()
        )
        for ad in rows:
            if repairs.is_placeholder(ad):
                continue
            if Decimal(str(ad.quantity)) == Decimal(str(placeholder.quantity)):
                return ad
        return None

    def _placeholders(self, report: SweepReport) -> None:
        db = self.db
        prefix = self.config.PLACEHOLDER_AD_PREFIX
        ads = (
            db.query(AdvertisementModel)
            .filter(
                (AdvertisementModel.is_placeholder.is_(True))
                | (AdvertisementModel.external_ad_id.like(f"{prefix}%"))
            )
            .order_by(AdvertisementModel.created_at, AdvertisementModel.id)
            .all()
        )
        for placeholder in ads:
            placeholder_id = placeholder.id
            bound = db.query(TransactionModel).filter(TransactionModel.advertisement_id == placeholder_id).count()
            if not bound:
                continue
            real = self.find_real_advertisement(placeholder)
            if real is None:
                continue
            real_id = real.id
            try:
                result = repairs.merge_placeholder_advertisement(db, placeholder_id, real_id, method="sweeper")
            except Exception:
                logger.exception("Sweeper: merge of placeholder %s failed", placeholder_id)
                db.rollback()
                report.errors += 1
                continue
            if self._report("placeholder_advertisement", placeholder_id, result.detail, status="repaired"):
                logger.warning("Sweeper: placeholder ad %s merged into %s", placeholder_id, real_id)
            report.placeholder_merges.append(placeholder_id)

    def _orphans(self, report: SweepReport) -> None:
        db = self.db
        owned = select(TransactionModel.payout_id).where(TransactionModel.payout_id.isnot(None))
        orphans = (
            db.query(PayoutModel)
            .filter(
                PayoutModel.status.in_(self.config.AWAITING_CONFIRMATION_STATUSES),
                PayoutModel.id.notin_(owned),
            )
            .order_by(PayoutModel.id)
            .all()
        )
        if not orphans:
            return
        for payout in orphans:
            detail = {
                "amount": str(payout.fiat_amount(self.config.FIAT_CURRENCY_CODE)),
                "wallet": payout.wallet,
                "linked_receipt_id": payout.linked_receipt_id,
            }
            if self._report("orphaned_payout", payout.id, detail, status="open"):
                logger.warning("Sweeper: payout %s awaits confirmation with no transaction", payout.id)
            report.orphaned_payouts.append(payout.id)

        terminal = [s.value for s in TERMINAL]
        candidates = (
            db.query(TransactionModel.id)
            .filter(
                TransactionModel.payout_id.is_(None),
                TransactionModel.advertisement_id.isnot(None),
                TransactionModel.status.notin_(terminal),
            )
            .order_by(TransactionModel.created_at, TransactionModel.id)
            .all()
        )
        for (tx_id,) in candidates:
            try:
                tx = repairs.get_transaction(db, tx_id)
                result = self.engine.match_by_amount(tx)
            except Exception:
                logger.exception("Sweeper: amount match for %s failed", tx_id)
                db.rollback()
                report.errors += 1
                continue
            if result.outcome == LinkOutcome.LINKED:
                report.amount_matches.append(tx_id)
                orphan = db.query(AnomalyModel).filter(
                    AnomalyModel.kind == "orphaned_payout", AnomalyModel.subject_id == result.payout_id
                ).first()
                if orphan is not None:
                    orphan.status = "repaired"
                    db.commit()

    def _mismatches(self, report: SweepReport) -> None:
        db = self.db
        rows = (
            db.query(TransactionModel)
            .filter(TransactionModel.order_id.isnot(None), TransactionModel.payout_id.isnot(None))
            .order_by(TransactionModel.id)
            .all()
        )
        tolerance = Decimal(str(self.config.AMOUNT_MATCH_TOLERANCE))
        for tx in rows:
            payout = db.query(PayoutModel).filter(PayoutModel.id == tx.payout_id).first()
            expected = self.engine.expected_fiat(tx)
            if payout is None or expected is None:
                continue
            actual = payout.fiat_amount(self.config.FIAT_CURRENCY_CODE)
            if actual is None:
                continue
            diff = abs(actual - expected)
            if diff < tolerance:
                continue
            detail = {
                "payout_id": payout.id,
                "payout_amount": str(actual),
                "expected": str(expected),
                "difference": str(diff),
            }
            if self._report("amount_mismatch", tx.id, detail, status="reported"):
                logger.warning(
                    "Sweeper: transaction %s payout %s amount %s differs from expected %s by %s",
                    tx.id, payout.id, actual, expected, diff,
                )
            report.amount_mismatches.append(tx.id)

    # ------------------------------------------------------------------

    def run_once(self) -> SweepReport:
        report = SweepReport()
        for check in (self._dangling, self._placeholders, self._orphans, self._mismatches):
            try:
                check(report)
            except Exception:
                logger.exception("Sweeper: %s aborted", check.__name__)
                self.db.rollback()
                report.errors += 1
        logger.info(
            "Sweep: dangling=%d merged=%d orphaned=%d amount_matched=%d mismatched=%d errors=%d",
            len(report.dangling_payouts), len(report.placeholder_merges), len(report.orphaned_payouts),
            len(report.amount_matches), len(report.amount_mismatches), report.errors,
        )
        return report
