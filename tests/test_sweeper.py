"""
Sweeper and repair-primitive tests — dangling references, swaps,
placeholder merges, orphaned payouts and amount mismatches.
"""
from datetime import datetime, timedelta

import pytest

from settlement.config import settings
from settlement.errors import IntegrityViolation, RecordNotFound
from settlement.models import (
    AdvertisementModel,
    AmbiguousMatchModel,
    AnomalyModel,
    LinkEventModel,
    TransactionModel,
)
from settlement.reconciliation import repairs
from settlement.reconciliation.matching import MatchingEngine
from settlement.reconciliation.sweeper import Sweeper

from conftest import phone_receipt_text


@pytest.fixture()
def sweeper(db, rates, signals):
    return Sweeper(db, MatchingEngine(db, rates, signals))


def _anomalies(db, kind):
    return db.query(AnomalyModel).filter(AnomalyModel.kind == kind).all()


# =====================================================================
# Dangling payout references
# =====================================================================
class TestDangling:
    def test_scenario_c_cleared_and_rematched(self, db, factory, sweeper):
        ad = factory.advertisement(quantity="57.06")
        tx = factory.transaction(payout_id="payout-gone", advertisement_id=ad.id)
        payout = factory.payout(4500)

        report = sweeper.run_once()

        assert report.dangling_payouts == [tx.id]
        assert report.amount_matches == [tx.id]
        db.refresh(tx)
        assert tx.payout_id == payout.id
        anomaly = _anomalies(db, "dangling_payout")[0]
        assert anomaly.subject_id == tx.id
        assert anomaly.status == "repaired"
        assert anomaly.detail_json["missing_payout_id"] == "payout-gone"
        actions = sorted(e.action for e in db.query(LinkEventModel).all())
        assert actions == ["bind", "unbind"]

    def test_scenario_c_without_candidate(self, db, factory, sweeper):
        ad = factory.advertisement(quantity="57.06")
        tx = factory.transaction(payout_id="payout-gone", advertisement_id=ad.id)

        report = sweeper.run_once()

        assert report.dangling_payouts == [tx.id]
        assert report.amount_matches == []
        db.refresh(tx)
        assert tx.payout_id is None
        assert _anomalies(db, "dangling_payout")[0].status == "reported"

    def test_terminal_transaction_cleared_not_rematched(self, db, factory, sweeper):
        ad = factory.advertisement(quantity="57.06")
        tx = factory.transaction(status="cancelled", payout_id="payout-gone", advertisement_id=ad.id)
        payout = factory.payout(4500)

        report = sweeper.run_once()

        assert report.dangling_payouts == [tx.id]
        assert report.amount_matches == []
        db.refresh(tx)
        assert tx.payout_id is None
        assert tx.status == "cancelled"
        assert report.orphaned_payouts == [payout.id]
        anomaly = _anomalies(db, "dangling_payout")[0]
        assert anomaly.status == "reported"
        assert anomaly.detail_json["amount_match"] == "ineligible"
        assert [e.action for e in db.query(LinkEventModel).all()] == ["unbind"]

    def test_no_dangling_references_after_pass(self, db, factory, sweeper):
        for n in range(3):
            factory.transaction(payout_id=f"missing-{n}")
        sweeper.run_once()
        assert db.query(TransactionModel).filter(TransactionModel.payout_id.isnot(None)).count() == 0

    def test_unbind_reports_dangling_flag(self, db, factory):
        tx = factory.transaction(payout_id="missing")
        result = repairs.unbind_payout(db, tx.id)
        assert result.changed is True
        assert result.detail["dangling"] is True
        assert repairs.unbind_payout(db, tx.id).changed is False


# =====================================================================
# Swap
# =====================================================================
class TestSwap:
    def test_scenario_d_dangling_former(self, db, factory):
        order_tx = factory.transaction(order_id="ord-77", payout_id="payout-gone")
        moved = factory.payout(4500)
        donor = factory.transaction(payout_id=moved.id)

        result = repairs.swap_payouts(db, order_tx.id, donor.id)

        assert result.changed is True
        db.refresh(order_tx)
        db.refresh(donor)
        assert order_tx.payout_id == moved.id
        assert donor.payout_id is None
        assert result.detail["after"] == {"order": moved.id, "donor": None}

    def test_scenario_d_full_exchange(self, db, factory):
        former = factory.payout(3000)
        moved = factory.payout(4500)
        order_tx = factory.transaction(order_id="ord-78", payout_id=former.id)
        donor = factory.transaction(payout_id=moved.id)

        repairs.swap_payouts(db, order_tx.id, donor.id)

        db.refresh(order_tx)
        db.refresh(donor)
        assert order_tx.payout_id == moved.id
        assert donor.payout_id == former.id
        held = [t.payout_id for t in db.query(TransactionModel).all() if t.payout_id]
        assert len(held) == len(set(held))

    def test_swap_is_idempotent(self, db, factory):
        former = factory.payout(3000)
        moved = factory.payout(4500)
        order_tx = factory.transaction(order_id="ord-79", payout_id=former.id)
        donor = factory.transaction(payout_id=moved.id)

        repairs.swap_payouts(db, order_tx.id, donor.id)
        again = repairs.swap_payouts(db, order_tx.id, donor.id)

        assert again.changed is False
        db.refresh(order_tx)
        db.refresh(donor)
        assert order_tx.payout_id == moved.id
        assert donor.payout_id == former.id
        assert db.query(LinkEventModel).filter_by(action="swap").count() == 1

    def test_donor_with_order_refused(self, db, factory):
        moved = factory.payout(4500)
        order_tx = factory.transaction(order_id="ord-1")
        donor = factory.transaction(order_id="ord-2", payout_id=moved.id)
        with pytest.raises(IntegrityViolation):
            repairs.swap_payouts(db, order_tx.id, donor.id)

    def test_donor_without_payout_refused(self, db, factory):
        order_tx = factory.transaction(order_id="ord-1")
        donor = factory.transaction()
        with pytest.raises(IntegrityViolation):
            repairs.swap_payouts(db, order_tx.id, donor.id)


# =====================================================================
# Link / bind primitives
# =====================================================================
class TestRepairs:
    def test_link_confirms_owner_and_is_idempotent(self, db, factory, signals, confirmed):
        payout = factory.payout(4500, wallet="+79023970235")
        tx = factory.transaction(payout_id=payout.id)
        receipt = factory.receipt(phone_receipt_text("4 500", "+79023970235"))

        first = repairs.link_receipt(db, receipt.id, payout.id, signals=signals)
        second = repairs.link_receipt(db, receipt.id, payout.id, signals=signals)

        assert first.changed is True
        assert second.changed is False
        db.refresh(tx)
        assert tx.status == "payment_confirmed"
        assert len(confirmed) == 1

    def test_unlink_keeps_receipt_out_of_matching(self, db, factory, rates):
        payout = factory.payout(4500, wallet="+79023970235")
        receipt = factory.receipt(phone_receipt_text("4 500", "+79023970235"))
        repairs.link_receipt(db, receipt.id, payout.id)

        result = repairs.unlink_receipt(db, payout.id)

        assert result.changed is True
        db.refresh(payout)
        db.refresh(receipt)
        assert payout.linked_receipt_id is None
        assert receipt.match_status == "unlinked"
        assert MatchingEngine(db, rates).run_pass()["linked"] == 0

    def test_bind_refuses_held_payout(self, db, factory):
        payout = factory.payout(4500)
        factory.transaction(payout_id=payout.id)
        other = factory.transaction()
        with pytest.raises(IntegrityViolation):
            repairs.bind_payout(db, other.id, payout.id)

    def test_bind_confirms_when_receipt_present(self, db, factory, signals, confirmed):
        payout = factory.payout(4500, wallet="+79023970235")
        receipt = factory.receipt(phone_receipt_text("4 500", "+79023970235"))
        repairs.link_receipt(db, receipt.id, payout.id)
        tx = factory.transaction(status="payment_sent")

        repairs.bind_payout(db, tx.id, payout.id, signals=signals)

        db.refresh(tx)
        assert tx.status == "payment_confirmed"
        assert confirmed == [(tx.id, "payment_sent", "payment_confirmed")]

    def test_unknown_records(self, db):
        with pytest.raises(RecordNotFound):
            repairs.bind_payout(db, "nope", "nope")


# =====================================================================
# Placeholder advertisements
# =====================================================================
class TestPlaceholders:
    def _pair(self, factory):
        now = datetime.utcnow()
        placeholder = factory.advertisement(
            quantity="57.06", external_ad_id="temp_8841", created_at=now
        )
        real = factory.advertisement(
            quantity="57.06", external_ad_id="1940000123", created_at=now + timedelta(minutes=2)
        )
        return placeholder, real

    def test_sweep_merges_placeholder(self, db, factory, sweeper):
        placeholder, real = self._pair(factory)
        placeholder_id, real_id = placeholder.id, real.id
        tx = factory.transaction(advertisement_id=placeholder_id)

        report = sweeper.run_once()

        assert report.placeholder_merges == [placeholder_id]
        db.refresh(tx)
        assert tx.advertisement_id == real_id
        assert db.query(AdvertisementModel).filter_by(id=placeholder_id).first() is None
        assert _anomalies(db, "placeholder_advertisement")[0].status == "repaired"

        again = repairs.merge_placeholder_advertisement(db, placeholder_id, real_id)
        assert again.changed is False
        assert sweeper.run_once().placeholder_merges == []

    def test_real_ad_outside_window_ignored(self, db, factory, sweeper):
        now = datetime.utcnow()
        placeholder = factory.advertisement(external_ad_id="temp_1", created_at=now)
        factory.advertisement(
            external_ad_id="1940000124",
            created_at=now + timedelta(minutes=settings.PLACEHOLDER_MATCH_AFTER_MINUTES + 1),
        )
        factory.transaction(advertisement_id=placeholder.id)
        assert sweeper.run_once().placeholder_merges == []

    def test_different_quantity_ignored(self, factory, sweeper):
        placeholder = factory.advertisement(quantity="57.06", external_ad_id="temp_2")
        factory.advertisement(quantity="60", external_ad_id="1940000125")
        factory.transaction(advertisement_id=placeholder.id)
        assert sweeper.run_once().placeholder_merges == []

    def test_merge_moves_everything_and_deletes(self, db, factory):
        placeholder, real = self._pair(factory)
        placeholder_id, real_id = placeholder.id, real.id
        payout = factory.payout(4500)
        payout.advertisement_id = placeholder_id
        db.commit()
        tx = factory.transaction(payout_id=payout.id, advertisement_id=placeholder_id)

        result = repairs.merge_placeholder_advertisement(db, placeholder_id, real_id)

        assert result.changed is True
        assert result.detail["transactions"] == 1
        assert result.detail["payouts"] == 1
        assert result.detail["deleted"] is True
        db.refresh(tx)
        db.refresh(payout)
        assert tx.advertisement_id == real_id
        assert payout.advertisement_id == real_id
        assert db.query(AdvertisementModel).filter_by(id=placeholder_id).first() is None

    def test_merge_into_placeholder_refused(self, db, factory):
        a = factory.advertisement(external_ad_id="temp_3")
        b = factory.advertisement(external_ad_id="temp_4")
        with pytest.raises(IntegrityViolation):
            repairs.merge_placeholder_advertisement(db, a.id, b.id)


# =====================================================================
# Orphans and mismatches
# =====================================================================
class TestReports:
    def test_orphan_reported_once_per_window(self, db, factory, sweeper, caplog):
        payout = factory.payout(4500)

        with caplog.at_level("WARNING", logger="settlement.reconciliation.sweeper"):
            first = sweeper.run_once()
            second = sweeper.run_once()

        assert first.orphaned_payouts == [payout.id]
        assert second.orphaned_payouts == [payout.id]
        rows = _anomalies(db, "orphaned_payout")
        assert len(rows) == 1
        assert rows[0].occurrences == 2
        logged = [r for r in caplog.records if "no transaction" in r.getMessage()]
        assert len(logged) == 1

    def test_orphan_offered_to_amount_pass(self, db, factory, sweeper):
        payout = factory.payout(4500)
        ad = factory.advertisement(quantity="57.06")
        tx = factory.transaction(advertisement_id=ad.id)

        report = sweeper.run_once()

        assert report.orphaned_payouts == [payout.id]
        assert report.amount_matches == [tx.id]
        assert _anomalies(db, "orphaned_payout")[0].status == "repaired"

    def test_orphan_fitting_two_transactions_queued(self, db, factory, sweeper):
        payout = factory.payout(4500)
        first = factory.transaction(advertisement_id=factory.advertisement(quantity="57.06").id)
        second = factory.transaction(advertisement_id=factory.advertisement(quantity="57.06").id)

        report = sweeper.run_once()

        assert report.orphaned_payouts == [payout.id]
        assert report.amount_matches == []
        assert db.query(TransactionModel).filter(TransactionModel.payout_id.isnot(None)).count() == 0
        row = db.query(AmbiguousMatchModel).one()
        assert row.subject_type == "payout"
        assert row.subject_id == payout.id
        assert sorted(row.candidate_ids) == sorted([first.id, second.id])

        sweeper.run_once()
        assert db.query(AmbiguousMatchModel).count() == 1

    def test_amount_mismatch_reported_not_repaired(self, db, factory, sweeper):
        ad = factory.advertisement(quantity="57.06")
        payout = factory.payout(5000)
        tx = factory.transaction(order_id="ord-5", payout_id=payout.id, advertisement_id=ad.id)

        report = sweeper.run_once()

        assert report.amount_mismatches == [tx.id]
        db.refresh(tx)
        assert tx.payout_id == payout.id
        anomaly = _anomalies(db, "amount_mismatch")[0]
        assert anomaly.status == "reported"
        assert anomaly.detail_json["payout_id"] == payout.id

    def test_clean_state_reports_nothing(self, factory, sweeper):
        ad = factory.advertisement(quantity="57.06")
        payout = factory.payout(4500)
        factory.transaction(order_id="ord-6", payout_id=payout.id, advertisement_id=ad.id)
        report = sweeper.run_once()
        assert report.dangling_payouts == []
        assert report.orphaned_payouts == []
        assert report.amount_mismatches == []
        assert report.errors == 0
