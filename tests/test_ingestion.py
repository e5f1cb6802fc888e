"""
Receipt store tests — dedup, parse retries, re-parse, quarantine, purge.
"""
import pytest

from settlement.config import settings
from settlement.errors import ExternalDependencyFailure, IntegrityViolation
from settlement.models import AmbiguousMatchModel, ReceiptModel
from settlement.pipeline import ingestion
from settlement.reconciliation import repairs
from settlement.reconciliation.matching import MatchingEngine

from conftest import phone_receipt_text

PHONE = "+79023970235"


def _text_extractor(text):
    return lambda _document: text


def _unavailable(_document):
    raise ExternalDependencyFailure("extraction timed out")


class TestIngest:
    def test_parsed_on_ingest(self, db):
        row, dedup = ingestion.ingest_document(
            db, b"doc-1", filename="a.pdf", metadata={"sender": "bank@example.com"},
            extractor=_text_extractor(phone_receipt_text("100", PHONE)),
        )
        assert dedup is False
        assert row.parse_status == "ok"
        assert row.layout == "inline"
        assert row.match_status == "pending"
        assert row.source_json == {"sender": "bank@example.com"}

    def test_same_bytes_deduplicated(self, db):
        calls = []

        def counting(document):
            calls.append(document)
            return phone_receipt_text("100", PHONE)

        first, _ = ingestion.ingest_document(db, b"doc-2", extractor=counting)
        second, dedup = ingestion.ingest_document(db, b"doc-2", extractor=counting)
        assert dedup is True
        assert second.id == first.id
        assert len(calls) == 1
        assert db.query(ReceiptModel).count() == 1

    def test_outage_leaves_pending(self, db):
        row, _ = ingestion.ingest_document(db, b"doc-3", extractor=_unavailable)
        assert row.parse_status == "pending"
        assert row.extraction_attempts == 1

    def test_failed_parse_is_quarantined(self, db):
        row, _ = ingestion.ingest_document(db, b"doc-4", extractor=_text_extractor("Hello\nworld\n"))
        assert row.parse_status == "failed"
        assert row.parse_error == "no known layout"
        assert [r.id for r in ingestion.list_quarantine(db)] == [row.id]
        assert row.raw_text == "Hello\nworld\n"


class TestParsePending:
    def test_retry_parses_when_extraction_returns(self, db):
        row, _ = ingestion.ingest_document(db, b"doc-5", extractor=_unavailable)
        counts = ingestion.parse_pending_receipts(db, extractor=_text_extractor(phone_receipt_text("100", PHONE)))
        assert counts == {"ok": 1, "failed": 0, "pending": 0}
        db.refresh(row)
        assert row.parse_status == "ok"
        assert row.extraction_attempts == 2

    def test_gives_up_after_max_rounds(self, db):
        row, _ = ingestion.ingest_document(db, b"doc-6", extractor=_unavailable)
        for _ in range(settings.EXTRACTION_MAX_ROUNDS + 2):
            ingestion.parse_pending_receipts(db, extractor=_unavailable)
        db.refresh(row)
        assert row.parse_status == "pending"
        assert row.extraction_attempts == settings.EXTRACTION_MAX_ROUNDS


class TestReparse:
    def test_reparse_resets_match_status(self, db, factory):
        receipt = factory.receipt(phone_receipt_text("100", PHONE))
        receipt.match_status = "no_candidate"
        db.commit()

        row = ingestion.reparse_receipt(db, receipt.id)

        assert row.parse_status == "ok"
        assert row.match_status == "pending"

    def test_linked_receipt_cannot_be_reparsed(self, db, factory, rates):
        factory.payout(100, wallet=PHONE)
        receipt = factory.receipt(phone_receipt_text("100", PHONE))
        MatchingEngine(db, rates).link_one(receipt)
        with pytest.raises(IntegrityViolation):
            ingestion.reparse_receipt(db, receipt.id)

    def test_pending_receipt_has_nothing_to_reparse(self, db):
        row, _ = ingestion.ingest_document(db, b"doc-7", extractor=_unavailable)
        with pytest.raises(IntegrityViolation):
            ingestion.reparse_receipt(db, row.id)


class TestPurge:
    def test_purge_removes_receipt_and_ambiguity(self, db, factory, rates):
        factory.payout(100, wallet=PHONE)
        factory.payout(100, wallet=PHONE)
        receipt = factory.receipt(phone_receipt_text("100", PHONE))
        MatchingEngine(db, rates).link_one(receipt)
        assert db.query(AmbiguousMatchModel).count() == 1

        ingestion.purge_receipt(db, receipt.id)

        assert db.query(ReceiptModel).count() == 0
        assert db.query(AmbiguousMatchModel).count() == 0

    def test_linked_receipt_not_purged(self, db, factory):
        payout = factory.payout(100, wallet=PHONE)
        receipt = factory.receipt(phone_receipt_text("100", PHONE))
        repairs.link_receipt(db, receipt.id, payout.id)
        with pytest.raises(IntegrityViolation):
            ingestion.purge_receipt(db, receipt.id)
