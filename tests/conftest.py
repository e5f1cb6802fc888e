"""
Shared pytest fixtures — in‑memory SQLite + FastAPI TestClient + record factory.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("WORKERS_ENABLED", "false")

import hashlib  # noqa: E402
import uuid  # noqa: E402
from datetime import datetime  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from settlement.database import Base, get_db  # noqa: E402
from settlement.main import app  # noqa: E402
from settlement.models import (  # noqa: E402
    AdvertisementModel,
    PayoutModel,
    ReceiptModel,
    TransactionModel,
)
from settlement.pipeline.ingestion import apply_parsed  # noqa: E402
from settlement.pipeline.parser import parse_receipt_text  # noqa: E402
from settlement.reconciliation.rates import ExchangeRateService  # noqa: E402
from settlement.reconciliation.signals import SettlementSignals  # noqa: E402

# StaticPool ensures all connections share the same in-memory database
_ENGINE = create_engine(
    "sqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_Session = sessionmaker(autocommit=False, autoflush=False, bind=_ENGINE)

TEST_RATE = Decimal("78.85")


@pytest.fixture(autouse=True)
def _reset_tables():
    Base.metadata.create_all(bind=_ENGINE)
    yield
    Base.metadata.drop_all(bind=_ENGINE)


@pytest.fixture()
def db():
    session = _Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def rates():
    return ExchangeRateService(TEST_RATE)


@pytest.fixture()
def signals():
    return SettlementSignals()


@pytest.fixture()
def confirmed(signals):
    """Collects (transaction_id, from_status, to_status) signal calls."""
    calls = []
    signals.subscribe(lambda *args: calls.append(args))
    return calls


@pytest.fixture()
def client(db, rates, signals):
    def _override():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _override
    app.state.rates = rates
    app.state.signals = signals
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Record factory
# ---------------------------------------------------------------------------

def phone_receipt_text(amount: str, phone: str, date: str = "15.03.2025 12:00:00") -> str:
    return (
        f"{date}\n"
        "Перевод\n"
        "По номеру телефона\n"
        "Сумма\n"
        f"{amount} ₽\n"
        "Телефон получателя\n"
        f"{phone}\n"
        "Получатель\n"
        "Иван П.\n"
    )


def card_receipt_text(amount: str, card: str) -> str:
    return (
        "16.03.2025 09:30:00\n"
        "Перевод\n"
        "По номеру карты\n"
        "Сумма\n"
        f"{amount} ₽\n"
        "Карта получателя\n"
        f"{card}\n"
    )


class Factory:
    def __init__(self, db):
        self.db = db

    def receipt(self, text: str) -> ReceiptModel:
        parsed = parse_receipt_text(text)
        row = ReceiptModel(
            id=str(uuid.uuid4()),
            filename="receipt.pdf",
            content_hash=hashlib.sha256(uuid.uuid4().bytes).hexdigest(),
            match_status="pending",
        )
        apply_parsed(row, parsed)
        self.db.add(row)
        self.db.commit()
        return row

    def payout(self, amount, wallet: str = "", status: int = 5, payout_id: str | None = None) -> PayoutModel:
        row = PayoutModel(
            id=payout_id or str(uuid.uuid4()),
            gateway_payout_id=f"gw-{uuid.uuid4().hex[:8]}",
            status=status,
            amount_by_currency={"643": str(amount)},
            wallet=wallet,
        )
        self.db.add(row)
        self.db.commit()
        return row

    def advertisement(
        self,
        quantity="57.06",
        account_id: str = "acc-1",
        external_ad_id: str | None = None,
        is_placeholder: bool = False,
        created_at: datetime | None = None,
    ) -> AdvertisementModel:
        row = AdvertisementModel(
            id=str(uuid.uuid4()),
            external_ad_id=external_ad_id or f"ad-{uuid.uuid4().hex[:8]}",
            account_id=account_id,
            quantity=Decimal(str(quantity)),
            is_placeholder=is_placeholder,
            created_at=created_at or datetime.utcnow(),
        )
        self.db.add(row)
        self.db.commit()
        return row

    def transaction(
        self,
        status: str = "waiting_payment",
        payout_id: str | None = None,
        order_id: str | None = None,
        advertisement_id: str | None = None,
    ) -> TransactionModel:
        row = TransactionModel(
            id=str(uuid.uuid4()),
            status=status,
            payout_id=payout_id,
            order_id=order_id,
            advertisement_id=advertisement_id,
        )
        self.db.add(row)
        self.db.commit()
        return row


@pytest.fixture()
def factory(db):
    return Factory(db)
