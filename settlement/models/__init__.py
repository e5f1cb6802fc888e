from settlement.models.payout import PayoutModel
from settlement.models.receipt import ReceiptModel
from settlement.models.reconciliation import (
    AmbiguousMatchModel,
    AnomalyModel,
    LinkEventModel,
)
from settlement.models.transaction import (
    AdvertisementModel,
    TransactionEventModel,
    TransactionModel,
)

__all__ = [
    "AdvertisementModel",
    "AmbiguousMatchModel",
    "AnomalyModel",
    "LinkEventModel",
    "PayoutModel",
    "ReceiptModel",
    "TransactionEventModel",
    "TransactionModel",
]
