"""
Exception taxonomy.

Expected reconciliation outcomes (parse failure, no candidate, ambiguous
match) are values, not exceptions: see ``ParsedReceipt.status`` and
``LinkOutcome``. The classes here cover the cases that interrupt an
operation.
"""


class SettlementError(Exception):
    """Base class for service errors."""


class ExternalDependencyFailure(SettlementError):
    """Text extraction or gateway sync unavailable after bounded retries."""


class UnreadableDocument(SettlementError):
    """The document bytes could not be opened as a PDF."""


class IntegrityViolation(SettlementError):
    """An operation would break a reconciliation invariant."""


class RecordNotFound(SettlementError):
    """A referenced receipt, payout, transaction or advertisement is missing."""


class InvalidTransition(SettlementError):
    """Transaction status change not allowed by the state machine."""

    def __init__(self, from_status: str, to_status: str):
        super().__init__(f"Transition {from_status} -> {to_status} is not allowed")
        self.from_status = from_status
        self.to_status = to_status
