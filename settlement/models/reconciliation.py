"""
Reconciliation bookkeeping: link audit trail, ambiguity queue, anomalies.
"""
from datetime import datetime

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, UniqueConstraint

from settlement.database import Base


class LinkEventModel(Base):
    """Audit row for every link / unlink / bind / unbind / swap / merge."""
    __tablename__ = "link_events"

    id = Column(String, primary_key=True)
    action = Column(String, nullable=False)  # link, unlink, bind, unbind, swap, merge
    method = Column(String, nullable=False)  # receipt, amount, manual, sweeper
    receipt_id = Column(String, index=True)
    payout_id = Column(String, index=True)
    transaction_id = Column(String, index=True)
    detail_json = Column(JSON)
    occurred_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class AmbiguousMatchModel(Base):
    """Match attempt with several surviving candidates, kept for an operator."""
    __tablename__ = "ambiguous_matches"
    __table_args__ = (UniqueConstraint("subject_type", "subject_id"),)

    id = Column(String, primary_key=True)
    subject_type = Column(String, nullable=False)  # receipt, transaction, payout
    subject_id = Column(String, nullable=False, index=True)
    candidate_ids = Column(JSON, nullable=False)
    status = Column(String, nullable=False, default="open")  # open, resolved
    resolution = Column(Text)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AnomalyModel(Base):
    """Integrity finding recorded by the sweeper."""
    __tablename__ = "anomalies"
    __table_args__ = (UniqueConstraint("kind", "subject_id"),)

    id = Column(String, primary_key=True)
    kind = Column(String, nullable=False)  # dangling_payout, orphaned_payout, amount_mismatch, placeholder_advertisement
    subject_id = Column(String, nullable=False, index=True)
    detail_json = Column(JSON)
    status = Column(String, nullable=False, default="open")  # open, repaired, reported
    occurrences = Column(Integer, nullable=False, default=1)
    first_seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_seen_at = Column(DateTime, default=datetime.utcnow, nullable=False)
