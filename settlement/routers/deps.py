"""
Shared router dependencies and error translation.
"""
from __future__ import annotations

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session

from settlement.database import get_db
from settlement.errors import (
    ExternalDependencyFailure,
    IntegrityViolation,
    InvalidTransition,
    RecordNotFound,
    SettlementError,
)
from settlement.reconciliation.matching import MatchingEngine
from settlement.reconciliation.rates import ExchangeRateService
from settlement.reconciliation.signals import SettlementSignals


def get_rates(request: Request) -> ExchangeRateService:
    return request.app.state.rates


def get_signals(request: Request) -> SettlementSignals:
    return request.app.state.signals


def get_engine(
    db: Session = Depends(get_db),
    rates: ExchangeRateService = Depends(get_rates),
    signals: SettlementSignals = Depends(get_signals),
) -> MatchingEngine:
    return MatchingEngine(db, rates, signals)


def http_error(exc: SettlementError) -> HTTPException:
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (IntegrityViolation, InvalidTransition)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, ExternalDependencyFailure):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))
