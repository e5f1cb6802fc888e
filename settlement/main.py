"""
Settlement reconciliation service — FastAPI application entry-point.
"""
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from settlement.config import settings
from settlement.database import Base, engine
from settlement.reconciliation.rates import ExchangeRateService
from settlement.reconciliation.signals import SettlementSignals
from settlement.workers import build_workers

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s  %(name)-30s  %(levelname)-5s  %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: ensure data dir + tables exist
    os.makedirs(settings.DATA_DIR, exist_ok=True)
    import settlement.models  # noqa: F401
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables ready (%s)", settings.DATABASE_URL)

    workers = []
    if settings.WORKERS_ENABLED:
        workers = build_workers(app.state.rates, app.state.signals)
        for worker in workers:
            worker.start()

    yield

    for worker in workers:
        await worker.stop()
    logger.info("Shutting down")


app = FastAPI(
    title="Settlement Reconciliation",
    description="Bank receipt → parsed record → payout link → transaction settlement",
    version="0.1.0",
    lifespan=lifespan,
)

# Lifecycle-scoped services, replaced by fakes in tests
app.state.rates = ExchangeRateService(settings.AMOUNT_MATCH_EXCHANGE_RATE)
app.state.signals = SettlementSignals()

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/")
async def root():
    return {"service": "Settlement Reconciliation", "version": "0.1.0", "status": "running"}


@app.get("/health")
async def health_check():
    return {"status": "healthy"}


# ── Register API routers ─────────────────────────────────────────────────
from settlement.routers.receipts import router as receipts_router  # noqa: E402
from settlement.routers.reconciliation import router as reconciliation_router  # noqa: E402
from settlement.routers.transactions import router as transactions_router  # noqa: E402

app.include_router(receipts_router, prefix="/api", tags=["Receipts"])
app.include_router(reconciliation_router, prefix="/api", tags=["Reconciliation"])
app.include_router(transactions_router, prefix="/api", tags=["Transactions"])
