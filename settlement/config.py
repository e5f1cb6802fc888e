"""
Application settings for the settlement reconciliation service.
"""
from decimal import Decimal
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = "sqlite:///./data/settlement.db"

    # Environment
    ENVIRONMENT: str = "development"
    DEBUG: bool = False

    # CORS (admin dashboard)
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # File storage
    DATA_DIR: str = "./data"

    # Payout gateway
    FIAT_CURRENCY_CODE: str = "643"
    AWAITING_CONFIRMATION_STATUSES: List[int] = [5]

    # Amount-based matching
    AMOUNT_MATCH_TOLERANCE: Decimal = Decimal("50")
    AMOUNT_MATCH_EXCHANGE_RATE: Decimal = Decimal("78.85")

    # Workers
    WORKERS_ENABLED: bool = True
    MATCH_INTERVAL_SECONDS: float = 5.0
    PARSE_INTERVAL_SECONDS: float = 30.0
    SWEEP_INTERVAL_SECONDS: float = 60.0
    SWEEP_DEDUP_WINDOW_SECONDS: int = 300
    MATCH_BATCH_SIZE: int = 50

    # Text extraction boundary
    EXTRACTION_TIMEOUT_SECONDS: float = 20.0
    EXTRACTION_MAX_ATTEMPTS: int = 3
    EXTRACTION_MAX_ROUNDS: int = 5  # parse-worker passes before a receipt is left to the operator

    # Placeholder advertisements
    PLACEHOLDER_AD_PREFIX: str = "temp_"
    PLACEHOLDER_MATCH_BEFORE_MINUTES: int = 30
    PLACEHOLDER_MATCH_AFTER_MINUTES: int = 5

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()
