"""
Settings tests — environment overrides and defaults.
"""
from decimal import Decimal

from settlement.config import Settings


class TestSettings:
    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("AMOUNT_MATCH_TOLERANCE", raising=False)
        config = Settings(_env_file=None)
        assert config.AMOUNT_MATCH_TOLERANCE == Decimal("50")
        assert config.AWAITING_CONFIRMATION_STATUSES == [5]

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("AMOUNT_MATCH_TOLERANCE", "25.5")
        monkeypatch.setenv("AWAITING_CONFIRMATION_STATUSES", "[5, 6]")
        config = Settings(_env_file=None)
        assert config.AMOUNT_MATCH_TOLERANCE == Decimal("25.5")
        assert config.AWAITING_CONFIRMATION_STATUSES == [5, 6]

    def test_names_are_case_sensitive(self, monkeypatch):
        monkeypatch.delenv("AMOUNT_MATCH_TOLERANCE", raising=False)
        monkeypatch.setenv("amount_match_tolerance", "1")
        config = Settings(_env_file=None)
        assert config.AMOUNT_MATCH_TOLERANCE == Decimal("50")
