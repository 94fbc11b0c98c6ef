"""
Tests for configuration loading and validation.
"""
import pytest
from pydantic import ValidationError

from bullion_settlement.config import Settings, get_settings


class TestSettings:
    """Test suite for configuration."""

    @pytest.mark.unit
    def test_settings_from_environment(self, monkeypatch) -> None:
        monkeypatch.setenv("CASHFREE_ENV", "production")

        settings = get_settings()

        assert settings.cashfree_env == "PRODUCTION"
        assert settings.cashfree_base_url == "https://api.cashfree.com/pg"
        assert settings.settlement_currency == "INR"
        assert settings.is_sqlite
        assert get_settings() is settings

    @pytest.mark.unit
    def test_invalid_settings(self, test_settings) -> None:
        with pytest.raises(ValidationError):
            Settings(**{**test_settings.model_dump(), "cashfree_env": "STAGING"})
        with pytest.raises(ValidationError):
            Settings(**{**test_settings.model_dump(), "gateway_retry_max_attempts": 0})
