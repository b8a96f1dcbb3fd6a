"""
Tests for environment-driven configuration
"""

import pytest
from pydantic import ValidationError

from interbank.config import BankConfig


class TestBankConfig:

    def test_defaults(self):
        config = BankConfig(_env_file=None)
        assert config.default_currency == "EUR"
        assert config.rotate_keys_on_startup is False
        assert config.delivery_max_attempts == 3

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("BANK_BANK_PREFIX", "xyz")
        monkeypatch.setenv("BANK_TEST_MODE", "true")
        monkeypatch.setenv("BANK_API_PORT", "8081")

        config = BankConfig(_env_file=None)
        assert config.bank_prefix == "XYZ"
        assert config.test_mode is True
        assert config.api_port == 8081

    def test_prefix_must_be_three_characters(self):
        with pytest.raises(ValidationError):
            BankConfig(bank_prefix="ABCD", _env_file=None)

    def test_currency_normalized(self):
        assert BankConfig(default_currency="usd", _env_file=None).default_currency == "USD"
