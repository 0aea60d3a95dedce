"""
Unit Tests for Configuration Loading
"""

import json

import pytest

from credit_ledger.config import (
    LedgerConfig,
    load_config,
    load_config_from_env,
)
from credit_ledger.errors import ConfigurationError, ErrorKind
from credit_ledger.service import LedgerService
from credit_ledger.storage import InMemoryStorage


def minimal_config(**membership) -> dict:
    return {
        "costs": {"generate-text": {"default": 1}},
        "membership": {
            "tiers": {"free": 0, "premium": 1},
            "requirements": {},
            "creditsCaps": {"free": 100, "premium": 1000},
            **membership,
        },
    }


class TestLoadConfig:
    """Tests for parsing and defaults."""

    def test_defaults(self):
        config = load_config(minimal_config())

        assert config.retry.enabled is True
        assert config.retry.max_attempts == 3
        assert config.retry.initial_delay == 100
        assert config.retry.max_delay == 5000
        assert config.retry.backoff_multiplier == 2
        assert config.idempotency.enabled is True
        assert config.idempotency.ttl == 86400
        assert config.audit.enabled is True

    def test_snake_case_keys_accepted(self):
        raw = minimal_config()
        raw["membership"]["credits_caps"] = raw["membership"].pop("creditsCaps")
        raw["retry"] = {"max_attempts": 5}

        config = load_config(raw)

        assert config.get_credits_cap("premium") == 1000
        assert config.retry.max_attempts == 5

    def test_config_is_immutable(self):
        config = load_config(minimal_config())

        with pytest.raises(Exception):
            config.audit = None

    def test_existing_config_passes_through(self):
        config = load_config(minimal_config())

        assert load_config(config) is config
        assert isinstance(config, LedgerConfig)

    def test_pydantic_errors_become_configuration_errors(self):
        raw = minimal_config()
        raw["retry"] = {"maxAttempts": "many"}

        with pytest.raises(ConfigurationError) as exc_info:
            load_config(raw)

        assert "maxAttempts" in str(exc_info.value) or "max_attempts" in str(exc_info.value)
        assert exc_info.value.kind == ErrorKind.CONFIGURATION


class TestCreditsCaps:
    """Tests for credits cap validation."""

    def test_missing_caps(self):
        raw = minimal_config()
        del raw["membership"]["creditsCaps"]

        with pytest.raises(ConfigurationError, match="creditsCaps"):
            load_config(raw)

    def test_cap_missing_for_tier_names_tier(self):
        with pytest.raises(ConfigurationError) as exc_info:
            LedgerService(InMemoryStorage(), minimal_config(creditsCaps={"free": 100}))

        assert "premium" in str(exc_info.value)

    @pytest.mark.parametrize("cap", [-1, "lots", None, 10.5])
    def test_invalid_cap_values(self, cap):
        with pytest.raises(ConfigurationError, match="premium"):
            load_config(minimal_config(creditsCaps={"free": 100, "premium": cap}))

    def test_zero_cap_and_extra_caps_allowed(self):
        config = load_config(minimal_config(creditsCaps={"free": 0, "premium": 10, "legacy": 5}))

        assert config.get_credits_cap("free") == 0


class TestOtherRules:
    """Tests for cost and retry validation."""

    def test_cost_needs_default(self):
        raw = minimal_config()
        raw["costs"] = {"generate-text": {"premium": 1}}

        with pytest.raises(ConfigurationError, match="generate-text"):
            load_config(raw)

    def test_negative_cost_rejected(self):
        raw = minimal_config()
        raw["costs"] = {"generate-text": {"default": -5}}

        with pytest.raises(ConfigurationError):
            load_config(raw)

    @pytest.mark.parametrize("retry", [
        {"maxAttempts": 0},
        {"initialDelay": -1},
        {"initialDelay": 500, "maxDelay": 100},
        {"backoffMultiplier": 0.5},
    ])
    def test_invalid_retry_settings(self, retry):
        raw = minimal_config()
        raw["retry"] = retry

        with pytest.raises(ConfigurationError):
            load_config(raw)

    def test_negative_ttl_rejected(self):
        raw = minimal_config()
        raw["idempotency"] = {"ttl": -1}

        with pytest.raises(ConfigurationError):
            load_config(raw)

    def test_non_mapping_rejected(self):
        with pytest.raises(ConfigurationError):
            load_config(["not", "a", "mapping"])


class TestLoadFromEnv:
    """Tests for file based configuration."""

    def test_reads_json_file(self, tmp_path, monkeypatch):
        path = tmp_path / "ledger.json"
        path.write_text(json.dumps(minimal_config()))
        monkeypatch.setenv("CREDIT_LEDGER_CONFIG", str(path))

        config = load_config_from_env()

        assert config.membership.tiers == {"free": 0, "premium": 1}

    def test_unset_env(self, monkeypatch):
        monkeypatch.delenv("CREDIT_LEDGER_CONFIG", raising=False)

        with pytest.raises(ConfigurationError, match="CREDIT_LEDGER_CONFIG"):
            load_config_from_env()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="not found"):
            load_config_from_env(str(tmp_path / "missing.json"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            load_config_from_env(str(path))
