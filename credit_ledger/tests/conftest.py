import pytest

from credit_ledger.service import LedgerService
from credit_ledger.storage import InMemoryStorage


def make_config(**overrides) -> dict:
    config = {
        "costs": {
            "generate-text": {"default": 1},
            "generate-image": {"default": 10, "pro": 5},
            "export-report": {"default": 25, "premium": 10},
            "free-action": {"default": 0},
        },
        "membership": {
            "tiers": {"free": 0, "basic": 1, "pro": 2, "premium": 3},
            "requirements": {"export-report": "pro"},
            "creditsCaps": {"free": 100, "basic": 500, "pro": 2000, "premium": 8000},
        },
        # Keep retries instant in tests.
        "retry": {"enabled": True, "maxAttempts": 3, "initialDelay": 0, "maxDelay": 0},
    }
    config.update(overrides)
    return config


@pytest.fixture
def config() -> dict:
    return make_config()


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def service(storage, config) -> LedgerService:
    return LedgerService(storage, config)
