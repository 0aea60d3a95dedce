"""
Tests for the HTTP API
"""

import asyncio

import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from credit_ledger.api import DEFAULT_CONFIG, app, get_ledger_service
from credit_ledger.config import LedgerConfig
from credit_ledger.errors import TransientStorageError
from credit_ledger.service import LedgerService
from credit_ledger.storage import InMemoryStorage


@pytest.fixture
def client(service):
    app.dependency_overrides[get_ledger_service] = lambda: service
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def add_user(storage, user_id, **kwargs):
    asyncio.run(storage.create_user(user_id, **kwargs))


class TestCreditRoutes:
    """Tests for charge, refund and grant routes."""

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_charge(self, client, storage):
        add_user(storage, "user-1", credits=100)

        response = client.post("/users/user-1/charge", json={"action": "generate-image"})

        assert response.status_code == 200
        body = response.json()
        assert body["cost"] == 10
        assert body["balance_after"] == 90
        assert body["transaction_id"]

    def test_charge_accepts_camel_case(self, client, storage):
        add_user(storage, "user-1", credits=100)

        first = client.post("/users/user-1/charge", json={"action": "generate-text", "idempotencyKey": "k-1"})
        second = client.post("/users/user-1/charge", json={"action": "generate-text", "idempotency_key": "k-1"})

        assert first.json() == second.json()
        assert client.get("/users/user-1/balance").json()["credits"] == 99

    def test_refund_and_grant(self, client, storage):
        add_user(storage, "user-1", credits=10)

        refund = client.post("/users/user-1/refund", json={"amount": 5, "action": "generate-image"})
        grant = client.post("/users/user-1/grant", json={"amount": 20, "action": "bonus"})

        assert refund.status_code == 200
        assert grant.status_code == 200
        assert grant.json()["balance_after"] == 35

    def test_negative_amount_rejected(self, client, storage):
        add_user(storage, "user-1", credits=10)

        response = client.post("/users/user-1/refund", json={"amount": -5, "action": "generate-image"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_AMOUNT"


class TestErrorMapping:
    """Tests for domain error to status code mapping."""

    def test_unknown_user_is_404(self, client):
        response = client.get("/users/ghost/balance")

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "USER_NOT_FOUND"

    def test_insufficient_credits_is_402(self, client, storage):
        add_user(storage, "user-1", credits=1)

        response = client.post("/users/user-1/charge", json={"action": "generate-image"})

        assert response.status_code == 402
        assert "insufficient credits" in response.json()["detail"]["message"]

    def test_membership_required_is_403(self, client, storage):
        add_user(storage, "user-1", credits=100, membership_tier="free")

        response = client.post("/users/user-1/charge", json={"action": "export-report"})

        assert response.status_code == 403

    def test_undefined_action_is_400(self, client, storage):
        add_user(storage, "user-1", credits=100)

        response = client.post("/users/user-1/charge", json={"action": "teleport"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "UNDEFINED_ACTION"

    def test_idempotency_key_reuse_is_409(self, client, storage):
        add_user(storage, "user-1", credits=100)

        charge = client.post("/users/user-1/charge", json={"action": "generate-text", "idempotencyKey": "k-1"})
        grant = client.post("/users/user-1/grant", json={"amount": 5, "action": "bonus", "idempotencyKey": "k-1"})

        assert charge.status_code == 200
        assert grant.status_code == 409
        assert grant.json()["detail"]["code"] == "IDEMPOTENCY_KEY_CONFLICT"
        assert client.get("/users/user-1/balance").json()["credits"] == 99

    def test_transient_failure_is_503(self, config):
        class DownStorage(InMemoryStorage):
            async def get_user_by_id(self, user_id, txn=None):
                raise TransientStorageError("connection refused", "ECONNREFUSED")

        service = LedgerService(DownStorage(), config)
        app.dependency_overrides[get_ledger_service] = lambda: service
        try:
            with TestClient(app) as client:
                response = client.get("/users/user-1/balance")
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 503


class TestMembershipRoutes:
    """Tests for tier changes and access checks."""

    def test_upgrade_and_downgrade(self, client, storage):
        add_user(storage, "user-1", credits=50, membership_tier="free")

        upgrade = client.post("/users/user-1/tier/upgrade", json={"target_tier": "premium"})
        downgrade = client.post("/users/user-1/tier/downgrade", json={"targetTier": "pro"})

        assert upgrade.status_code == 200
        assert upgrade.json()["credits_delta"] == 7950
        assert downgrade.status_code == 200
        assert downgrade.json()["new_credits"] == 2000
        assert downgrade.json()["old_tier"] == "premium"

    def test_upgrade_keeps_expiration_when_omitted(self, client, storage):
        add_user(storage, "user-1", membership_tier="free", membership_expires_at=None)

        response = client.post(
            "/users/user-1/tier/upgrade",
            json={"target_tier": "basic", "membership_expires_at": "2099-01-01T00:00:00Z"},
        )
        assert response.status_code == 200

        client.post("/users/user-1/tier/upgrade", json={"target_tier": "pro"})

        user = asyncio.run(storage.get_user_by_id("user-1"))
        assert user.membership_expires_at.year == 2099

    def test_invalid_tier_change_is_400(self, client, storage):
        add_user(storage, "user-1", membership_tier="pro")

        response = client.post("/users/user-1/tier/upgrade", json={"target_tier": "basic"})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "INVALID_TIER_CHANGE"

    def test_access(self, client, storage):
        add_user(storage, "user-1", membership_tier="basic")

        allowed = client.get("/users/user-1/access/generate-text").json()
        denied = client.get("/users/user-1/access/export-report").json()

        assert allowed == {"user_id": "user-1", "action": "generate-text", "allowed": True}
        assert denied["allowed"] is False

    def test_access_unknown_action_is_400(self, client, storage):
        add_user(storage, "user-1", membership_tier="premium")

        response = client.get("/users/user-1/access/teleport")

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "UNDEFINED_ACTION"

    def test_transactions(self, client, storage):
        add_user(storage, "user-1", credits=100)
        client.post("/users/user-1/charge", json={"action": "generate-text"})
        client.post("/users/user-1/grant", json={"amount": 3, "action": "bonus"})

        response = client.get("/users/user-1/transactions", params={"limit": 1})

        assert response.status_code == 200
        entries = response.json()
        assert len(entries) == 1
        assert entries[0]["action"] == "bonus"
        assert entries[0]["balance_after"] == 102


class TestServiceFactory:
    """Tests for the default service wiring."""

    def test_service_is_built_once(self, monkeypatch):
        monkeypatch.delenv("CREDIT_LEDGER_CONFIG", raising=False)
        get_ledger_service.cache_clear()
        try:
            first = get_ledger_service()
            second = get_ledger_service()
        finally:
            get_ledger_service.cache_clear()

        assert first is second
        assert first.config is DEFAULT_CONFIG

    def test_default_config_is_frozen(self):
        assert isinstance(DEFAULT_CONFIG, LedgerConfig)

        with pytest.raises(ValidationError):
            DEFAULT_CONFIG.costs = {}
        with pytest.raises(ValidationError):
            DEFAULT_CONFIG.retry.max_attempts = 10
