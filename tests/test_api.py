"""Tests for the FastAPI endpoints."""

import hashlib
import hmac
import json
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from offramp.api.app import create_app
from offramp.config import get_settings
from offramp.errors import (
    ActiveTransactionExistsError,
    OfframpDisabledError,
    TransactionStateError,
)
from offramp.ledger.database import close_db, get_db, get_engine
from offramp.ledger.models import Base, OfframpStatus, OfframpTransaction
from offramp.ledger.repository import OfframpRepository
from offramp.pipeline import AdvanceResult, get_state_machine, reset_state_machine

ADDRESS = "0x" + "ab" * 20


@pytest.fixture
def machine():
    """State machine stand-in; chain work is covered in test_state_machine."""
    machine = MagicMock()
    machine.generate_address = AsyncMock()
    machine.advance = AsyncMock()
    machine.restart = AsyncMock()
    machine.refund = AsyncMock()
    machine.return_gas = AsyncMock(return_value=None)
    machine.cancel = AsyncMock()
    return machine


@pytest_asyncio.fixture
async def test_app(machine):
    """Create test application with fresh database."""
    reset_state_machine()
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    app = create_app()
    app.dependency_overrides[get_state_machine] = lambda: machine

    yield app

    # Cleanup
    app.dependency_overrides.clear()
    await close_db()
    reset_state_machine()


@pytest_asyncio.fixture
async def client(test_app):
    """Create async test client."""
    transport = ASGITransport(app=test_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


async def seed_transaction(transaction_id: str = "offramp_seed", address: str = ADDRESS):
    async with get_db() as session:
        return await OfframpRepository(session).create_transaction(
            transaction_id=transaction_id,
            deposit_address=address,
            derivation_identifier=transaction_id,
            account_number="0123456789",
            bank_code="058",
        )


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client):
        """Test basic health check."""
        response = await client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "offramp"

    @pytest.mark.asyncio
    async def test_detailed_health(self, client):
        """Test detailed health check."""
        response = await client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert data["database"] == "ok"
        assert data["config"]["environment"] == "test"


class TestOfframpEndpoints:
    """Tests for the public off-ramp endpoints."""

    @pytest.mark.asyncio
    async def test_generate_address(self, client, machine):
        """Test a deposit address is issued for valid bank details."""
        machine.generate_address.return_value = OfframpTransaction(
            transaction_id="offramp_1",
            deposit_address=ADDRESS,
            network="base",
            status=OfframpStatus.PENDING.value,
        )

        response = await client.post(
            "/api/v1/offramp/address",
            json={"account_number": "0123456789", "bank_code": "058", "user_id": "42"},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["deposit_address"] == ADDRESS
        assert data["status"] == "pending"
        assert machine.generate_address.await_args.kwargs["user_id"] == "42"

    @pytest.mark.asyncio
    async def test_generate_address_validation(self, client, machine):
        """Test malformed account numbers are rejected."""
        response = await client.post(
            "/api/v1/offramp/address",
            json={"account_number": "12345", "bank_code": "058"},
        )

        assert response.status_code == 422
        machine.generate_address.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_generate_address_disabled(self, client, machine):
        """Test pipeline errors map to their HTTP status."""
        machine.generate_address.side_effect = OfframpDisabledError("Off-ramp disabled")

        response = await client.post(
            "/api/v1/offramp/address",
            json={"account_number": "0123456789", "bank_code": "058"},
        )

        assert response.status_code == 503
        data = response.json()
        assert data["success"] is False
        assert data["error_type"] == "OfframpDisabledError"

    @pytest.mark.asyncio
    async def test_process(self, client, machine):
        """Test the processing trigger returns the advance result."""
        machine.advance.return_value = AdvanceResult(
            "offramp_1", OfframpStatus.COMPLETED, success=True
        )

        response = await client.post("/api/v1/offramp/offramp_1/process")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"
        machine.advance.assert_awaited_once_with("offramp_1")

    @pytest.mark.asyncio
    async def test_process_busy(self, client, machine):
        """Test a busy transaction is reported without error status."""
        machine.advance.return_value = AdvanceResult(
            "offramp_1", OfframpStatus.SWAPPING, success=False, busy=True
        )

        response = await client.post("/api/v1/offramp/offramp_1/process")

        assert response.status_code == 200
        assert response.json()["busy"] is True

    @pytest.mark.asyncio
    async def test_cancel(self, client, machine):
        """Test cancelling a pending transaction."""
        tx = await seed_transaction()
        tx.status = OfframpStatus.FAILED.value
        tx.error_message = "Cancelled before any deposit arrived"
        machine.cancel.return_value = tx

        response = await client.post("/api/v1/offramp/offramp_seed/cancel")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "failed"
        assert data["message"].startswith("Cancelled")
        machine.cancel.assert_awaited_once_with("offramp_seed")

    @pytest.mark.asyncio
    async def test_cancel_conflict(self, client, machine):
        """Test a transaction past pending cannot be cancelled."""
        machine.cancel.side_effect = TransactionStateError("Cannot cancel offramp_1")

        response = await client.post("/api/v1/offramp/offramp_1/cancel")

        assert response.status_code == 409
        assert response.json()["error_type"] == "TransactionStateError"

    @pytest.mark.asyncio
    async def test_rate(self, client):
        """Test rate, limits and fee tiers are published."""
        response = await client.get("/api/v1/offramp/rate")

        assert response.status_code == 200
        data = response.json()
        assert data["exchange_rate"] == str(get_settings().offramp_exchange_rate)
        assert len(data["fee_tiers"]) == 4
        assert data["fee_tiers"][-1]["max_amount"] is None

    @pytest.mark.asyncio
    async def test_quote(self, client):
        """Test a payout preview applies the matching tier."""
        response = await client.get("/api/v1/offramp/quote", params={"usdc_amount": "10"})

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["ngn_amount"]) == Decimal("16500")
        assert Decimal(data["fee_ngn"]) == Decimal("165")
        assert Decimal(data["payable_ngn"]) == Decimal("16335")

    @pytest.mark.asyncio
    async def test_quote_below_minimum(self, client):
        """Test quotes outside the limits are refused."""
        response = await client.get("/api/v1/offramp/quote", params={"usdc_amount": "0.1"})

        assert response.status_code == 400
        assert response.json()["error_type"] == "AmountLimitError"

    @pytest.mark.asyncio
    async def test_get_transaction(self, client):
        """Test a transaction is readable without its derivation identifier."""
        await seed_transaction()

        response = await client.get("/api/v1/offramp/offramp_seed")

        assert response.status_code == 200
        tx = response.json()["transaction"]
        assert tx["status"] == "pending"
        assert "derivation_identifier" not in tx

    @pytest.mark.asyncio
    async def test_get_transaction_not_found(self, client):
        """Test unknown transactions return 404."""
        response = await client.get("/api/v1/offramp/offramp_missing")

        assert response.status_code == 404
        assert response.json()["error_type"] == "TransactionNotFoundError"


class TestDepositWebhook:
    """Tests for the deposit webhook."""

    @pytest.mark.asyncio
    async def test_unknown_address(self, client, machine):
        """Test deposits to unknown wallets are acknowledged but ignored."""
        response = await client.post(
            "/api/v1/webhooks/deposit", json={"to_address": "0x" + "99" * 20}
        )

        assert response.status_code == 200
        assert response.json()["success"] is False
        machine.advance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_advances_transaction(self, client, machine):
        """Test a deposit advances the wallet's active transaction."""
        await seed_transaction()
        machine.advance.return_value = AdvanceResult(
            "offramp_seed", OfframpStatus.COMPLETED, success=True
        )

        response = await client.post(
            "/api/v1/webhooks/deposit", json={"to_address": ADDRESS.upper().replace("0X", "0x")}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["transaction_id"] == "offramp_seed"
        machine.advance.assert_awaited_once_with("offramp_seed")

    @pytest.mark.asyncio
    async def test_terminal_not_advanced(self, client, machine):
        """Test a finished transaction is acknowledged as-is."""
        tx = await seed_transaction()
        async with get_db() as session:
            repo = OfframpRepository(session)
            await repo.mark_failed(await repo.require_transaction(tx.transaction_id), "boom")

        response = await client.post("/api/v1/webhooks/deposit", json={"to_address": ADDRESS})

        assert response.json()["status"] == "failed"
        machine.advance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_signature_required(self, client, machine, monkeypatch):
        """Test a configured secret requires a valid HMAC signature."""
        monkeypatch.setattr(get_settings(), "deposit_webhook_secret", "whsec_test")
        await seed_transaction()
        machine.advance.return_value = AdvanceResult(
            "offramp_seed", OfframpStatus.PENDING, success=False, error="No token"
        )
        body = json.dumps({"to_address": ADDRESS}).encode()
        headers = {"Content-Type": "application/json"}

        missing = await client.post("/api/v1/webhooks/deposit", content=body, headers=headers)
        wrong = await client.post(
            "/api/v1/webhooks/deposit",
            content=body,
            headers={**headers, "X-Webhook-Signature": "sha256=" + "0" * 64},
        )
        signature = hmac.new(b"whsec_test", body, hashlib.sha256).hexdigest()
        valid = await client.post(
            "/api/v1/webhooks/deposit",
            content=body,
            headers={**headers, "X-Webhook-Signature": f"sha256={signature}"},
        )

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert valid.status_code == 200
        assert valid.json()["message"] == "No token"
        assert machine.advance.await_count == 1


class TestAdminEndpoints:
    """Tests for the admin API."""

    @pytest.mark.asyncio
    async def test_open_without_token_outside_production(self, client):
        """Test admin routes are open when no token is configured in test."""
        response = await client.get("/admin/offramp/stats")

        assert response.status_code == 200
        data = response.json()
        assert data["by_status"] == {}
        assert data["total_revenue_ngn"] == "0"

    @pytest.mark.asyncio
    async def test_token_required(self, client, monkeypatch):
        """Test a configured admin token is enforced."""
        monkeypatch.setattr(get_settings(), "admin_token", "s3cret")

        missing = await client.get("/admin/offramp/stats")
        wrong = await client.get("/admin/offramp/stats", headers={"X-Admin-Token": "nope"})
        valid = await client.get("/admin/offramp/stats", headers={"X-Admin-Token": "s3cret"})

        assert missing.status_code == 401
        assert wrong.status_code == 401
        assert valid.status_code == 200

    @pytest.mark.asyncio
    async def test_list_transactions(self, client):
        """Test transactions can be filtered by status."""
        await seed_transaction()

        pending = await client.get("/admin/offramp/transactions", params={"status": "pending"})
        failed = await client.get("/admin/offramp/transactions", params={"status": "failed"})

        assert pending.json()["count"] == 1
        assert failed.json()["count"] == 0

    @pytest.mark.asyncio
    async def test_restart_conflict(self, client, machine):
        """Test an illegal restart returns 409."""
        machine.restart.side_effect = TransactionStateError("Cannot restart a completed transaction")

        response = await client.post("/admin/offramp/offramp_1/restart")

        assert response.status_code == 409
        assert response.json()["error_type"] == "TransactionStateError"

    @pytest.mark.asyncio
    async def test_restart_second_active_row(self, client, machine):
        """Test a restart colliding with another active row is a structured 409."""
        machine.restart.side_effect = ActiveTransactionExistsError(
            "Cannot restart offramp_1: transaction offramp_2 is already pending for this wallet"
        )

        response = await client.post("/admin/offramp/offramp_1/restart")

        assert response.status_code == 409
        data = response.json()
        assert data["success"] is False
        assert data["error_type"] == "ActiveTransactionExistsError"

    @pytest.mark.asyncio
    async def test_process_pending(self, client, machine):
        """Test the sweep endpoint runs one runner pass."""
        summary = {
            "processed": 2,
            "completed": 1,
            "failed": 0,
            "waiting": 1,
            "busy": 0,
            "errors": 0,
        }
        with patch("offramp.api.routers.admin.TransactionRunner") as runner_cls:
            runner_cls.from_settings.return_value.process_once = AsyncMock(return_value=summary)

            response = await client.post("/admin/offramp/process-pending")

        assert response.status_code == 200
        assert response.json() == {"success": True, **summary}
        runner_cls.from_settings.assert_called_once_with(machine)

    @pytest.mark.asyncio
    async def test_restart(self, client, machine):
        """Test a restart returns the resulting status."""
        machine.restart.return_value = AdvanceResult(
            "offramp_1", OfframpStatus.COMPLETED, success=True
        )

        response = await client.post("/admin/offramp/offramp_1/restart")

        assert response.status_code == 200
        assert response.json()["status"] == "completed"

    @pytest.mark.asyncio
    async def test_refund_bad_address(self, client, machine):
        """Test refund address errors return 400."""
        machine.refund.side_effect = ValueError("Invalid refund address")

        response = await client.post(
            "/admin/offramp/offramp_1/refund", json={"to_address": "0x" + "zz" * 20}
        )

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_replace_fee_tiers(self, client):
        """Test a valid tier table replaces the defaults."""
        tiers = [
            {"min_amount": "0", "max_amount": "10000", "percentage": "1.0", "tier_name": "Small"},
            {"min_amount": "10000", "max_amount": None, "percentage": "0.25", "tier_name": "Large"},
        ]

        response = await client.put("/admin/offramp/fee-tiers", json=tiers)
        rate = await client.get("/api/v1/offramp/rate")

        assert response.status_code == 200
        published = rate.json()["fee_tiers"]
        assert len(published) == 2
        assert Decimal(published[1]["percentage"]) == Decimal("0.25")

    @pytest.mark.asyncio
    async def test_replace_fee_tiers_gap(self, client):
        """Test a tier table with a gap is refused."""
        tiers = [
            {"min_amount": "0", "max_amount": "1000", "percentage": "2"},
            {"min_amount": "2000", "max_amount": None, "percentage": "1"},
        ]

        response = await client.put("/admin/offramp/fee-tiers", json=tiers)

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_update_settings(self, client):
        """Test runtime overrides take effect immediately."""
        response = await client.patch(
            "/admin/offramp/settings", json={"exchange_rate": "1700", "enabled": False}
        )

        assert response.status_code == 200
        settings = response.json()["settings"]
        assert Decimal(settings["exchange_rate"]) == Decimal("1700")
        assert settings["enabled"] is False

        rate = await client.get("/api/v1/offramp/rate")
        assert Decimal(rate.json()["exchange_rate"]) == Decimal("1700")

    @pytest.mark.asyncio
    async def test_update_settings_bad_limits(self, client):
        """Test a minimum at or above the maximum is refused."""
        response = await client.patch(
            "/admin/offramp/settings", json={"minimum_ngn": "10000", "maximum_ngn": "5000"}
        )

        assert response.status_code == 400
