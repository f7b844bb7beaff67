"""HTTP tests for the subscription service.

The processor runs against a temporary ledger and a mocked chain client.
"""

import re
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from factories import ONE_ADAO, RECEIVER_ADDRESS, USER_ADDRESS
from src.models import SubscriptionWebhook
from src.subscriptions.gateway import LedgerSubscriptionGateway
from src.subscriptions.processor import PaymentProcessor
from src.subscriptions.server import SKILL_PREFIX, app, get_processor
from src.subscriptions.webhooks import handle_subscription_event

PAYMENT_URL = f"{SKILL_PREFIX}/process-payment"


@pytest.fixture
def api_processor(settings, chain, ledger):
    return PaymentProcessor(settings, chain, LedgerSubscriptionGateway(ledger), ledger)


@pytest.fixture
async def client(api_processor) -> AsyncGenerator[AsyncClient, None]:
    app.dependency_overrides[get_processor] = lambda: api_processor
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.mark.integration
class TestProcessPayment:
    """POST process-payment."""

    @pytest.mark.asyncio
    async def test_camel_case_payment(self, client):
        response = await client.post(
            PAYMENT_URL,
            json={"userAddress": USER_ADDRESS, "planId": "basic", "billingCycle": "monthly", "amount": 100},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["subscriptionId"].startswith("sub_")
        assert re.fullmatch(r"0x[0-9a-f]{64}", data["transactionHash"])
        assert data["simulated"] is True
        assert data["receiverAddress"] == RECEIVER_ADDRESS
        assert data["paymentDetails"] == {
            "from": USER_ADDRESS,
            "to": RECEIVER_ADDRESS,
            "amount": 100,
            "token": "ADAO",
            "tokenAddress": data["paymentDetails"]["tokenAddress"],
        }
        assert response.headers["X-Request-Id"].startswith("req-")

    @pytest.mark.asyncio
    async def test_snake_case_payment(self, client, chain):
        chain.get_token_balance.return_value = 10_000 * ONE_ADAO

        response = await client.post(
            PAYMENT_URL,
            json={
                "user_address": USER_ADDRESS,
                "plan_id": "pro",
                "billing_period": "quarterly",
                "amount": "1350",
                "agent_id": "agent-7",
            },
        )

        assert response.status_code == 200
        assert response.json()["planId"] == "pro"
        assert response.json()["billingCycle"] == "quarterly"

    @pytest.mark.asyncio
    async def test_camel_case_wins_over_snake_case(self, client, chain):
        chain.get_token_balance.return_value = 10_000 * ONE_ADAO

        response = await client.post(
            PAYMENT_URL,
            json={
                "userAddress": USER_ADDRESS,
                "planId": "enterprise",
                "plan_id": "basic",
                "billingCycle": "monthly",
                "amount": 2000,
            },
        )

        assert response.status_code == 200
        assert response.json()["planId"] == "enterprise"

    @pytest.mark.asyncio
    async def test_subscription_is_queryable_after_payment(self, client):
        await client.post(
            PAYMENT_URL,
            json={"userAddress": USER_ADDRESS, "planId": "basic", "billingCycle": "monthly", "amount": 100},
        )

        response = await client.get(PAYMENT_URL, params={"userAddress": USER_ADDRESS})

        assert response.status_code == 200
        assert response.json()["status"]["active"] is True

    @pytest.mark.asyncio
    async def test_validation_failure(self, client, chain):
        response = await client.post(PAYMENT_URL, json={"planId": "basic"})

        assert response.status_code == 400
        data = response.json()
        assert data["success"] is False
        assert data["error"] == "Missing user address"
        assert data["errorKind"] == "invalid_input"
        chain.get_native_balance.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, client, chain):
        chain.get_token_balance.return_value = 50 * ONE_ADAO

        response = await client.post(
            PAYMENT_URL,
            json={"userAddress": USER_ADDRESS, "planId": "basic", "billingCycle": "monthly", "amount": 100},
        )

        assert response.status_code == 400
        assert response.json()["errorKind"] == "insufficient_funds"
        assert "Insufficient ADAO balance" in response.json()["error"]

    @pytest.mark.asyncio
    async def test_malformed_body(self, client):
        response = await client.post(
            PAYMENT_URL, content="not json", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body, expected_error",
        [
            (
                {"userAddress": ["a"], "planId": "basic", "billingCycle": "monthly", "amount": 1},
                "Invalid user address format",
            ),
            ({"planId": 5, "billingCycle": "monthly", "amount": 1}, "Missing user address"),
            (
                {"userAddress": USER_ADDRESS, "planId": 5, "billingCycle": "monthly", "amount": 1},
                "Invalid plan ID",
            ),
        ],
    )
    async def test_non_string_field(self, client, chain, body, expected_error):
        response = await client.post(PAYMENT_URL, json=body)

        assert response.status_code == 400
        assert response.json()["error"] == expected_error
        assert response.json()["errorKind"] == "invalid_input"
        chain.get_native_balance.assert_not_awaited()


@pytest.mark.integration
class TestSubscriptionEndpoints:
    """Status, cancel, gas estimate and plans."""

    @pytest.mark.asyncio
    async def test_status_requires_address(self, client):
        response = await client.get(PAYMENT_URL)

        assert response.status_code == 400
        assert response.json()["error"] == "User address is required"

    @pytest.mark.asyncio
    async def test_status_without_subscription(self, client):
        response = await client.get(PAYMENT_URL, params={"userAddress": USER_ADDRESS})

        assert response.status_code == 200
        assert response.json()["status"]["active"] is False

    @pytest.mark.asyncio
    async def test_status_invalid_address(self, client):
        response = await client.get(PAYMENT_URL, params={"userAddress": "0x123"})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_cancel(self, client):
        await client.post(
            PAYMENT_URL,
            json={"userAddress": USER_ADDRESS, "planId": "basic", "billingCycle": "monthly", "amount": 100},
        )

        response = await client.post(f"{SKILL_PREFIX}/cancel", json={"userAddress": USER_ADDRESS})

        assert response.status_code == 200
        assert response.json()["message"] == "Subscription cancelled successfully"

    @pytest.mark.asyncio
    async def test_cancel_without_subscription(self, client):
        response = await client.post(f"{SKILL_PREFIX}/cancel", json={"user_address": USER_ADDRESS})

        assert response.status_code == 400
        assert response.json()["success"] is False

    @pytest.mark.asyncio
    async def test_cancel_requires_address(self, client):
        response = await client.post(f"{SKILL_PREFIX}/cancel", json={})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_estimate_gas(self, client):
        response = await client.get(
            f"{SKILL_PREFIX}/estimate-gas",
            params={"userAddress": USER_ADDRESS, "planId": "basic", "billingCycle": "monthly"},
        )

        assert response.status_code == 200
        assert response.json()["estimatedCost"] == "0.00005"
        assert response.json()["nativeSymbol"] == "ETH"

    @pytest.mark.asyncio
    async def test_estimate_gas_requires_params(self, client):
        response = await client.get(f"{SKILL_PREFIX}/estimate-gas", params={"userAddress": USER_ADDRESS})

        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_plans(self, client):
        response = await client.get(f"{SKILL_PREFIX}/plans")

        assert response.status_code == 200
        data = response.json()
        assert data["token"]["symbol"] == "ADAO"
        assert [plan["id"] for plan in data["plans"]] == ["basic", "pro", "enterprise"]
        assert data["plans"][0]["pricing"]["monthly"]["price"] == 100

    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "ok"


@pytest.mark.integration
class TestReconciliationEndpoints:
    """Outbox listing and retry."""

    @pytest.mark.asyncio
    async def test_list_and_retry(self, client, ledger):
        record = await ledger.record_reconciliation(
            transaction_hash="0x" + "ef" * 32,
            user_address=USER_ADDRESS,
            receiver_address=RECEIVER_ADDRESS,
            plan_id="basic",
            billing_cycle="monthly",
            amount=100,
            token_address="0x1ef7be0abff7d1490e952ec1c7476443a66d6b72",
            error_message="gateway down",
        )

        listed = await client.get(f"{SKILL_PREFIX}/reconciliations")
        retried = await client.post(f"{SKILL_PREFIX}/reconciliations/{record.reconciliation_id}/retry")
        remaining = await client.get(f"{SKILL_PREFIX}/reconciliations")
        everything = await client.get(f"{SKILL_PREFIX}/reconciliations", params={"status": "all"})

        assert listed.json()["count"] == 1
        assert retried.status_code == 200
        assert retried.json()["transactionHash"] == "0x" + "ef" * 32
        assert retried.json()["subscriptionId"].startswith("sub_")
        assert remaining.json()["count"] == 0
        assert everything.json()["reconciliations"][0]["status"] == "resolved"

    @pytest.mark.asyncio
    async def test_retry_unknown(self, client):
        response = await client.post(f"{SKILL_PREFIX}/reconciliations/recon-missing/retry")

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_retry_of_unmined_transfer(self, client, chain, ledger):
        chain.get_transfer_receipt.return_value = None
        record = await ledger.record_reconciliation(
            transaction_hash="0x" + "ef" * 32,
            user_address=USER_ADDRESS,
            receiver_address=RECEIVER_ADDRESS,
            plan_id="basic",
            billing_cycle="monthly",
            amount=100,
            token_address="0x1ef7be0abff7d1490e952ec1c7476443a66d6b72",
            error_message="receipt timeout",
        )

        response = await client.post(f"{SKILL_PREFIX}/reconciliations/{record.reconciliation_id}/retry")

        assert response.status_code == 502
        assert response.json()["transactionHash"] == "0x" + "ef" * 32
        assert response.json()["reconciliationId"] == record.reconciliation_id
        assert (await ledger.get_reconciliation(record.reconciliation_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_listing_error_returns_json(self, client, api_processor):
        api_processor.ledger = MagicMock()
        api_processor.ledger.list_reconciliations = AsyncMock(side_effect=OSError("disk I/O error"))

        response = await client.get(f"{SKILL_PREFIX}/reconciliations")

        assert response.status_code == 500
        assert response.json()["success"] is False
        assert response.json()["error"] == "Internal server error"

    @pytest.mark.asyncio
    async def test_retry_error_returns_json(self, client, api_processor):
        api_processor.ledger = MagicMock()
        api_processor.ledger.get_reconciliation = AsyncMock(side_effect=OSError("disk I/O error"))

        response = await client.post(f"{SKILL_PREFIX}/reconciliations/recon-1/retry")

        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"


@pytest.mark.integration
class TestWebhookEndpoint:
    """Incoming subscription webhooks."""

    @pytest.mark.asyncio
    async def test_known_event_acknowledged(self, client):
        response = await client.post(
            "/api/webhooks/subscription",
            json={"event": "subscription.created", "subscriptionId": "sub_123", "userAddress": USER_ADDRESS},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["event"] == "subscription.created"
        assert data["subscriptionId"] == "sub_123"

    @pytest.mark.asyncio
    async def test_unknown_event_acknowledged(self, client):
        response = await client.post(
            "/api/webhooks/subscription", json={"event": "subscription.paused", "extra": 1}
        )

        assert response.status_code == 200
        assert response.json()["success"] is True

    @pytest.mark.asyncio
    async def test_numeric_fields_acknowledged(self, client):
        response = await client.post(
            "/api/webhooks/subscription",
            json={"event": "payment.succeeded", "subscriptionId": 42, "timestamp": 1700000000},
        )

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["subscriptionId"] == "42"

    @pytest.mark.asyncio
    async def test_numeric_event_acknowledged(self, client):
        response = await client.post("/api/webhooks/subscription", json={"event": 7})

        assert response.status_code == 200
        assert response.json()["event"] == "7"

    @pytest.mark.asyncio
    async def test_non_object_body_acknowledged(self, client):
        response = await client.post("/api/webhooks/subscription", json=["subscription.created"])

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["event"] is None

    @pytest.mark.asyncio
    async def test_unparseable_body(self, client):
        response = await client.post(
            "/api/webhooks/subscription", content="{", headers={"Content-Type": "application/json"}
        )

        assert response.status_code == 500
        assert response.json()["error"] == "Webhook processing failed"

    @pytest.mark.asyncio
    async def test_challenge_echo(self, client):
        response = await client.get("/api/webhooks/subscription", params={"challenge": "abc123"})

        assert response.json() == {
            "success": True,
            "challenge": "abc123",
            "message": "Webhook endpoint is active",
        }

    @pytest.mark.asyncio
    async def test_ready_without_challenge(self, client):
        response = await client.get("/api/webhooks/subscription")

        assert response.json()["message"] == "Webhook endpoint is ready"
        assert response.json()["timestamp"].endswith("Z")

    def test_handler_reports_known_events(self):
        assert handle_subscription_event(SubscriptionWebhook(event="payment.succeeded")) is True
        assert handle_subscription_event(SubscriptionWebhook(event="subscription.paused")) is False
