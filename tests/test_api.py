"""
HTTP API tests.
"""
import pytest

from stk_reconciliation.core.exceptions import ProviderRejected, ProviderUnavailable
from stk_reconciliation.core.state_machine import TransactionStatus


def success_callback(checkout_ref: str, receipt: str) -> dict:
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": checkout_ref,
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": 160},
                        {"Name": "MpesaReceiptNumber", "Value": receipt},
                        {"Name": "PhoneNumber", "Value": 254712345678},
                    ]
                },
            }
        }
    }


class TestPaymentEndpoints:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_create_payment(self, client, provider) -> None:
        response = await client.post(
            "/payments", json={"phone": "0712345678", "category": "point-and-courses"}
        )

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "awaiting_result"
        assert body["checkout_ref"] == "ws_CO_TEST_001"
        assert body["session_id"]
        provider.push.assert_awaited_once()
        assert provider.push.await_args.args[1] == 160

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_phone(self, client, provider) -> None:
        response = await client.post(
            "/payments", json={"phone": "0812-000-000", "category": "courses-only"}
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "invalid_input"
        provider.push.assert_not_awaited()

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_schema_validation(self, client) -> None:
        response = await client.post(
            "/payments", json={"phone": "0712345678", "category": "courses-only", "amount": 0}
        )

        assert response.status_code == 422

    @pytest.mark.integration
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error,status_code",
        [
            (ProviderRejected("Invalid PhoneNumber", operation="push", provider_code="400.002.02"), 502),
            (ProviderUnavailable("connect timeout", operation="push"), 503),
        ],
    )
    async def test_provider_failure(self, client, provider, error, status_code) -> None:
        provider.push.side_effect = error

        response = await client.post(
            "/payments", json={"phone": "0712345678", "category": "courses-only"}
        )

        assert response.status_code == status_code
        assert response.json()["error"]["code"] == error.error_code

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_get_status(self, client) -> None:
        created = await client.post(
            "/payments", json={"phone": "0712345678", "category": "courses-only"}
        )
        session_id = created.json()["session_id"]

        response = await client.get(f"/payments/{session_id}")

        assert response.status_code == 200
        body = response.json()
        assert body["session_id"] == session_id
        assert body["status"] == "awaiting_result"
        assert body["stage"] == "push_accepted"
        assert body["amount"] == 150

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_session(self, client) -> None:
        response = await client.get("/payments/sess_missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "session_not_found"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_pay_then_redeem(self, client, services) -> None:
        created = await client.post(
            "/payments", json={"phone": "0712345678", "category": "point-and-courses"}
        )
        session_id = created.json()["session_id"]

        ack = await client.post("/webhooks/mpesa", json=success_callback("ws_CO_TEST_001", "NLJ7RT61SV"))
        assert ack.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

        status = await client.get(f"/payments/{session_id}")
        assert status.json()["status"] == "completed"
        assert status.json()["receipt_code"] == "NLJ7RT61SV"

        redeemed = await client.post(
            "/payments/redeem", json={"code": "nlj7rt61sv", "phone": "+254712345678"}
        )
        assert redeemed.status_code == 200
        assert redeemed.json()["session_id"] == session_id

        again = await client.post("/payments/redeem", json={"code": "NLJ7RT61SV"})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "already_used"

        durable = await services.store.get_by_session_id(session_id)
        assert durable.status is TransactionStatus.COMPLETED
        assert durable.used is True


class TestWebhookEndpoint:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_json_is_acked(self, client) -> None:
        response = await client.post(
            "/webhooks/mpesa",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 200
        assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_checkout_ref_is_acked(self, client) -> None:
        response = await client.post(
            "/webhooks/mpesa", json=success_callback("ws_CO_NOBODY", "NLJ7RT61SV")
        )

        assert response.status_code == 200
        callbacks = (await client.get("/admin/callbacks")).json()["callbacks"]
        assert callbacks[0]["outcome"] == "not_found"
        assert callbacks[0]["checkout_ref"] == "ws_CO_NOBODY"


class TestAdminEndpoints:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_sweep(self, client, seed_transaction) -> None:
        await seed_transaction(age_seconds=3 * 3600)

        response = await client.post("/admin/sweep")

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["expired_by_deadline"] == 1
        assert body["items"][0]["reason"] == "confirmation_timeout"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_transaction_events(self, client) -> None:
        created = await client.post(
            "/payments", json={"phone": "0712345678", "category": "courses-only"}
        )
        session_id = created.json()["session_id"]

        response = await client.get(f"/admin/transactions/{session_id}/events")

        assert response.status_code == 200
        event_types = [event["event_type"] for event in response.json()["events"]]
        assert event_types == ["session_created", "push_accepted"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_events_for_unknown_session(self, client) -> None:
        response = await client.get("/admin/transactions/sess_missing/events")

        assert response.status_code == 404


class TestMonitoringEndpoints:

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client) -> None:
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness_and_readiness(self, client) -> None:
        assert (await client.get("/health/live")).json()["status"] == "alive"
        assert (await client.get("/health/ready")).status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client) -> None:
        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "stk_" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_id_header(self, client) -> None:
        response = await client.get("/health/live", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"
