import pytest
import json
import time
from unittest.mock import patch
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session
from fastapi.testclient import TestClient

from conftest import create_webhook_signature, reload
from songmint.dependencies import get_webhook_limiter
from songmint.main import app
from songmint.models import CreditTransaction, Profile, StripeWebhookEvent, WebhookEventStatus
from songmint.services.credits import CreditUpdateResult
from songmint.services.rate_limit import RateLimiter


def checkout_payload(event_id="evt_test_webhook_123", user_id="u1", credits="10"):
    return {
        "id": event_id,
        "type": "checkout.session.completed",
        "created": int(time.time()),
        "data": {
            "object": {
                "id": "cs_test_123",
                "mode": "payment",
                "payment_status": "paid",
                "payment_intent": "pi_test_123",
                "customer_details": {"email": "buyer@example.com"},
                "metadata": {"userId": user_id, "credits": credits},
            }
        },
    }


def failing_invoice_payload(event_id="evt_test_failing"):
    # The referenced subscription does not exist at the provider
    return {
        "id": event_id,
        "type": "invoice.payment_succeeded",
        "data": {
            "object": {
                "id": "in_test_1",
                "subscription": "sub_missing",
                "billing_reason": "subscription_cycle",
                "amount_paid": 1900,
            }
        },
    }


class TestStripeWebhookIdempotency:
    """Webhook endpoint: signature checks, dedup and retry signalling."""

    @pytest.fixture(autouse=True)
    def _payment_intent(self, gateway):
        gateway.payment_intents["pi_test_123"] = {
            "id": "pi_test_123", "status": "succeeded", "amount_received": 1900, "currency": "usd",
        }

    def post_event(self, client: TestClient, payload, attempt=None, signature=None):
        body = payload if isinstance(payload, str) else json.dumps(payload)
        headers = {
            "stripe-signature": signature or create_webhook_signature(body),
            "content-type": "application/json",
        }
        if attempt is not None:
            headers["x-webhook-attempt"] = str(attempt)
        return client.post("/stripe/webhook", content=body, headers=headers)

    def test_webhook_endpoint_integration(self, test_client: TestClient, db_session: Session, test_user):
        response = self.post_event(test_client, checkout_payload())

        assert response.status_code == 200
        assert response.json() == {"received": True}
        assert response.headers.get("X-Request-ID")
        assert reload(db_session, Profile, "u1").credits_remaining == 10

        event_log = db_session.query(StripeWebhookEvent).filter(
            StripeWebhookEvent.stripe_event_id == "evt_test_webhook_123"
        ).first()
        assert event_log is not None
        assert event_log.status == WebhookEventStatus.PROCESSED
        assert event_log.event_type == "checkout.session.completed"

    def test_duplicate_delivery_returns_already_processed(self, test_client: TestClient, db_session: Session,
                                                          test_user):
        payload = checkout_payload()
        assert self.post_event(test_client, payload).status_code == 200

        response = self.post_event(test_client, payload)

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "already_processed"}
        assert reload(db_session, Profile, "u1").credits_remaining == 10
        assert db_session.query(CreditTransaction).count() == 1

    def test_concurrent_delivery_returns_in_progress(self, test_client: TestClient, db_session: Session, test_user):
        db_session.add(StripeWebhookEvent(
            stripe_event_id="evt_test_webhook_123",
            event_type="checkout.session.completed",
            status=WebhookEventStatus.PROCESSING,
        ))
        db_session.commit()

        response = self.post_event(test_client, checkout_payload())

        assert response.status_code == 200
        assert response.json() == {"received": True, "status": "in_progress"}
        assert reload(db_session, Profile, "u1").credits_remaining == 0

    def test_missing_signature_rejected(self, test_client: TestClient, db_session: Session):
        response = test_client.post("/stripe/webhook", content=json.dumps(checkout_payload()))

        assert response.status_code == 400
        assert response.json() == {"received": False, "error": "Missing Stripe signature"}
        assert db_session.query(StripeWebhookEvent).count() == 0

    def test_invalid_signature_rejected(self, test_client: TestClient, db_session: Session, test_user):
        body = json.dumps(checkout_payload())
        signature = create_webhook_signature(body, secret="whsec_wrong_secret")

        response = self.post_event(test_client, body, signature=signature)

        assert response.status_code == 400
        assert response.json() == {"received": False, "error": "Invalid signature"}
        assert db_session.query(StripeWebhookEvent).count() == 0
        assert reload(db_session, Profile, "u1").credits_remaining == 0

    def test_stale_signature_rejected(self, test_client: TestClient, db_session: Session):
        body = json.dumps(checkout_payload())
        signature = create_webhook_signature(body, timestamp=int(time.time()) - 400)

        response = self.post_event(test_client, body, signature=signature)

        assert response.status_code == 400
        assert response.json()["error"] == "Invalid signature"

    def test_invalid_payload_rejected(self, test_client: TestClient, db_session: Session):
        response = self.post_event(test_client, "this is not json")

        assert response.status_code == 400
        assert response.json() == {"received": False, "error": "Invalid payload"}
        assert db_session.query(StripeWebhookEvent).count() == 0

    @pytest.mark.parametrize("attempt,status_code,retry", [(1, 500, True), (2, 500, True), (3, 400, False)])
    def test_retry_code_policy(self, test_client: TestClient, attempt, status_code, retry):
        response = self.post_event(test_client, failing_invoice_payload(), attempt=attempt)

        assert response.status_code == status_code
        body = response.json()
        assert body["received"] is False
        assert body["retry"] is retry
        assert body["attempt"] == attempt
        assert body["eventId"] == "evt_test_failing"
        assert body["error"] == "Webhook processing failed"

    @pytest.mark.parametrize("attempt", [1, 2])
    def test_user_not_found_is_not_retried(self, test_client: TestClient, test_user, attempt):
        failed = CreditUpdateResult(success=False, change=10, error="User not found")
        with patch("songmint.services.stripe_events.update_user_credits", return_value=failed):
            response = self.post_event(test_client, checkout_payload(), attempt=attempt)

        assert response.status_code == 400
        assert response.json()["retry"] is False

    @pytest.mark.parametrize("attempt,status_code,retry", [(None, 500, True), (2, 500, True), (3, 400, False)])
    def test_store_outage_uses_retry_shape(self, test_client: TestClient, db_session: Session, test_user,
                                           attempt, status_code, retry):
        outage = OperationalError("SELECT", {}, Exception("database is unavailable"))
        with patch("songmint.services.stripe_events.check_stripe_event_processed", side_effect=outage):
            response = self.post_event(test_client, checkout_payload(), attempt=attempt)

        assert response.status_code == status_code
        assert response.json() == {
            "received": False,
            "error": "Webhook processing failed",
            "eventId": "evt_test_webhook_123",
            "retry": retry,
            "attempt": attempt or 1,
        }
        assert reload(db_session, Profile, "u1").credits_remaining == 0

    def test_attempt_falls_back_to_stored_counter(self, test_client: TestClient, gateway):
        payload = failing_invoice_payload()

        first = self.post_event(test_client, payload)
        second = self.post_event(test_client, payload)
        third = self.post_event(test_client, payload)

        assert [r.json()["attempt"] for r in (first, second, third)] == [1, 2, 3]
        assert [r.status_code for r in (first, second, third)] == [500, 500, 400]

    def test_malformed_attempt_header_is_ignored(self, test_client: TestClient):
        response = self.post_event(test_client, failing_invoice_payload(), attempt="soon")

        assert response.status_code == 500
        assert response.json()["attempt"] == 1

    def test_redelivery_after_failure_succeeds(self, test_client: TestClient, db_session: Session, test_user,
                                               gateway):
        del gateway.payment_intents["pi_test_123"]
        first = self.post_event(test_client, checkout_payload(), attempt=1)
        assert first.status_code == 500

        gateway.payment_intents["pi_test_123"] = {"id": "pi_test_123", "status": "succeeded", "amount_received": 1900}
        second = self.post_event(test_client, checkout_payload(), attempt=2)

        assert second.status_code == 200
        assert second.json() == {"received": True}
        assert reload(db_session, Profile, "u1").credits_remaining == 10

    def test_unknown_event_type_acknowledged(self, test_client: TestClient):
        payload = {"id": "evt_refund", "type": "charge.refunded", "data": {"object": {"id": "ch_1"}}}

        response = self.post_event(test_client, payload)

        assert response.status_code == 200
        assert response.json() == {"received": True}

    def test_rate_limit_exceeded(self, test_client: TestClient, db_session: Session):
        limiter = RateLimiter(max_requests=2, window_seconds=60)
        app.dependency_overrides[get_webhook_limiter] = lambda: limiter

        responses = [test_client.post("/stripe/webhook", content="{}") for _ in range(3)]

        assert [r.status_code for r in responses] == [400, 400, 429]
        limited = responses[2]
        assert limited.json()["error"] == "Rate limit exceeded"
        assert 0 < limited.json()["retryAfter"] <= 60
        assert limited.headers["X-RateLimit-Limit"] == "2"
        assert limited.headers["X-RateLimit-Remaining"] == "0"
        assert limited.headers["Retry-After"] == str(limited.json()["retryAfter"])
        assert "X-RateLimit-Reset" in limited.headers

    def test_event_status_endpoint(self, test_client: TestClient, test_user):
        self.post_event(test_client, checkout_payload())

        response = test_client.get("/stripe/events/evt_test_webhook_123/status")

        assert response.status_code == 200
        body = response.json()
        assert body["processed"] is True
        assert body["status"] == "processed"
        assert body["attempts"] == 1
        assert body["dead_letter"] is False

    def test_event_status_unknown_event(self, test_client: TestClient):
        response = test_client.get("/stripe/events/evt_nope/status")
        assert response.status_code == 404
