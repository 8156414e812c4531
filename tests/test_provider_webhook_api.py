"""
Tests for the inbound provider webhook endpoint
"""
import json

import httpx
import pytest
from fastapi import FastAPI

from app.core.exceptions import MalformedPayloadError
from app.core.middleware import WebhookRateLimitMiddleware
from app.core.rate_limiter import RateLimitConfig, RateLimiter
from app.core.signature import SIGNATURE_HEADER, compute_signature
from app.api.webhooks.provider import parse_delivery
from app.db.models.webhook_registration import RegistrationStatus

URL = "/api/webhooks/provider"
SALE = {"signature": "SIG1", "type": "NFT_SALE", "mint": "MINT1", "price": 5}


def _body(webhook_id="wh-existing", events=None) -> bytes:
    return json.dumps({"webhookId": webhook_id, "events": events if events is not None else [SALE]}).encode()


def _signed(body: bytes, secret: str = "job-secret") -> dict[str, str]:
    return {SIGNATURE_HEADER: compute_signature(body, secret), "Content-Type": "application/json"}


class TestParseDelivery:

    @pytest.mark.unit
    @pytest.mark.parametrize("raw", [b"not json", b"[]", b'{"events": []}', b'{"webhookId": "x", "events": {}}'])
    def test_rejects_malformed(self, raw):
        with pytest.raises(MalformedPayloadError):
            parse_delivery(raw)

    @pytest.mark.unit
    def test_accepts_either_id_spelling(self):
        assert parse_delivery(b'{"webhookID": "wh-1"}')["webhookID"] == "wh-1"


class TestReceiveDelivery:

    @pytest.mark.unit
    async def test_signed_delivery_is_queued(self, test_client, registration_factory, fake_queue):
        registration = await registration_factory()
        body = _body()

        response = await test_client.post(URL, content=body, headers=_signed(body))

        assert response.status_code == 202
        assert response.json() == {"status": "accepted"}
        assert fake_queue.deliveries == [(registration.id, json.loads(body))]

    @pytest.mark.unit
    async def test_empty_events_still_accepted(self, test_client, registration_factory, fake_queue):
        await registration_factory()
        body = _body(events=[])

        response = await test_client.post(URL, content=body, headers=_signed(body))

        assert response.status_code == 202
        assert len(fake_queue.deliveries) == 1

    @pytest.mark.unit
    async def test_bad_signature_rejected(self, test_client, registration_factory, fake_queue):
        await registration_factory()
        body = _body()

        response = await test_client.post(URL, content=body, headers=_signed(body, secret="wrong"))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "ERR_2001"
        assert fake_queue.deliveries == []

    @pytest.mark.unit
    async def test_missing_signature_rejected(self, test_client, registration_factory):
        await registration_factory()
        response = await test_client.post(URL, content=_body())
        assert response.status_code == 401

    @pytest.mark.unit
    async def test_unknown_webhook_rejected(self, test_client, fake_queue):
        body = _body(webhook_id="wh-nobody")

        response = await test_client.post(URL, content=body, headers=_signed(body))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "ERR_2002"
        assert fake_queue.deliveries == []

    @pytest.mark.unit
    async def test_inactive_webhook_rejected(self, test_client, registration_factory):
        await registration_factory(status=RegistrationStatus.INACTIVE)
        body = _body()

        response = await test_client.post(URL, content=body, headers=_signed(body))

        assert response.status_code == 401

    @pytest.mark.unit
    async def test_malformed_body_is_400(self, test_client):
        response = await test_client.post(URL, content=b"{broken", headers={SIGNATURE_HEADER: "x"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_2003"

    @pytest.mark.unit
    async def test_queue_outage_is_503(self, test_client, registration_factory, fake_queue):
        await registration_factory()
        fake_queue.fail_enqueue = True
        body = _body()

        response = await test_client.post(URL, content=body, headers=_signed(body))

        assert response.status_code == 503
        assert response.json()["error"]["details"]["service"] == "task-queue"


class TestWebhookRateLimit:
    """Per-IP token bucket in front of webhook paths"""

    @pytest.fixture
    def limited_app(self, clock) -> FastAPI:
        app = FastAPI()
        app.add_middleware(
            WebhookRateLimitMiddleware,
            limiter=RateLimiter(RateLimitConfig(tokens_per_interval=2, interval_seconds=60), clock=clock),
        )

        @app.post("/api/webhooks/provider")
        async def webhook():
            return {"ok": True}

        @app.get("/api/jobs/1")
        async def job():
            return {"ok": True}

        return app

    @pytest.mark.unit
    async def test_third_request_gets_429(self, limited_app, clock):
        transport = httpx.ASGITransport(app=limited_app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            codes = [(await client.post(URL)).status_code for _ in range(3)]
            limited = await client.post(URL)

            assert codes == [200, 200, 429]
            assert limited.json()["error"]["code"] == "ERR_1006"
            assert limited.headers["Retry-After"] == "60"

            clock.advance(60)
            assert (await client.post(URL)).status_code == 200

    @pytest.mark.unit
    async def test_other_paths_not_limited(self, limited_app):
        transport = httpx.ASGITransport(app=limited_app)
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            codes = [(await client.get("/api/jobs/1")).status_code for _ in range(5)]
        assert codes == [200] * 5
