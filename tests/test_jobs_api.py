"""
Tests for the job lifecycle API
"""
import pytest

from app.db.models.indexing_job import JobStatus
from app.domain.upserters import apply_envelope
from app.domain.classifier import EventCategory
from app.domain.events import normalize

BASE = "/api/jobs"
MINT = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"


def _create_body(**overrides):
    body = {
        "owner_id": "owner-1",
        "config": {
            "categories": {"nft_bids": True},
            "filters": {"accounts": ["wallet-A"]},
            "webhook": {"enabled": True, "secret": "do-not-leak"},
            "backfill": False,
        },
    }
    body.update(overrides)
    return body


class TestAuthentication:

    @pytest.mark.unit
    async def test_missing_api_key(self, test_client):
        response = await test_client.post(f"{BASE}/", json=_create_body())
        assert response.status_code == 401

    @pytest.mark.unit
    async def test_wrong_api_key(self, test_client):
        response = await test_client.post(f"{BASE}/", json=_create_body(), headers={"X-API-Key": "nope"})
        assert response.status_code == 403

    @pytest.mark.unit
    async def test_unconfigured_key_refuses_everything(self, test_client, api_headers):
        from unittest.mock import patch
        from app.core.config import settings

        with patch.object(settings, "SERVICE_API_KEY", ""):
            response = await test_client.get(f"{BASE}/1?owner_id=owner-1", headers=api_headers)
        assert response.status_code == 403


class TestCreateJob:

    @pytest.mark.unit
    async def test_create_returns_pending_job(self, test_client, api_headers, fake_queue):
        response = await test_client.post(f"{BASE}/", json=_create_body(), headers=api_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["progress"] == 0
        assert data["categories"]["nft_bids"] is True
        assert data["webhook_enabled"] is True
        assert fake_queue.enqueued == [(data["id"], fake_queue.last_task_id(data["id"]))]
        assert "do-not-leak" not in response.text
        assert "secret" not in data

    @pytest.mark.unit
    async def test_invalid_config_is_400(self, test_client, api_headers):
        body = _create_body()
        body["config"]["categories"] = {"nft_bids": False}

        response = await test_client.post(f"{BASE}/", json=body, headers=api_headers)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "ERR_1001"

    @pytest.mark.unit
    async def test_blank_owner_is_422(self, test_client, api_headers):
        response = await test_client.post(f"{BASE}/", json=_create_body(owner_id="   "), headers=api_headers)
        assert response.status_code == 422

    @pytest.mark.unit
    async def test_queue_outage_is_503(self, test_client, api_headers, fake_queue):
        fake_queue.fail_enqueue = True
        response = await test_client.post(f"{BASE}/", json=_create_body(), headers=api_headers)
        assert response.status_code == 503


class TestLifecycleEndpoints:

    @pytest.mark.unit
    async def test_get_status(self, test_client, api_headers, job_factory):
        job = await job_factory(status=JobStatus.RUNNING, progress=42)

        response = await test_client.get(f"{BASE}/{job.id}?owner_id=owner-1", headers=api_headers)

        assert response.status_code == 200
        assert response.json()["progress"] == 42

    @pytest.mark.unit
    async def test_other_owner_gets_404(self, test_client, api_headers, job_factory):
        job = await job_factory()

        response = await test_client.get(f"{BASE}/{job.id}?owner_id=owner-2", headers=api_headers)

        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Job not found"

    @pytest.mark.unit
    async def test_pause_resume_cancel(self, test_client, api_headers, job_factory, fake_queue):
        job = await job_factory(status=JobStatus.RUNNING, queue_task_id="task-1")
        owner = {"owner_id": "owner-1"}

        paused = await test_client.post(f"{BASE}/{job.id}/pause", json=owner, headers=api_headers)
        resumed = await test_client.post(f"{BASE}/{job.id}/resume", json=owner, headers=api_headers)
        cancelled = await test_client.post(f"{BASE}/{job.id}/cancel", json=owner, headers=api_headers)

        assert paused.json()["status"] == "paused"
        assert resumed.json()["status"] == "running"
        assert cancelled.json()["status"] == "cancelled"
        assert fake_queue.removed[0] == "task-1"

    @pytest.mark.unit
    @pytest.mark.parametrize("status,action,message", [
        (JobStatus.PAUSED, "pause", "Job is not active"),
        (JobStatus.RUNNING, "resume", "Job is not paused"),
        (JobStatus.COMPLETED, "cancel", "Job is already cancelled or completed"),
    ])
    async def test_guard_conflicts(self, test_client, api_headers, job_factory, status, action, message):
        job = await job_factory(status=status)

        response = await test_client.post(
            f"{BASE}/{job.id}/{action}", json={"owner_id": "owner-1"}, headers=api_headers
        )

        assert response.status_code == 409
        assert response.json()["error"]["message"] == message


class TestActiveBidsEndpoint:

    @pytest.mark.unit
    async def test_active_bids(self, test_client, api_headers, job_factory, services):
        job = await job_factory()
        envelope = normalize({
            "signature": "B1", "type": "BID_PLACED", "mint": MINT, "amount": 2.5, "source": "Tensor",
        })
        async with services.datastores.session(None) as session:
            async with session.begin():
                await apply_envelope(session, envelope, [EventCategory.NFT_BID])

        response = await test_client.get(
            f"{BASE}/{job.id}/active-bids", params={"owner_id": "owner-1", "mint": MINT}, headers=api_headers
        )

        assert response.status_code == 200
        [summary] = response.json()
        assert summary["marketplace"] == "Tensor"
        assert summary["bid_count"] == 1
        assert summary["max_bid"] == 2.5

    @pytest.mark.unit
    async def test_invalid_mint(self, test_client, api_headers, job_factory):
        job = await job_factory()
        response = await test_client.get(
            f"{BASE}/{job.id}/active-bids", params={"owner_id": "owner-1", "mint": "bad"}, headers=api_headers
        )
        assert response.status_code == 400
