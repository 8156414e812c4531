"""
Smoke tests against a running instance.

Runs lightweight HTTP checks:
- GET /health
- POST /api/webhooks/provider with a signed delivery
- POST /api/webhooks/provider with a bad signature (expects 401)

The signed delivery is only accepted when SMOKE_WEBHOOK_ID and
SMOKE_WEBHOOK_SECRET name an active registration; without them the signed
check is skipped.
"""

from __future__ import annotations

import json
import os
import sys
from pathlib import Path

import httpx

# allow running from any directory (e.g. `python scripts/smoke_webhooks.py`)
REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from app.core.logging import get_logger, setup_logging  # noqa: E402
from app.core.signature import SIGNATURE_HEADER, compute_signature  # noqa: E402


logger = get_logger(__name__)


def _base_url() -> str:
    port = os.environ.get("PORT", "8000")
    return os.environ.get("BASE_URL", f"http://127.0.0.1:{port}").rstrip("/")


def _timeout_seconds() -> float:
    return float(os.environ.get("SMOKE_TIMEOUT_SECONDS", "10"))


def _delivery_body(webhook_id: str) -> bytes:
    return json.dumps({
        "webhookId": webhook_id,
        "events": [
            {
                "signature": "smoke-signature-1",
                "type": "NFT_SALE",
                "timestamp": 1700000000,
                "mint": "smoke-mint",
                "price": 1,
            }
        ],
    }).encode()


def _check_status(resp: httpx.Response, expected: int) -> None:
    if resp.status_code != expected:
        raise RuntimeError(
            f"Unexpected status {resp.status_code} for {resp.request.method} {resp.request.url}. "
            f"Body: {(resp.text or '')[:500]}"
        )


def main() -> None:
    setup_logging(level="INFO", json_format=False, app_name="chain-indexer-smoke")

    base_url = _base_url()
    timeout = _timeout_seconds()
    webhook_id = os.environ.get("SMOKE_WEBHOOK_ID", "")
    secret = os.environ.get("SMOKE_WEBHOOK_SECRET", "")

    logger.info("Starting smoke tests", extra_data={"base_url": base_url, "timeout_seconds": timeout})

    with httpx.Client(timeout=timeout) as client:
        health_url = f"{base_url}/health"
        logger.info("Checking health endpoint", extra_data={"url": health_url})
        _check_status(client.get(health_url), 200)

        webhook_url = f"{base_url}/api/webhooks/provider"
        body = _delivery_body(webhook_id or "smoke-unknown")

        logger.info("Posting delivery with a bad signature", extra_data={"url": webhook_url})
        resp = client.post(
            webhook_url,
            content=body,
            headers={SIGNATURE_HEADER: "0" * 64, "Content-Type": "application/json"},
        )
        _check_status(resp, 401)

        if webhook_id and secret:
            logger.info("Posting signed delivery", extra_data={"url": webhook_url, "webhook_id": webhook_id})
            resp = client.post(
                webhook_url,
                content=body,
                headers={SIGNATURE_HEADER: compute_signature(body, secret), "Content-Type": "application/json"},
            )
            _check_status(resp, 202)
        else:
            logger.warning("SMOKE_WEBHOOK_ID/SMOKE_WEBHOOK_SECRET not set, signed delivery skipped")

    logger.info("Smoke tests completed successfully")


if __name__ == "__main__":
    main()
