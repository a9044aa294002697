"""Webhook HTTP handlers — FastAPI routes in front of the gateway.

Security contract:
- Never return error details to the webhook caller beyond "Bad Request!"
- 202 for auth and validation failures (no retry signal, no oracle)
- Body is parsed leniently: invalid JSON reaches the provider as None
"""

from __future__ import annotations

import json
import logging
import time

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from dealhook.providers.base import InboundRequest
from dealhook.webhooks.gateway import WebhookGateway
from dealhook.webhooks.verification import API_KEY_HEADER, verify_shared_secret

logger = logging.getLogger(__name__)


async def _read_json(request: Request) -> object:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


async def _handle_webhook(request: Request, source: str) -> JSONResponse:
    start = time.time()
    gateway: WebhookGateway = request.app.state.gateway

    inbound = InboundRequest(
        headers=dict(request.headers.items()),
        body=await _read_json(request),
        params={"source": source},
        query=dict(request.query_params.items()),
    )
    # Receipt and queue clients are blocking; keep them off the event loop.
    ack = await run_in_threadpool(gateway.receive, source, inbound)

    elapsed_ms = (time.time() - start) * 1000
    logger.debug("Webhook handled in %.1fms: %s -> %d", elapsed_ms, source, ack.status_code)
    return JSONResponse(ack.to_body(), status_code=ack.status_code)


def register_webhook_routes(app: FastAPI, rate_limit: str = "") -> None:
    """Register the webhook endpoints on the app.

    With ``rate_limit`` set (e.g. ``100/15minutes``) inbound deliveries are
    limited per client address through the slowapi limiter on ``app.state``.
    """

    async def receive_webhook(request: Request, source: str):
        """Receive a webhook for a registered source."""
        return await _handle_webhook(request, source)

    if rate_limit:
        receive_webhook = app.state.limiter.limit(rate_limit)(receive_webhook)
    app.post("/v1/webhooks/{source}")(receive_webhook)

    @app.get("/v1/webhooks/status")
    async def webhook_status(request: Request):
        """Receive counts, queue depth and dispatcher health (shared secret required)."""
        services = request.app.state.services
        if not verify_shared_secret(request.headers.get(API_KEY_HEADER), services.settings.api_key):
            return JSONResponse({"status": "unauthorized"}, status_code=401)

        def _collect() -> dict:
            return {
                "counts": request.app.state.gateway.counts(),
                "queue": {"name": services.queue.name, **services.queue.counts().as_dict()},
                "receipts": services.receipts.count_by_status(),
                "dispatchers": services.dock.status(),
            }

        return await run_in_threadpool(_collect)

    logger.info("Webhook routes registered: /v1/webhooks/{source}")
