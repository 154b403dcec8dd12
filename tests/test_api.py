"""Tests for the webhook, health and metrics endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock

import httpx
import pytest
from conftest import build_channel

from calwatch.api.app import create_app
from calwatch.dispatch import DispatchError
from calwatch.gateway import GatewayRequestError
from calwatch.models import ReconcileOutcome
from calwatch.reconciler import ResourceMismatchError, WebhookReconciler

pytestmark = pytest.mark.unit

WEBHOOK = "/calwatch/events/webhook"


def _headers(channel_id="chan-1", resource_id="res-1", state="exists") -> dict[str, str]:
    headers = {"X-Goog-Resource-ID": resource_id, "X-Goog-Resource-State": state}
    if channel_id is not None:
        headers["X-Goog-Channel-ID"] = channel_id
    return headers


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def _mock_reconciler(**kwargs) -> AsyncMock:
    reconciler = AsyncMock(spec=WebhookReconciler)
    reconciler.handle_notification = AsyncMock(**kwargs)
    return reconciler


class TestHealthAndMetrics:
    async def test_health_returns_ok(self):
        async with _client(create_app()) as client:
            response = await client.get("/api/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    async def test_metrics_exposes_calwatch_counters(self):
        async with _client(create_app()) as client:
            response = await client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert "calwatch_notifications_total" in response.text


class TestWebhookEndpoint:
    async def test_passes_headers_to_reconciler(self):
        reconciler = _mock_reconciler(return_value=ReconcileOutcome.processed)
        async with _client(create_app(reconciler)) as client:
            response = await client.post(WEBHOOK, headers=_headers())

        assert response.status_code == 200
        assert response.json() == {"status": "processed"}
        reconciler.handle_notification.assert_awaited_once_with(
            channel_id="chan-1", resource_id="res-1", resource_state="exists"
        )

    @pytest.mark.parametrize(
        "outcome",
        [
            ReconcileOutcome.ignored_sync,
            ReconcileOutcome.ignored_unknown_channel,
            ReconcileOutcome.cursor_expired,
        ],
    )
    async def test_ignored_outcomes_return_200(self, outcome):
        reconciler = _mock_reconciler(return_value=outcome)
        async with _client(create_app(reconciler)) as client:
            response = await client.post(WEBHOOK, headers=_headers())
        assert response.status_code == 200
        assert response.json() == {"status": outcome.value}

    async def test_missing_channel_id_is_rejected(self):
        reconciler = _mock_reconciler(return_value=ReconcileOutcome.processed)
        async with _client(create_app(reconciler)) as client:
            response = await client.post(WEBHOOK, headers=_headers(channel_id=None))
        assert response.status_code == 400
        reconciler.handle_notification.assert_not_awaited()

    @pytest.mark.parametrize(
        ("error", "error_type"),
        [
            (ResourceMismatchError("chan-1", "res-1", "res-2"), "ResourceMismatchError"),
            (GatewayRequestError(status_code=500, message="boom"), "GatewayRequestError"),
            (DispatchError("down"), "DispatchError"),
            (ConnectionError("db down"), "ConnectionError"),
        ],
    )
    async def test_failures_return_500(self, error, error_type):
        reconciler = _mock_reconciler(side_effect=error)
        async with _client(create_app(reconciler)) as client:
            response = await client.post(WEBHOOK, headers=_headers())
        assert response.status_code == 500
        assert response.json() == {"status": "error", "error_type": error_type}


class TestWebhookEndToEnd:
    async def test_real_reconciler_ignores_sync_ping(
        self, store, gateways, reminders, invites, clock
    ):
        await store.insert_channel(build_channel())
        reconciler = WebhookReconciler(store, gateways, reminders, invites, clock=clock)

        async with _client(create_app(reconciler)) as client:
            response = await client.post(WEBHOOK, headers=_headers(state="sync"))

        assert response.json() == {"status": "ignored_sync"}

    async def test_real_reconciler_advances_cursor(
        self, store, gateway, gateways, reminders, invites, clock
    ):
        await store.insert_channel(build_channel(cursor="cursor-0"))
        gateway.deltas["cursor-0"] = ([], "cursor-1")
        reconciler = WebhookReconciler(store, gateways, reminders, invites, clock=clock)

        async with _client(create_app(reconciler)) as client:
            response = await client.post(WEBHOOK, headers=_headers())

        assert response.status_code == 200
        assert store.channels["chan-1"].next_sync_token == "cursor-1"
