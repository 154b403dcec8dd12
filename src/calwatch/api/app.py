"""calwatch HTTP surface: FastAPI application factory.

The app factory creates a FastAPI instance with:
- the calendar push-notification webhook
- a health endpoint at GET /api/health
- Prometheus metrics at GET /metrics
"""

import logging

from fastapi import FastAPI, Response
from prometheus_client import CONTENT_TYPE_LATEST, REGISTRY, generate_latest

from calwatch import __version__
from calwatch.api.routers.webhook import _get_reconciler
from calwatch.api.routers.webhook import router as webhook_router
from calwatch.reconciler import WebhookReconciler

logger = logging.getLogger(__name__)


def create_app(reconciler: WebhookReconciler | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    reconciler:
        Handles each inbound notification.  When omitted, the webhook cannot serve
        requests until a reconciler is wired through ``app.dependency_overrides``.
    """
    app = FastAPI(title="calwatch", version=__version__)
    app.router.redirect_slashes = False

    app.include_router(webhook_router)
    if reconciler is not None:
        app.dependency_overrides[_get_reconciler] = lambda: reconciler

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.get("/metrics")
    async def metrics() -> Response:
        """Prometheus metrics endpoint."""
        return Response(content=generate_latest(REGISTRY), media_type=CONTENT_TYPE_LATEST)

    return app
