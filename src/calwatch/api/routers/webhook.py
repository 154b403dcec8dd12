"""Push-notification endpoint for Google Calendar watch channels.

Google delivers notifications as empty POSTs whose meaning lives in the
``X-Goog-*`` headers.  A 200 tells the sender the notification was handled
(or deliberately ignored); any other status makes it retry on its own
schedule.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from calwatch.channels import WEBHOOK_PATH
from calwatch.reconciler import ResourceMismatchError, WebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhook"])


def _get_reconciler() -> WebhookReconciler:
    """Dependency stub -- overridden at app creation or in tests."""
    raise RuntimeError("WebhookReconciler not initialized")


@router.post(WEBHOOK_PATH)
async def receive_notification(
    x_goog_channel_id: str | None = Header(default=None),
    x_goog_resource_id: str | None = Header(default=None),
    x_goog_resource_state: str | None = Header(default=None),
    reconciler: WebhookReconciler = Depends(_get_reconciler),
) -> JSONResponse:
    channel_id = (x_goog_channel_id or "").strip()
    if not channel_id:
        return JSONResponse(
            status_code=400,
            content={"status": "error", "error_type": "MissingChannelId"},
        )

    log_extra = {
        "channel_id": channel_id,
        "resource_id": x_goog_resource_id,
        "resource_state": x_goog_resource_state,
    }
    try:
        outcome = await reconciler.handle_notification(
            channel_id=channel_id,
            resource_id=x_goog_resource_id,
            resource_state=x_goog_resource_state,
        )
    except ResourceMismatchError as exc:
        logger.error("Rejected notification: %s", exc, extra=log_extra)
        return JSONResponse(
            status_code=500,
            content={"status": "error", "error_type": type(exc).__name__},
        )
    except Exception as exc:
        logger.error("Reconciliation failed: %s", exc, exc_info=True, extra=log_extra)
        return JSONResponse(
            status_code=500,
            content={"status": "error", "error_type": type(exc).__name__},
        )

    return JSONResponse(status_code=200, content={"status": str(outcome)})
