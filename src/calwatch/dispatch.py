"""Reminder and invite collaborators.

The reconciler decides *what* should happen for a changed event; delivering
it belongs to downstream services.  ``ReminderScheduler`` and ``InviteSender``
are the contracts the core calls.  The HTTP implementations hand each decision
to a delivery service as a JSON envelope.

Both contracts must be safe to repeat: a reconciliation cycle that fails
halfway is replayed from the same cursor on the next notification.
"""

from __future__ import annotations

import abc
import logging
from typing import Any

import httpx

from calwatch.core.metrics import record_dispatch
from calwatch.models import Channel, EventSnapshot, Subscription

logger = logging.getLogger(__name__)


class DispatchError(RuntimeError):
    """Raised when a reminder or invite could not be handed to the delivery service."""


class ReminderScheduler(abc.ABC):
    """Consumes reminder-relevant event changes and subscription churn."""

    @abc.abstractmethod
    async def register_or_update_reminder(
        self, event: EventSnapshot, subscription: Subscription
    ) -> None:
        """Create, update or cancel the reminder for *event*.

        The scheduler decides the effect from the event state; a cancelled
        event cancels any pending reminder.
        """
        ...

    @abc.abstractmethod
    async def on_subscription_added(self, subscription: Subscription) -> None: ...

    @abc.abstractmethod
    async def on_subscription_removed(self, subscription: Subscription) -> None: ...


class InviteSender(abc.ABC):
    """Prompts a subscriber to respond to an event invitation."""

    @abc.abstractmethod
    async def send_invite(
        self,
        calendar_id: str,
        channel: Channel,
        event: EventSnapshot,
        subscription: Subscription,
    ) -> None: ...


class _HttpDispatcher:
    def __init__(
        self,
        base_url: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout_s: float = 10.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=timeout_s)

    async def _post(self, kind: str, path: str, envelope: dict[str, Any]) -> None:
        url = f"{self._base_url}{path}"
        status = "error"
        try:
            try:
                response = await self._http_client.post(url, json=envelope)
            except httpx.HTTPError as exc:
                raise DispatchError(f"{kind} dispatch to {url} failed: {exc}") from exc
            if response.status_code < 200 or response.status_code >= 300:
                raise DispatchError(
                    f"{kind} dispatch to {url} was rejected ({response.status_code})"
                )
            status = "success"
        finally:
            record_dispatch(kind, status)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()


class HttpReminderScheduler(_HttpDispatcher, ReminderScheduler):
    """Forwards reminder decisions to ``{base_url}/reminders``."""

    async def register_or_update_reminder(
        self, event: EventSnapshot, subscription: Subscription
    ) -> None:
        await self._post(
            "reminder",
            "/reminders",
            {
                "action": "register_or_update",
                "subscription": subscription.model_dump(mode="json"),
                "event": event.model_dump(mode="json", by_alias=True),
            },
        )

    async def on_subscription_added(self, subscription: Subscription) -> None:
        await self._post(
            "reminder",
            "/reminders/subscriptions",
            {"action": "added", "subscription": subscription.model_dump(mode="json")},
        )

    async def on_subscription_removed(self, subscription: Subscription) -> None:
        await self._post(
            "reminder",
            "/reminders/subscriptions",
            {"action": "removed", "subscription": subscription.model_dump(mode="json")},
        )


class HttpInviteSender(_HttpDispatcher, InviteSender):
    """Forwards invite prompts to ``{base_url}/invites``."""

    async def send_invite(
        self,
        calendar_id: str,
        channel: Channel,
        event: EventSnapshot,
        subscription: Subscription,
    ) -> None:
        logger.info(
            "Sending invite prompt",
            extra={
                "account_id": channel.account_id,
                "calendar_id": calendar_id,
                "event_id": event.event_id,
                "target": subscription.target,
            },
        )
        await self._post(
            "invite",
            "/invites",
            {
                "calendar_id": calendar_id,
                "channel_id": channel.channel_id,
                "subscription": subscription.model_dump(mode="json"),
                "event": event.model_dump(mode="json", by_alias=True),
            },
        )
