"""Shared test doubles and fixtures for the calwatch test suite.

The in-memory store, gateway and collaborators mirror the contracts in
``calwatch.store``, ``calwatch.gateway`` and ``calwatch.dispatch`` closely
enough that the lifecycle, reconciliation and renewal layers can be exercised
end to end without PostgreSQL or Google.
"""

from __future__ import annotations

import shutil
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from calwatch.channels import ChannelLifecycleManager
from calwatch.dispatch import InviteSender, ReminderScheduler
from calwatch.gateway import CalendarGateway, CalendarGatewayFactory
from calwatch.models import (
    Channel,
    EventSnapshot,
    StopResult,
    Subscription,
    SubscriptionKind,
    WatchRegistration,
)
from calwatch.store import CalwatchStore

docker_available = shutil.which("docker") is not None

NOW = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)
PUBLIC_URL = "https://calwatch.example.com"


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class FakeStore(CalwatchStore):
    """In-memory store honouring the same contract as ``PostgresStore``."""

    def __init__(self) -> None:
        self.subscriptions: set[Subscription] = set()
        self.channels: dict[str, Channel] = {}
        self.invites: set[tuple[str, str, str]] = set()
        self.tokens: dict[str, str] = {}
        self.cursor_updates: list[tuple[str, str]] = []

    async def exists_subscription(self, subscription: Subscription) -> bool:
        return subscription in self.subscriptions

    async def insert_subscription(self, subscription: Subscription) -> None:
        self.subscriptions.add(subscription)

    async def delete_subscription(self, subscription: Subscription) -> bool:
        if subscription not in self.subscriptions:
            return False
        self.subscriptions.discard(subscription)
        return True

    async def count_subscriptions(self, account_id: str, calendar_id: str) -> int:
        return sum(
            1
            for s in self.subscriptions
            if s.account_id == account_id and s.calendar_id == calendar_id
        )

    async def list_subscriptions(
        self, account_id: str, calendar_id: str, kind: SubscriptionKind
    ) -> list[Subscription]:
        targets = sorted(
            {
                s.target
                for s in self.subscriptions
                if s.account_id == account_id and s.calendar_id == calendar_id and s.kind == kind
            }
        )
        return [
            Subscription(account_id=account_id, calendar_id=calendar_id, kind=kind, target=t)
            for t in targets
        ]

    async def list_account_subscriptions(self, account_id: str) -> list[Subscription]:
        return sorted(
            (s for s in self.subscriptions if s.account_id == account_id),
            key=lambda s: (s.calendar_id, str(s.kind), s.target),
        )

    async def exists_channel(self, account_id: str, calendar_id: str) -> bool:
        return await self.get_channel_for(account_id, calendar_id) is not None

    async def get_channel(self, channel_id: str) -> Channel | None:
        return self.channels.get(channel_id)

    async def get_channel_for(self, account_id: str, calendar_id: str) -> Channel | None:
        for channel in self.channels.values():
            if channel.account_id == account_id and channel.calendar_id == calendar_id:
                return channel
        return None

    async def insert_channel(self, channel: Channel) -> None:
        self.channels[channel.channel_id] = channel

    async def delete_channel(self, channel_id: str) -> None:
        self.channels.pop(channel_id, None)

    async def update_channel_cursor(self, channel_id: str, next_sync_token: str) -> None:
        self.cursor_updates.append((channel_id, next_sync_token))
        channel = self.channels.get(channel_id)
        if channel is not None:
            self.channels[channel_id] = channel.model_copy(
                update={"next_sync_token": next_sync_token}
            )

    async def swap_channel(
        self,
        old_channel_id: str,
        *,
        new_channel_id: str,
        resource_id: str,
        expiry: datetime,
    ) -> bool:
        channel = self.channels.pop(old_channel_id, None)
        if channel is None:
            return False
        self.channels[new_channel_id] = channel.model_copy(
            update={"channel_id": new_channel_id, "resource_id": resource_id, "expiry": expiry}
        )
        return True

    async def list_channels_expiring_before(self, cutoff: datetime) -> list[Channel]:
        return sorted(
            (c for c in self.channels.values() if c.expiry < cutoff), key=lambda c: c.expiry
        )

    async def exists_invite(self, account_id: str, calendar_id: str, event_id: str) -> bool:
        return (account_id, calendar_id, event_id) in self.invites

    async def insert_invite(self, account_id: str, calendar_id: str, event_id: str) -> None:
        self.invites.add((account_id, calendar_id, event_id))

    async def get_refresh_token(self, account_id: str) -> str | None:
        return self.tokens.get(account_id)

    async def set_refresh_token(self, account_id: str, refresh_token: str) -> None:
        self.tokens[account_id] = refresh_token


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class FakeGateway(CalendarGateway):
    """Scriptable gateway that records every call.

    ``deltas`` maps a cursor to the ``(events, next_cursor)`` pair a delta
    fetch from that cursor returns; unknown cursors yield no events and the
    same cursor back.
    """

    def __init__(self) -> None:
        self.cursor = "cursor-0"
        self.deltas: dict[str, tuple[list[EventSnapshot], str]] = {}
        self.list_error: Exception | None = None
        self.watch_error: Exception | None = None
        self.stop_result: StopResult = StopResult.stopped
        self.stop_error: Exception | None = None
        self.initial_cursor_calls: list[str] = []
        self.list_calls: list[tuple[str, str]] = []
        self.watch_calls: list[tuple[str, str, str]] = []
        self.stop_calls: list[tuple[str, str]] = []

    async def initial_cursor(self, calendar_id: str) -> str:
        self.initial_cursor_calls.append(calendar_id)
        return self.cursor

    async def list_events_since(
        self, calendar_id: str, cursor: str
    ) -> tuple[list[EventSnapshot], str]:
        self.list_calls.append((calendar_id, cursor))
        if self.list_error is not None:
            raise self.list_error
        events, next_cursor = self.deltas.get(cursor, ([], cursor))
        return list(events), next_cursor

    async def watch(self, calendar_id: str, channel_id: str, address: str) -> WatchRegistration:
        self.watch_calls.append((calendar_id, channel_id, address))
        if self.watch_error is not None:
            raise self.watch_error
        return WatchRegistration(
            resource_id=f"res-{len(self.watch_calls)}",
            expiry=NOW + timedelta(days=7),
        )

    async def stop_watch(self, channel_id: str, resource_id: str) -> StopResult:
        self.stop_calls.append((channel_id, resource_id))
        if self.stop_error is not None:
            raise self.stop_error
        return self.stop_result


class FakeGatewayFactory(CalendarGatewayFactory):
    def __init__(self, gateway: FakeGateway) -> None:
        self.gateway = gateway
        self.accounts: list[str] = []

    async def for_account(self, account_id: str) -> CalendarGateway:
        self.accounts.append(account_id)
        return self.gateway


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------


class RecordingReminderScheduler(ReminderScheduler):
    def __init__(self) -> None:
        self.reminders: list[tuple[str, str]] = []
        self.added: list[Subscription] = []
        self.removed: list[Subscription] = []
        self.fail_with: Exception | None = None

    async def register_or_update_reminder(
        self, event: EventSnapshot, subscription: Subscription
    ) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.reminders.append((event.event_id, subscription.target))

    async def on_subscription_added(self, subscription: Subscription) -> None:
        self.added.append(subscription)

    async def on_subscription_removed(self, subscription: Subscription) -> None:
        self.removed.append(subscription)


class RecordingInviteSender(InviteSender):
    def __init__(self) -> None:
        self.invites: list[tuple[str, str, str, str]] = []
        self.fail_with: Exception | None = None

    async def send_invite(
        self,
        calendar_id: str,
        channel: Channel,
        event: EventSnapshot,
        subscription: Subscription,
    ) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.invites.append((calendar_id, channel.channel_id, event.event_id, subscription.target))


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def _rfc3339(value: datetime) -> str:
    return value.isoformat().replace("+00:00", "Z")


def build_event(
    event_id: str = "evt-1",
    *,
    starts_in: timedelta = timedelta(hours=2),
    duration: timedelta = timedelta(hours=1),
    status: str = "confirmed",
    attendees: list[dict[str, Any]] | None = None,
    recurring_event_id: str | None = None,
    all_day: bool = False,
) -> EventSnapshot:
    """Build an event snapshot relative to ``NOW`` from a Google-shaped payload."""
    start = NOW + starts_in
    end = start + duration
    payload: dict[str, Any] = {"id": event_id, "status": status, "summary": f"Event {event_id}"}
    if all_day:
        payload["start"] = {"date": start.date().isoformat()}
        payload["end"] = {"date": (start.date() + timedelta(days=1)).isoformat()}
    else:
        payload["start"] = {"dateTime": _rfc3339(start)}
        payload["end"] = {"dateTime": _rfc3339(end)}
    if attendees is not None:
        payload["attendees"] = attendees
    if recurring_event_id is not None:
        payload["recurringEventId"] = recurring_event_id
    return EventSnapshot.from_google(payload)


def self_attendee(response_status: str, *, organizer: bool = False) -> dict[str, Any]:
    return {
        "email": "me@example.com",
        "self": True,
        "organizer": organizer,
        "responseStatus": response_status,
    }


def build_channel(
    channel_id: str = "chan-1",
    *,
    account_id: str = "acct-1",
    calendar_id: str = "cal-1",
    resource_id: str = "res-1",
    expires_in: timedelta = timedelta(days=7),
    cursor: str = "cursor-0",
) -> Channel:
    return Channel(
        channel_id=channel_id,
        account_id=account_id,
        calendar_id=calendar_id,
        resource_id=resource_id,
        expiry=NOW + expires_in,
        next_sync_token=cursor,
    )


def build_subscription(
    kind: SubscriptionKind = SubscriptionKind.reminder,
    target: str = "conv-1",
    *,
    account_id: str = "acct-1",
    calendar_id: str = "cal-1",
) -> Subscription:
    return Subscription(account_id=account_id, calendar_id=calendar_id, kind=kind, target=target)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> Callable[[], datetime]:
    return lambda: NOW


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def gateways(gateway: FakeGateway) -> FakeGatewayFactory:
    return FakeGatewayFactory(gateway)


@pytest.fixture
def reminders() -> RecordingReminderScheduler:
    return RecordingReminderScheduler()


@pytest.fixture
def invites() -> RecordingInviteSender:
    return RecordingInviteSender()


@pytest.fixture
def channels(store: FakeStore, gateways: FakeGatewayFactory) -> ChannelLifecycleManager:
    return ChannelLifecycleManager(store, gateways, public_url=PUBLIC_URL)
