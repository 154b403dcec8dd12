"""Tests for subscription add/remove and its coupling to channel lifecycle."""

from __future__ import annotations

import pytest
from conftest import build_subscription

from calwatch.gateway import GatewayRequestError
from calwatch.models import StopResult, SubscriptionKind
from calwatch.subscriptions import SubscriptionManager

pytestmark = pytest.mark.unit


@pytest.fixture
def manager(store, channels, reminders) -> SubscriptionManager:
    return SubscriptionManager(store, channels, reminders)


def _channel_count(store, account_id="acct-1", calendar_id="cal-1") -> int:
    return sum(
        1
        for c in store.channels.values()
        if c.account_id == account_id and c.calendar_id == calendar_id
    )


class TestAddSubscription:
    async def test_first_subscription_opens_channel(self, manager, store, gateway, reminders):
        gateway.cursor = "cursor-start"
        subscription = build_subscription()

        assert await manager.add_subscription(subscription) is True

        assert len(gateway.watch_calls) == 1
        (channel,) = store.channels.values()
        assert channel.next_sync_token == "cursor-start"
        assert subscription in store.subscriptions
        assert reminders.added == [subscription]

    async def test_second_subscription_reuses_channel(self, manager, store, gateway):
        await manager.add_subscription(build_subscription(SubscriptionKind.reminder, "conv-a"))
        await manager.add_subscription(build_subscription(SubscriptionKind.invite, "conv-b"))

        assert len(gateway.watch_calls) == 1
        assert _channel_count(store) == 1
        assert len(store.subscriptions) == 2

    async def test_duplicate_is_a_no_op(self, manager, store, gateway, reminders):
        subscription = build_subscription()
        await manager.add_subscription(subscription)

        assert await manager.add_subscription(subscription) is False
        assert len(gateway.watch_calls) == 1
        assert reminders.added == [subscription]

    async def test_channel_failure_creates_no_subscription(
        self, manager, store, gateway, reminders
    ):
        gateway.watch_error = GatewayRequestError(status_code=403, message="forbidden")

        with pytest.raises(GatewayRequestError):
            await manager.add_subscription(build_subscription())

        assert store.subscriptions == set()
        assert store.channels == {}
        assert reminders.added == []

    async def test_separate_calendars_get_separate_channels(self, manager, store, gateway):
        await manager.add_subscription(build_subscription(calendar_id="cal-1"))
        await manager.add_subscription(build_subscription(calendar_id="cal-2"))

        assert len(gateway.watch_calls) == 2
        assert _channel_count(store, calendar_id="cal-1") == 1
        assert _channel_count(store, calendar_id="cal-2") == 1


class TestRemoveSubscription:
    async def test_last_subscription_releases_channel(self, manager, store, gateway, reminders):
        subscription = build_subscription()
        await manager.add_subscription(subscription)

        assert await manager.remove_subscription(subscription) is True

        assert store.subscriptions == set()
        assert store.channels == {}
        assert len(gateway.stop_calls) == 1
        assert reminders.removed == [subscription]

    async def test_release_tolerates_missing_channel_at_provider(self, manager, store, gateway):
        subscription = build_subscription()
        await manager.add_subscription(subscription)
        gateway.stop_result = StopResult.already_absent

        await manager.remove_subscription(subscription)

        assert store.channels == {}

    async def test_channel_kept_while_subscriptions_remain(self, manager, store, gateway):
        first = build_subscription(SubscriptionKind.reminder, "conv-a")
        second = build_subscription(SubscriptionKind.invite, "conv-b")
        await manager.add_subscription(first)
        await manager.add_subscription(second)

        await manager.remove_subscription(first)

        assert _channel_count(store) == 1
        assert gateway.stop_calls == []

    async def test_missing_subscription_is_a_no_op(self, manager, store, gateway, reminders):
        assert await manager.remove_subscription(build_subscription()) is False
        assert gateway.stop_calls == []
        assert reminders.removed == []


class TestRemoveAccount:
    async def test_removes_everything_and_releases_channels(self, manager, store, gateway):
        await manager.add_subscription(build_subscription(calendar_id="cal-1"))
        await manager.add_subscription(
            build_subscription(SubscriptionKind.invite, calendar_id="cal-1")
        )
        await manager.add_subscription(build_subscription(calendar_id="cal-2"))
        other = build_subscription(account_id="acct-2")
        await manager.add_subscription(other)

        assert await manager.remove_account("acct-1") == 3

        assert store.subscriptions == {other}
        assert [c.account_id for c in store.channels.values()] == ["acct-2"]
        assert len(gateway.stop_calls) == 2
