"""Subscription create/remove, coupled to the channel lifecycle."""

from __future__ import annotations

import logging

from calwatch.channels import ChannelLifecycleManager
from calwatch.dispatch import ReminderScheduler
from calwatch.models import Subscription
from calwatch.store import CalwatchStore

logger = logging.getLogger(__name__)


class SubscriptionManager:
    """Adds and removes subscriptions, opening and releasing channels as needed."""

    def __init__(
        self,
        store: CalwatchStore,
        channels: ChannelLifecycleManager,
        reminders: ReminderScheduler,
    ) -> None:
        self._store = store
        self._channels = channels
        self._reminders = reminders

    async def add_subscription(self, subscription: Subscription) -> bool:
        """Create *subscription*; returns ``False`` if it already existed.

        The channel is opened before the subscription row is written, so a
        failure in between leaves at most an unreferenced channel.
        """
        if await self._store.exists_subscription(subscription):
            return False

        await self._channels.ensure_channel(subscription.account_id, subscription.calendar_id)
        await self._store.insert_subscription(subscription)
        await self._reminders.on_subscription_added(subscription)
        logger.info(
            "Subscription added",
            extra={
                "account_id": subscription.account_id,
                "calendar_id": subscription.calendar_id,
                "kind": str(subscription.kind),
                "target": subscription.target,
            },
        )
        return True

    async def remove_subscription(self, subscription: Subscription) -> bool:
        """Delete *subscription*; returns ``False`` if there was nothing to delete."""
        if not await self._store.delete_subscription(subscription):
            return False

        await self._reminders.on_subscription_removed(subscription)
        logger.info(
            "Subscription removed",
            extra={
                "account_id": subscription.account_id,
                "calendar_id": subscription.calendar_id,
                "kind": str(subscription.kind),
                "target": subscription.target,
            },
        )

        remaining = await self._store.count_subscriptions(
            subscription.account_id, subscription.calendar_id
        )
        if remaining == 0:
            await self._channels.release_channel(subscription.account_id, subscription.calendar_id)
        return True

    async def remove_account(self, account_id: str) -> int:
        """Remove every subscription of *account_id*; returns how many were removed."""
        removed = 0
        for subscription in await self._store.list_account_subscriptions(account_id):
            if await self.remove_subscription(subscription):
                removed += 1
        logger.info(
            "Account subscriptions removed", extra={"account_id": account_id, "removed": removed}
        )
        return removed
