"""Turn calendar change notifications into reminder and invite decisions.

One inbound notification drives one reconciliation cycle:

1. sync handshakes and unknown channels are ignored;
2. the delta since the channel's cursor is fetched page by page;
3. every changed event is classified and dispatched to reminder/invite
   subscribers;
4. the cursor advances only after the whole delta was processed.

Any failure before step 4 leaves the cursor where it was, so the next
notification replays the same delta.  Downstream actions are idempotent:
invite prompts are guarded by a per-event marker and reminder registration
is update-or-create.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from calwatch.core.metrics import record_notification
from calwatch.core.telemetry import get_tracer
from calwatch.dispatch import InviteSender, ReminderScheduler
from calwatch.gateway import CalendarGatewayFactory, CursorExpiredError
from calwatch.models import (
    AttendeeResponseStatus,
    Channel,
    EventSnapshot,
    ReconcileOutcome,
    Subscription,
    SubscriptionKind,
    parse_event_times,
)
from calwatch.store import CalwatchStore

logger = logging.getLogger(__name__)

SYNC_RESOURCE_STATE = "sync"
DEFAULT_REMINDER_WINDOW = timedelta(hours=3)

Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ResourceMismatchError(RuntimeError):
    """The notification's resource id does not belong to the addressed channel."""

    def __init__(self, channel_id: str, expected: str, presented: str | None) -> None:
        self.channel_id = channel_id
        self.expected = expected
        self.presented = presented
        super().__init__(
            f"Channel '{channel_id}' resource id mismatch: {expected!r} != {presented!r}"
        )


class WebhookReconciler:
    """Processes one change notification per call to :meth:`handle_notification`."""

    def __init__(
        self,
        store: CalwatchStore,
        gateways: CalendarGatewayFactory,
        reminders: ReminderScheduler,
        invites: InviteSender,
        *,
        reminder_window: timedelta = DEFAULT_REMINDER_WINDOW,
        clock: Clock = _utcnow,
    ) -> None:
        self._store = store
        self._gateways = gateways
        self._reminders = reminders
        self._invites = invites
        self._reminder_window = reminder_window
        self._clock = clock

    async def handle_notification(
        self,
        *,
        channel_id: str,
        resource_id: str | None,
        resource_state: str | None,
    ) -> ReconcileOutcome:
        outcome = await self._handle(
            channel_id=channel_id, resource_id=resource_id, resource_state=resource_state
        )
        record_notification(str(outcome))
        return outcome

    async def _handle(
        self,
        *,
        channel_id: str,
        resource_id: str | None,
        resource_state: str | None,
    ) -> ReconcileOutcome:
        if resource_state == SYNC_RESOURCE_STATE:
            # Handshake sent once when a channel is opened; carries no changes.
            return ReconcileOutcome.ignored_sync

        channel = await self._store.get_channel(channel_id)
        if channel is None:
            logger.debug("Notification for unknown channel", extra={"channel_id": channel_id})
            return ReconcileOutcome.ignored_unknown_channel

        if channel.resource_id != resource_id:
            raise ResourceMismatchError(channel_id, channel.resource_id, resource_id)

        tracer = get_tracer()
        with tracer.start_as_current_span("calwatch.reconcile") as span:
            span.set_attribute("calwatch.account_id", channel.account_id)
            span.set_attribute("calwatch.calendar_id", channel.calendar_id)
            span.set_attribute("calwatch.channel_id", channel.channel_id)
            return await self._reconcile(channel)

    async def _reconcile(self, channel: Channel) -> ReconcileOutcome:
        reminder_subscriptions = await self._store.list_subscriptions(
            channel.account_id, channel.calendar_id, SubscriptionKind.reminder
        )
        invite_subscriptions = await self._store.list_subscriptions(
            channel.account_id, channel.calendar_id, SubscriptionKind.invite
        )

        gateway = await self._gateways.for_account(channel.account_id)
        try:
            events, next_cursor = await gateway.list_events_since(
                channel.calendar_id, channel.next_sync_token
            )
        except CursorExpiredError:
            # TODO: run a full resync here; until then changes behind an expired
            # cursor are lost and the channel stays on the stale token.
            logger.warning(
                "Sync cursor expired; skipping cycle without advancing",
                extra={
                    "account_id": channel.account_id,
                    "calendar_id": channel.calendar_id,
                    "channel_id": channel.channel_id,
                },
            )
            return ReconcileOutcome.cursor_expired

        for event in events:
            await self._process_event(channel, event, reminder_subscriptions, invite_subscriptions)

        await self._store.update_channel_cursor(channel.channel_id, next_cursor)
        logger.info(
            "Reconciled calendar changes",
            extra={
                "account_id": channel.account_id,
                "calendar_id": channel.calendar_id,
                "channel_id": channel.channel_id,
                "events": len(events),
            },
        )
        return ReconcileOutcome.processed

    async def _process_event(
        self,
        channel: Channel,
        event: EventSnapshot,
        reminder_subscriptions: list[Subscription],
        invite_subscriptions: list[Subscription],
    ) -> None:
        if event.is_cancelled:
            # The reminder scheduler drops pending reminders for cancelled events.
            for subscription in reminder_subscriptions:
                await self._reminders.register_or_update_reminder(event, subscription)
            return

        start, end, is_all_day = parse_event_times(event.start, event.end)

        if event.attendees is None:
            # No attendee list: the user created the event for themselves.
            await self._register_for_reminders(start, is_all_day, event, reminder_subscriptions)
            return

        for attendee in event.attendees:
            if not attendee.self_:
                continue
            if attendee.response_status in (
                AttendeeResponseStatus.accepted,
                AttendeeResponseStatus.tentative,
            ):
                await self._register_for_reminders(
                    start, is_all_day, event, reminder_subscriptions
                )
            elif (
                attendee.response_status == AttendeeResponseStatus.needs_action
                and not attendee.organizer
            ):
                await self._send_invites(channel, end, event, invite_subscriptions)

    async def _register_for_reminders(
        self,
        start: datetime,
        is_all_day: bool,
        event: EventSnapshot,
        subscriptions: list[Subscription],
    ) -> None:
        if is_all_day:
            # TODO: support reminders for all-day events.
            return
        now = self._clock()
        # Only events starting soon; later ones are picked up by a later notification.
        if not (now < start < now + self._reminder_window):
            return
        for subscription in subscriptions:
            await self._reminders.register_or_update_reminder(event, subscription)

    async def _send_invites(
        self,
        channel: Channel,
        end: datetime,
        event: EventSnapshot,
        subscriptions: list[Subscription],
    ) -> None:
        if not subscriptions:
            # The marker records a sent prompt; without invite subscribers nothing is sent.
            return
        if event.is_recurring_instance:
            # Recurring series are prompted once, through the parent event.
            return
        if self._clock() > end:
            return
        if await self._store.exists_invite(channel.account_id, channel.calendar_id, event.event_id):
            return
        for subscription in subscriptions:
            await self._invites.send_invite(channel.calendar_id, channel, event, subscription)
        await self._store.insert_invite(channel.account_id, channel.calendar_id, event.event_id)
