"""Watch-channel lifecycle: open, release and renew.

At most one channel exists per (account, calendar).  A channel is opened
when the first subscription for the pair arrives, released when the last one
goes away, and replaced in place before it expires.  The sync cursor is set
once at open time and is carried across renewals untouched.
"""

from __future__ import annotations

import logging
import uuid

from calwatch.core.metrics import record_stop
from calwatch.core.telemetry import get_tracer
from calwatch.gateway import CalendarGateway, CalendarGatewayFactory, GatewayError
from calwatch.models import Channel, StopResult
from calwatch.store import CalwatchStore

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/calwatch/events/webhook"


def new_channel_id() -> str:
    """Locally generated channel identifier; opaque to the provider."""
    return uuid.uuid4().hex


class ChannelLifecycleManager:
    """Opens, releases and renews watch channels for (account, calendar) pairs."""

    def __init__(
        self,
        store: CalwatchStore,
        gateways: CalendarGatewayFactory,
        *,
        public_url: str,
    ) -> None:
        self._store = store
        self._gateways = gateways
        self.callback_address = f"{public_url.rstrip('/')}{WEBHOOK_PATH}"

    async def ensure_channel(self, account_id: str, calendar_id: str) -> Channel | None:
        """Open a channel for the pair unless one already exists.

        Returns the new channel, or ``None`` when one was already in place.
        Any gateway failure propagates and nothing is persisted.
        """
        if await self._store.exists_channel(account_id, calendar_id):
            return None

        gateway = await self._gateways.for_account(account_id)
        # Start consuming changes from "now"; earlier events are never replayed.
        cursor = await gateway.initial_cursor(calendar_id)

        channel_id = new_channel_id()
        registration = await gateway.watch(calendar_id, channel_id, self.callback_address)

        channel = Channel(
            channel_id=channel_id,
            account_id=account_id,
            calendar_id=calendar_id,
            resource_id=registration.resource_id,
            expiry=registration.expiry,
            next_sync_token=cursor,
        )
        await self._store.insert_channel(channel)
        logger.info(
            "Opened watch channel",
            extra={
                "account_id": account_id,
                "calendar_id": calendar_id,
                "channel_id": channel_id,
                "expiry": channel.expiry.isoformat(),
            },
        )
        return channel

    async def release_channel(self, account_id: str, calendar_id: str) -> bool:
        """Stop and forget the pair's channel.

        Callers invoke this only once no subscriptions remain for the pair.
        Returns ``False`` when there was no channel to release.
        """
        channel = await self._store.get_channel_for(account_id, calendar_id)
        if channel is None:
            return False

        gateway = await self._gateways.for_account(account_id)
        await self._stop(gateway, channel)
        await self._store.delete_channel(channel.channel_id)
        logger.info(
            "Released watch channel",
            extra={
                "account_id": account_id,
                "calendar_id": calendar_id,
                "channel_id": channel.channel_id,
            },
        )
        return True

    async def renew(self, channel: Channel) -> Channel:
        """Replace *channel* with a fresh registration, keeping its cursor.

        The new registration is opened and recorded before the old one is
        stopped, so notifications keep flowing throughout.
        """
        tracer = get_tracer()
        with tracer.start_as_current_span("calwatch.renew") as span:
            span.set_attribute("calwatch.account_id", channel.account_id)
            span.set_attribute("calwatch.calendar_id", channel.calendar_id)
            span.set_attribute("calwatch.channel_id", channel.channel_id)

            gateway = await self._gateways.for_account(channel.account_id)
            channel_id = new_channel_id()
            registration = await gateway.watch(
                channel.calendar_id, channel_id, self.callback_address
            )

            swapped = await self._store.swap_channel(
                channel.channel_id,
                new_channel_id=channel_id,
                resource_id=registration.resource_id,
                expiry=registration.expiry,
            )
            if not swapped:
                # Released concurrently; do not leave the new registration running.
                logger.warning(
                    "Channel disappeared during renewal; stopping replacement",
                    extra={
                        "account_id": channel.account_id,
                        "calendar_id": channel.calendar_id,
                        "channel_id": channel.channel_id,
                    },
                )
                replacement = channel.model_copy(
                    update={"channel_id": channel_id, "resource_id": registration.resource_id}
                )
                await self._stop(gateway, replacement)
                raise LookupError(f"Channel '{channel.channel_id}' no longer exists")

            try:
                await self._stop(gateway, channel)
            except GatewayError:
                # The row already points at the replacement; the old registration
                # lapses at its own expiry.
                logger.warning(
                    "Failed to stop replaced watch channel",
                    extra={
                        "account_id": channel.account_id,
                        "calendar_id": channel.calendar_id,
                        "channel_id": channel.channel_id,
                    },
                    exc_info=True,
                )

        renewed = channel.model_copy(
            update={
                "channel_id": channel_id,
                "resource_id": registration.resource_id,
                "expiry": registration.expiry,
            }
        )
        logger.info(
            "Renewed watch channel",
            extra={
                "account_id": channel.account_id,
                "calendar_id": channel.calendar_id,
                "old_channel_id": channel.channel_id,
                "channel_id": channel_id,
                "expiry": renewed.expiry.isoformat(),
            },
        )
        return renewed

    async def _stop(self, gateway: CalendarGateway, channel: Channel) -> StopResult:
        result = await gateway.stop_watch(channel.channel_id, channel.resource_id)
        record_stop(str(result))
        if result is StopResult.already_absent:
            logger.info(
                "Watch channel already gone at provider",
                extra={"channel_id": channel.channel_id, "calendar_id": channel.calendar_id},
            )
        return result
