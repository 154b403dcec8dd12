"""Background renewal of watch channels nearing expiry."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from calwatch.channels import ChannelLifecycleManager
from calwatch.core.metrics import record_renewal
from calwatch.store import CalwatchStore

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_S = 3600.0
DEFAULT_HORIZON_S = 86400.0


class RenewalScheduler:
    """Periodically renews every channel expiring within the horizon.

    Shutdown is cooperative: it is observed at the top of each scan and
    between channels, never while a single renewal is in flight.
    """

    def __init__(
        self,
        store: CalwatchStore,
        channels: ChannelLifecycleManager,
        *,
        interval_s: float = DEFAULT_INTERVAL_S,
        horizon_s: float = DEFAULT_HORIZON_S,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._channels = channels
        self._interval_s = interval_s
        self._horizon = timedelta(seconds=horizon_s)
        self._clock = clock or (lambda: datetime.now(UTC))
        self._shutdown_event: asyncio.Event = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self.run(), name="calwatch-renewal")

    async def run(self) -> None:
        logger.debug("Channel renewal loop started (interval=%ss)", self._interval_s)
        while not self._shutdown_event.is_set():
            try:
                await self.scan_once()
            except Exception as exc:
                # Store failures while listing; retried on the next tick.
                logger.error("Channel renewal scan failed: %s", exc, exc_info=True)

            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=self._interval_s)
            except TimeoutError:
                pass
        logger.debug("Channel renewal loop stopped")

    async def scan_once(self) -> int:
        """Renew channels expiring before now + horizon; returns how many succeeded."""
        if self._shutdown_event.is_set():
            return 0

        cutoff = self._clock() + self._horizon
        expiring = await self._store.list_channels_expiring_before(cutoff)
        renewed = 0
        for channel in expiring:
            if self._shutdown_event.is_set():
                logger.info("Shutdown requested; stopping renewal scan early")
                break
            try:
                await self._channels.renew(channel)
            except Exception as exc:
                record_renewal("error")
                logger.error(
                    "Failed to renew watch channel: %s",
                    exc,
                    exc_info=True,
                    extra={
                        "account_id": channel.account_id,
                        "calendar_id": channel.calendar_id,
                        "channel_id": channel.channel_id,
                    },
                )
                continue
            record_renewal("success")
            renewed += 1

        if expiring:
            logger.info(
                "Channel renewal scan finished",
                extra={"expiring": len(expiring), "renewed": renewed},
            )
        return renewed

    async def shutdown(self) -> None:
        """Signal the loop to stop and wait for the in-flight renewal to finish."""
        self._shutdown_event.set()
        task, self._task = self._task, None
        if task is not None:
            await task
