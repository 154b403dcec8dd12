"""Durable storage for subscriptions, watch channels, invite markers and tokens.

``CalwatchStore`` is the contract the lifecycle, reconciliation and renewal
layers depend on.  ``PostgresStore`` implements it over an asyncpg pool
(or the ``Database`` proxy, which exposes the same query methods).

Each operation touches a single row or runs a single statement, which gives
per-record atomicity for the cursor update and the renewal swap.  Nothing
here enforces the one-channel-per-calendar invariant; the channel lifecycle
manager does.
"""

from __future__ import annotations

import abc
import logging
from datetime import datetime
from typing import Any

from calwatch.models import Channel, Subscription, SubscriptionKind

logger = logging.getLogger(__name__)


class CalwatchStore(abc.ABC):
    """Persistence contract for subscriptions, channels and invite markers."""

    # -- Subscriptions -------------------------------------------------------

    @abc.abstractmethod
    async def exists_subscription(self, subscription: Subscription) -> bool: ...

    @abc.abstractmethod
    async def insert_subscription(self, subscription: Subscription) -> None: ...

    @abc.abstractmethod
    async def delete_subscription(self, subscription: Subscription) -> bool:
        """Delete *subscription*; return ``False`` when it did not exist."""
        ...

    @abc.abstractmethod
    async def count_subscriptions(self, account_id: str, calendar_id: str) -> int: ...

    @abc.abstractmethod
    async def list_subscriptions(
        self, account_id: str, calendar_id: str, kind: SubscriptionKind
    ) -> list[Subscription]:
        """Return one subscription per distinct target for the pair and kind."""
        ...

    @abc.abstractmethod
    async def list_account_subscriptions(self, account_id: str) -> list[Subscription]: ...

    # -- Channels ------------------------------------------------------------

    @abc.abstractmethod
    async def exists_channel(self, account_id: str, calendar_id: str) -> bool: ...

    @abc.abstractmethod
    async def get_channel(self, channel_id: str) -> Channel | None: ...

    @abc.abstractmethod
    async def get_channel_for(self, account_id: str, calendar_id: str) -> Channel | None: ...

    @abc.abstractmethod
    async def insert_channel(self, channel: Channel) -> None: ...

    @abc.abstractmethod
    async def delete_channel(self, channel_id: str) -> None: ...

    @abc.abstractmethod
    async def update_channel_cursor(self, channel_id: str, next_sync_token: str) -> None: ...

    @abc.abstractmethod
    async def swap_channel(
        self,
        old_channel_id: str,
        *,
        new_channel_id: str,
        resource_id: str,
        expiry: datetime,
    ) -> bool:
        """Replace a channel's identity in place, keeping its cursor.

        Returns ``False`` when *old_channel_id* no longer exists.
        """
        ...

    @abc.abstractmethod
    async def list_channels_expiring_before(self, cutoff: datetime) -> list[Channel]: ...

    # -- Invite markers ------------------------------------------------------

    @abc.abstractmethod
    async def exists_invite(self, account_id: str, calendar_id: str, event_id: str) -> bool: ...

    @abc.abstractmethod
    async def insert_invite(self, account_id: str, calendar_id: str, event_id: str) -> None: ...

    # -- OAuth tokens --------------------------------------------------------

    @abc.abstractmethod
    async def get_refresh_token(self, account_id: str) -> str | None: ...

    @abc.abstractmethod
    async def set_refresh_token(self, account_id: str, refresh_token: str) -> None: ...


def _affected_rows(status: str) -> int:
    """Parse the row count from an asyncpg command status like ``DELETE 1``."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (AttributeError, ValueError):
        return 0


def _row_to_channel(row: Any) -> Channel:
    return Channel(
        channel_id=row["channel_id"],
        account_id=row["account_id"],
        calendar_id=row["calendar_id"],
        resource_id=row["resource_id"],
        expiry=row["expiry"],
        next_sync_token=row["next_sync_token"],
    )


_CHANNEL_COLUMNS = "channel_id, account_id, calendar_id, resource_id, expiry, next_sync_token"


class PostgresStore(CalwatchStore):
    """asyncpg-backed store over the ``calwatch_*`` tables."""

    def __init__(self, pool: Any) -> None:
        self._pool = pool

    async def exists_subscription(self, subscription: Subscription) -> bool:
        found = await self._pool.fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM calwatch_subscriptions
                WHERE account_id = $1 AND calendar_id = $2 AND kind = $3 AND target = $4
            )
            """,
            subscription.account_id,
            subscription.calendar_id,
            str(subscription.kind),
            subscription.target,
        )
        return bool(found)

    async def insert_subscription(self, subscription: Subscription) -> None:
        await self._pool.execute(
            """
            INSERT INTO calwatch_subscriptions (account_id, calendar_id, kind, target)
            VALUES ($1, $2, $3, $4)
            ON CONFLICT DO NOTHING
            """,
            subscription.account_id,
            subscription.calendar_id,
            str(subscription.kind),
            subscription.target,
        )

    async def delete_subscription(self, subscription: Subscription) -> bool:
        status = await self._pool.execute(
            """
            DELETE FROM calwatch_subscriptions
            WHERE account_id = $1 AND calendar_id = $2 AND kind = $3 AND target = $4
            """,
            subscription.account_id,
            subscription.calendar_id,
            str(subscription.kind),
            subscription.target,
        )
        return _affected_rows(status) > 0

    async def count_subscriptions(self, account_id: str, calendar_id: str) -> int:
        count = await self._pool.fetchval(
            """
            SELECT count(*) FROM calwatch_subscriptions
            WHERE account_id = $1 AND calendar_id = $2
            """,
            account_id,
            calendar_id,
        )
        return int(count or 0)

    async def list_subscriptions(
        self, account_id: str, calendar_id: str, kind: SubscriptionKind
    ) -> list[Subscription]:
        rows = await self._pool.fetch(
            """
            SELECT DISTINCT target FROM calwatch_subscriptions
            WHERE account_id = $1 AND calendar_id = $2 AND kind = $3
            ORDER BY target
            """,
            account_id,
            calendar_id,
            str(kind),
        )
        return [
            Subscription(
                account_id=account_id, calendar_id=calendar_id, kind=kind, target=row["target"]
            )
            for row in rows
        ]

    async def list_account_subscriptions(self, account_id: str) -> list[Subscription]:
        rows = await self._pool.fetch(
            """
            SELECT account_id, calendar_id, kind, target FROM calwatch_subscriptions
            WHERE account_id = $1
            ORDER BY calendar_id, kind, target
            """,
            account_id,
        )
        return [
            Subscription(
                account_id=row["account_id"],
                calendar_id=row["calendar_id"],
                kind=SubscriptionKind(row["kind"]),
                target=row["target"],
            )
            for row in rows
        ]

    async def exists_channel(self, account_id: str, calendar_id: str) -> bool:
        found = await self._pool.fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM calwatch_channels WHERE account_id = $1 AND calendar_id = $2
            )
            """,
            account_id,
            calendar_id,
        )
        return bool(found)

    async def get_channel(self, channel_id: str) -> Channel | None:
        row = await self._pool.fetchrow(
            f"SELECT {_CHANNEL_COLUMNS} FROM calwatch_channels WHERE channel_id = $1",
            channel_id,
        )
        return _row_to_channel(row) if row is not None else None

    async def get_channel_for(self, account_id: str, calendar_id: str) -> Channel | None:
        row = await self._pool.fetchrow(
            f"""
            SELECT {_CHANNEL_COLUMNS} FROM calwatch_channels
            WHERE account_id = $1 AND calendar_id = $2
            ORDER BY expiry DESC
            LIMIT 1
            """,
            account_id,
            calendar_id,
        )
        return _row_to_channel(row) if row is not None else None

    async def insert_channel(self, channel: Channel) -> None:
        await self._pool.execute(
            """
            INSERT INTO calwatch_channels
                (channel_id, account_id, calendar_id, resource_id, expiry, next_sync_token)
            VALUES ($1, $2, $3, $4, $5, $6)
            """,
            channel.channel_id,
            channel.account_id,
            channel.calendar_id,
            channel.resource_id,
            channel.expiry,
            channel.next_sync_token,
        )

    async def delete_channel(self, channel_id: str) -> None:
        await self._pool.execute("DELETE FROM calwatch_channels WHERE channel_id = $1", channel_id)

    async def update_channel_cursor(self, channel_id: str, next_sync_token: str) -> None:
        await self._pool.execute(
            """
            UPDATE calwatch_channels
            SET next_sync_token = $2, updated_at = now()
            WHERE channel_id = $1
            """,
            channel_id,
            next_sync_token,
        )

    async def swap_channel(
        self,
        old_channel_id: str,
        *,
        new_channel_id: str,
        resource_id: str,
        expiry: datetime,
    ) -> bool:
        status = await self._pool.execute(
            """
            UPDATE calwatch_channels
            SET channel_id = $2, resource_id = $3, expiry = $4, updated_at = now()
            WHERE channel_id = $1
            """,
            old_channel_id,
            new_channel_id,
            resource_id,
            expiry,
        )
        return _affected_rows(status) > 0

    async def list_channels_expiring_before(self, cutoff: datetime) -> list[Channel]:
        rows = await self._pool.fetch(
            f"""
            SELECT {_CHANNEL_COLUMNS} FROM calwatch_channels
            WHERE expiry < $1
            ORDER BY expiry
            """,
            cutoff,
        )
        return [_row_to_channel(row) for row in rows]

    async def exists_invite(self, account_id: str, calendar_id: str, event_id: str) -> bool:
        found = await self._pool.fetchval(
            """
            SELECT EXISTS (
                SELECT 1 FROM calwatch_invites
                WHERE account_id = $1 AND calendar_id = $2 AND event_id = $3
            )
            """,
            account_id,
            calendar_id,
            event_id,
        )
        return bool(found)

    async def insert_invite(self, account_id: str, calendar_id: str, event_id: str) -> None:
        await self._pool.execute(
            """
            INSERT INTO calwatch_invites (account_id, calendar_id, event_id)
            VALUES ($1, $2, $3)
            ON CONFLICT DO NOTHING
            """,
            account_id,
            calendar_id,
            event_id,
        )

    async def get_refresh_token(self, account_id: str) -> str | None:
        return await self._pool.fetchval(
            "SELECT refresh_token FROM calwatch_oauth_tokens WHERE account_id = $1",
            account_id,
        )

    async def set_refresh_token(self, account_id: str, refresh_token: str) -> None:
        await self._pool.execute(
            """
            INSERT INTO calwatch_oauth_tokens (account_id, refresh_token, updated_at)
            VALUES ($1, $2, now())
            ON CONFLICT (account_id) DO UPDATE
                SET refresh_token = EXCLUDED.refresh_token,
                    updated_at = now()
            """,
            account_id,
            refresh_token,
        )
