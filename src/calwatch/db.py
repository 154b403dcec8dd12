"""PostgreSQL connection settings and the asyncpg pool used by the store."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from urllib.parse import parse_qs, quote, urlparse

import asyncpg

logger = logging.getLogger(__name__)

_SSL_MODES = frozenset({"disable", "allow", "prefer", "require", "verify-ca", "verify-full"})
_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _sslmode(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    mode = value.strip().lower()
    if mode not in _SSL_MODES:
        logger.warning("Ignoring unknown sslmode %r", value)
        return None
    return mode


@dataclass(frozen=True)
class ConnectionSettings:
    """Server address and credentials, independent of the database name."""

    host: str = "localhost"
    port: int = 5432
    user: str = "calwatch"
    password: str = "calwatch"
    sslmode: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> ConnectionSettings:
        """Read ``DATABASE_URL`` if set, else the ``POSTGRES_*`` variables.

        The path component of ``DATABASE_URL`` is ignored; the database name
        always comes from calwatch.toml.
        """
        env = os.environ if environ is None else environ
        url = env.get("DATABASE_URL")
        if url:
            parsed = urlparse(url)
            return cls(
                host=parsed.hostname or cls.host,
                port=parsed.port or cls.port,
                user=parsed.username or cls.user,
                password=parsed.password or cls.password,
                sslmode=_sslmode(parse_qs(parsed.query).get("sslmode", [None])[0]),
            )
        return cls(
            host=env.get("POSTGRES_HOST", cls.host),
            port=int(env.get("POSTGRES_PORT", cls.port)),
            user=env.get("POSTGRES_USER", cls.user),
            password=env.get("POSTGRES_PASSWORD", cls.password),
            sslmode=_sslmode(env.get("POSTGRES_SSLMODE")),
        )

    def dsn(self, db_name: str) -> str:
        userinfo = f"{quote(self.user, safe='')}:{quote(self.password, safe='')}"
        url = f"postgresql://{userinfo}@{self.host}:{self.port}/{quote(db_name, safe='')}"
        if self.sslmode:
            url += f"?sslmode={self.sslmode}"
        return url


class Database:
    """asyncpg pool for one database, optionally pinned to a schema.

    Query methods are forwarded to the pool so ``PostgresStore`` can take
    either this object or a bare pool.
    """

    def __init__(
        self,
        db_name: str,
        settings: ConnectionSettings | None = None,
        *,
        schema: str | None = None,
        min_pool_size: int = 1,
        max_pool_size: int = 10,
    ) -> None:
        if schema is not None and not _IDENTIFIER.fullmatch(schema):
            raise ValueError(f"Invalid schema name: {schema!r}")
        self.db_name = db_name
        self.settings = settings or ConnectionSettings()
        self.schema = schema
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.pool: asyncpg.Pool | None = None

    @classmethod
    def from_env(cls, db_name: str, schema: str | None = None) -> Database:
        return cls(db_name, ConnectionSettings.from_env(), schema=schema)

    @property
    def sqlalchemy_url(self) -> str:
        """The same DSN, for the synchronous migration engine."""
        return self.settings.dsn(self.db_name)

    async def connect(self) -> asyncpg.Pool:
        server_settings = {"search_path": f"{self.schema},public"} if self.schema else None
        self.pool = await asyncpg.create_pool(
            dsn=self.settings.dsn(self.db_name),
            min_size=self.min_pool_size,
            max_size=self.max_pool_size,
            server_settings=server_settings,
        )
        logger.info(
            "Database pool open",
            extra={"db_name": self.db_name, "schema": self.schema, "host": self.settings.host},
        )
        return self.pool

    async def close(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None
        logger.info("Database pool closed", extra={"db_name": self.db_name})

    def _live_pool(self) -> asyncpg.Pool:
        if self.pool is None:
            raise RuntimeError(f"Database '{self.db_name}' is not connected")
        return self.pool

    async def fetch(self, query: str, *args: Any) -> list[Any]:
        return await self._live_pool().fetch(query, *args)

    async def fetchrow(self, query: str, *args: Any) -> Any:
        return await self._live_pool().fetchrow(query, *args)

    async def fetchval(self, query: str, *args: Any) -> Any:
        return await self._live_pool().fetchval(query, *args)

    async def execute(self, query: str, *args: Any) -> str:
        return await self._live_pool().execute(query, *args)
