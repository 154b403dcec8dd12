"""calwatch process wiring.

``CalwatchDaemon`` owns every long-lived resource: the database pool, the
shared HTTP clients, the renewal loop and the webhook server.  The CLI uses
it both for the long-running ``serve`` command and, with the background
parts disabled, for one-shot administrative commands.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from pathlib import Path

import uvicorn

from calwatch.api.app import create_app
from calwatch.channels import ChannelLifecycleManager
from calwatch.config import CalwatchConfig, load_config
from calwatch.core.logging import configure_logging
from calwatch.core.telemetry import init_telemetry
from calwatch.db import Database
from calwatch.dispatch import HttpInviteSender, HttpReminderScheduler
from calwatch.gateway import GoogleGatewayFactory
from calwatch.migrations import run_migrations
from calwatch.reconciler import WebhookReconciler
from calwatch.renewal import RenewalScheduler
from calwatch.store import PostgresStore
from calwatch.subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)


class CalwatchDaemon:
    """Central orchestrator for a calwatch instance."""

    def __init__(self, config_dir: Path) -> None:
        self.config_dir = config_dir
        self.config: CalwatchConfig | None = None
        self.db: Database | None = None
        self.store: PostgresStore | None = None
        self.gateways: GoogleGatewayFactory | None = None
        self.reminders: HttpReminderScheduler | None = None
        self.invites: HttpInviteSender | None = None
        self.channels: ChannelLifecycleManager | None = None
        self.subscriptions: SubscriptionManager | None = None
        self.reconciler: WebhookReconciler | None = None
        self.renewal: RenewalScheduler | None = None
        self._server: uvicorn.Server | None = None
        self._server_task: asyncio.Task | None = None

    async def start(self, *, serve: bool = True) -> None:
        """Execute the startup sequence.

        With ``serve=False`` the components are wired but neither the renewal
        loop nor the webhook server is started.
        """
        # 1. Load config and set up observability
        self.config = load_config(self.config_dir)
        configure_logging(
            level=self.config.logging.level,
            fmt=self.config.logging.format,
            log_root=Path(self.config.logging.log_root) if self.config.logging.log_root else None,
        )
        init_telemetry("calwatch")

        # 2. Database and schema
        self.db = Database.from_env(self.config.db_name, schema=self.config.db_schema)
        await self.db.connect()
        await run_migrations(self.db.sqlalchemy_url, schema=self.config.db_schema)
        self.store = PostgresStore(self.db)

        # 3. Collaborators
        self.gateways = GoogleGatewayFactory(
            client_id=self.config.google.client_id,
            client_secret=self.config.google.client_secret,
            refresh_token_lookup=self.store.get_refresh_token,
        )
        self.reminders = HttpReminderScheduler(
            self.config.dispatch.url, timeout_s=self.config.dispatch.timeout_s
        )
        self.invites = HttpInviteSender(
            self.config.dispatch.url, timeout_s=self.config.dispatch.timeout_s
        )

        # 4. Core components
        self.channels = ChannelLifecycleManager(
            self.store, self.gateways, public_url=self.config.public_url
        )
        self.subscriptions = SubscriptionManager(self.store, self.channels, self.reminders)
        self.reconciler = WebhookReconciler(
            self.store,
            self.gateways,
            self.reminders,
            self.invites,
            reminder_window=timedelta(seconds=self.config.reconcile.reminder_window_s),
        )
        self.renewal = RenewalScheduler(
            self.store,
            self.channels,
            interval_s=self.config.renewal.interval_s,
            horizon_s=self.config.renewal.horizon_s,
        )

        if not serve:
            return

        # 5. Background renewal and webhook server
        self.renewal.start()
        await self._start_server()
        logger.info(
            "calwatch running on %s:%s (callback=%s)",
            self.config.host,
            self.config.port,
            self.channels.callback_address,
        )

    async def _start_server(self) -> None:
        """Start the webhook server as a background asyncio task."""
        app = create_app(self.reconciler)
        config = uvicorn.Config(
            app,
            host=self.config.host,
            port=self.config.port,
            log_level="info",
            log_config=None,
            timeout_graceful_shutdown=5,
        )
        self._server = uvicorn.Server(config)
        self._server_task = asyncio.create_task(self._server.serve())

    async def shutdown(self) -> None:
        """Graceful shutdown.

        1. Stop the webhook server
        2. Let the renewal loop finish its in-flight channel
        3. Close HTTP clients
        4. Close DB pool
        """
        logger.info("Shutting down calwatch")

        if self._server is not None:
            self._server.should_exit = True
        if self._server_task is not None:
            try:
                await self._server_task
            except Exception:
                logger.exception("Error while stopping webhook server")
            self._server_task = None
            self._server = None

        if self.renewal is not None:
            await self.renewal.shutdown()

        for client in (self.reminders, self.invites, self.gateways):
            if client is None:
                continue
            try:
                await client.aclose()
            except Exception:
                logger.exception("Error while closing %s", type(client).__name__)

        if self.db:
            await self.db.close()

        logger.info("calwatch shutdown complete")
