"""Service orchestrator — ShopApp.

config → DB init → domain components → Telegram bot + dispatcher →
background tasks → metrics → polling. ``stop`` unwinds in reverse order.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path

from aiogram import Bot, Dispatcher
from aiogram.types import CallbackQuery, Message

from . import __version__
from .admin_cache import AdminRoleCache
from .approvals import AdminApprovalProtocol
from .broadcast import BroadcastController
from .commands import CommandHandler
from .config import ShopConfig, load_config
from .database import ShopDatabase
from .ledger import CreditLedger
from .licenses import LicenseWorkflow
from .metrics_server import ShopMetricsServer
from .orders import OrderWorkflow
from .router import UpdateRouter
from .routing import StaffRouting
from .session_engine import SessionEngine
from .sweep import ExpirationSweep
from .telegram_gateway import TelegramGateway, event_from_callback, event_from_message


class ShopApp:
    """Top-level application orchestrator."""

    def __init__(self, config_path: str) -> None:
        self.config_path = Path(config_path)
        self.logger = logging.getLogger("shop")

        # Components (initialized in start())
        self.config: ShopConfig | None = None
        self.db: ShopDatabase | None = None
        self.bot: Bot | None = None
        self.dispatcher: Dispatcher | None = None
        self.gateway: TelegramGateway | None = None
        self.ledger: CreditLedger | None = None
        self.staff_routing: StaffRouting | None = None
        self.admin_cache: AdminRoleCache | None = None
        self.orders: OrderWorkflow | None = None
        self.licenses: LicenseWorkflow | None = None
        self.engine: SessionEngine | None = None
        self.approvals: AdminApprovalProtocol | None = None
        self.broadcast: BroadcastController | None = None
        self.commands: CommandHandler | None = None
        self.router: UpdateRouter | None = None
        self.sweep: ExpirationSweep | None = None
        self.metrics_server: ShopMetricsServer | None = None

        # State
        self._running = False
        self._start_time: float | None = None

    @property
    def uptime_seconds(self) -> float:
        if self._start_time is None:
            return 0.0
        return time.time() - self._start_time

    def _child(self, name: str) -> logging.Logger:
        return self.logger.getChild(name)

    def build(self, config: ShopConfig, database: ShopDatabase, bot: Bot) -> None:
        """Wire the domain components around a config, store and bot."""
        self.config = config
        self.db = database
        self.bot = bot
        self.gateway = TelegramGateway(bot, parse_mode=config.telegram.parse_mode, logger=self._child("telegram"))
        self.ledger = CreditLedger(database, logger=self._child("ledger"))
        self.staff_routing = StaffRouting(database)
        self.admin_cache = AdminRoleCache(
            self.gateway, ttl_seconds=config.admin.cache_ttl_seconds, logger=self._child("admin_cache"),
        )
        self.orders = OrderWorkflow(
            config, database, self.gateway, self.staff_routing, logger=self._child("orders"),
        )
        self.licenses = LicenseWorkflow(
            config, database, self.gateway, self.ledger, self.staff_routing, logger=self._child("licenses"),
        )
        self.engine = SessionEngine(
            config, database, self.gateway, self.orders, self.licenses, self.staff_routing,
            logger=self._child("session"),
        )
        self.approvals = AdminApprovalProtocol(
            config, database, self.gateway, self.admin_cache, self.staff_routing,
            self.orders, self.licenses, logger=self._child("approvals"),
        )
        self.broadcast = BroadcastController(config, database, self.gateway, logger=self._child("broadcast"))
        self.commands = CommandHandler(
            config, database, self.gateway, self.ledger, self.admin_cache, self.staff_routing,
            self.broadcast, logger=self._child("commands"),
        )
        self.router = UpdateRouter(
            config, database, self.gateway, self.engine, self.commands, self.approvals,
            self.broadcast, self.orders, logger=self._child("router"),
        )
        self.sweep = ExpirationSweep(
            config, database, self.gateway, self.licenses, self.staff_routing, logger=self._child("sweep"),
        )

    def _register_handlers(self) -> None:
        self.dispatcher = Dispatcher()
        self.dispatcher.message.register(self._on_message)
        self.dispatcher.callback_query.register(self._on_callback)

    async def _on_message(self, message: Message) -> None:
        event = event_from_message(message)
        if event is not None:
            await self.router.dispatch(event)

    async def _on_callback(self, callback: CallbackQuery) -> None:
        await self.router.dispatch(event_from_callback(callback))

    async def start(self) -> None:
        """Start the shop service."""
        self.logger.info("Starting license-shop...")
        self._start_time = time.time()

        # 1. Load and validate config
        config = load_config(str(self.config_path))
        self.logger.info("Config loaded: %d plan(s)", len(config.catalog.plans))

        # 2. Initialize database
        database = ShopDatabase(config.database.path, self._child("db"))
        await database.initialize()
        self.logger.info("Database initialized: %s", config.database.path)

        # 3. Domain components around the bot
        self.build(config, database, Bot(token=config.telegram.token))
        self._register_handlers()

        # 4. Background tasks
        await self.sweep.start()

        # 5. Metrics
        if config.metrics.enabled:
            self.metrics_server = ShopMetricsServer(self, port=config.metrics.port, logger=self._child("metrics"))
            await self.metrics_server.start()

        # 6. Mark running
        self._running = True
        self.logger.info("license-shop started successfully (v%s)", __version__)

        # 7. Block on polling
        await self.dispatcher.start_polling(self.bot, handle_signals=False, close_bot_session=False)

    async def stop(self) -> None:
        """Gracefully shut down all components in reverse order."""
        if not self._running:
            return
        self.logger.info("Shutting down license-shop...")
        self._running = False

        if self.dispatcher:
            try:
                await self.dispatcher.stop_polling()
            except RuntimeError:
                # Polling already finished
                pass
        if self.metrics_server:
            await self.metrics_server.stop()
        if self.sweep:
            await self.sweep.stop()
        if self.commands:
            await self.commands.stop()
        if self.broadcast:
            await self.broadcast.stop()
        if self.bot:
            await self.bot.session.close()

        self.logger.info("license-shop stopped.")
