"""SealmailService — wires up the pipelines and reacts to host events."""

from __future__ import annotations

import asyncio

import structlog
import uvicorn

from .badges import BadgeRegistry
from .bridge import create_bridge_app
from .cache import CredentialCache
from .cleanup import CacheJanitor
from .config import SealmailConfig
from .configure import PolicyConfigurator
from .detection import is_sealed, was_sealed
from .errors import SealmailError
from .interfaces import MailHost
from .key_service import KeyServiceClient, retrieve_master_keys
from .logging import setup_logging
from .models import Badge, ComposeDetails, DisplayState, MasterKeys, MessageHeader, SendDecision
from .seal import SealPipeline
from .session import SessionCoordinator, SurfaceChannel
from .shutdown import install_signal_handlers, remove_signal_handlers
from .tabs import ComposeTabState, TabStateRegistry
from .unseal import DecryptSession, UnsealPipeline

logger = structlog.get_logger()


class SealmailService:
    """Entry point for a host adapter.

    The host builds a :class:`MailHost`, then either calls ``start()`` /
    ``stop()`` around its own loop or runs::

        asyncio.run(service.run())

    which also serves the surfaces bridge and the cache janitor until
    SIGTERM / SIGINT.  Host events are forwarded to the ``on_*`` methods.
    """

    def __init__(self, config: SealmailConfig, host: MailHost) -> None:
        self.config = config
        self.host = host

        self.cache = CredentialCache(config.cache)
        self.key_service = KeyServiceClient(config.key_service)
        self.channel = SurfaceChannel(host.surfaces)
        self.sessions = SessionCoordinator(self.channel, config.key_service)
        self.tabs = TabStateRegistry(host.notifier, host.surfaces)
        self.badges = BadgeRegistry()
        self.configurator = PolicyConfigurator(host=host, tabs=self.tabs, channel=self.channel)
        self.janitor = CacheJanitor(self.cache, config.cache.cleanup_interval_seconds)

        self.master_keys: MasterKeys | None = None
        self._seal: SealPipeline | None = None
        self._unseal: UnsealPipeline | None = None
        self._shutdown_event = asyncio.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the cache, load master keys and register existing compose tabs."""
        await self.key_service.start()
        await self.cache.start()
        self.master_keys = await retrieve_master_keys(self.key_service, self.cache, self.config.retry)

        self._seal = SealPipeline(
            host=self.host,
            tabs=self.tabs,
            cache=self.cache,
            sessions=self.sessions,
            key_service=self.key_service,
            master_keys=self.master_keys,
            folders=self.config.folders,
        )
        self._unseal = UnsealPipeline(
            host=self.host,
            cache=self.cache,
            sessions=self.sessions,
            key_service=self.key_service,
            master_keys=self.master_keys,
            badges=self.badges,
            folders=self.config.folders,
            relocate=self.config.relocate,
        )

        for tab_id in await self.host.compose.list_compose_tabs():
            await self.on_tab_created(tab_id)
        logger.info("sealmail_started", compose_tabs=len(self.tabs))

    async def stop(self) -> None:
        await self.key_service.stop()
        await self.cache.stop()
        logger.info("sealmail_stopped")

    async def _run_bridge_server(self) -> None:
        """Serve the surfaces bridge until the shutdown event fires."""
        app = create_bridge_app(self.channel)
        config = uvicorn.Config(
            app,
            host=self.config.bridge.host,
            port=self.config.bridge.port,
            log_level="warning",
            log_config=None,
        )
        server = uvicorn.Server(config)

        serve_task = asyncio.create_task(server.serve())
        await self._shutdown_event.wait()
        server.should_exit = True
        await serve_task

    async def run(self) -> None:
        """Start the service and run until shutdown.

        Startup failures such as missing key material propagate to the caller.
        """
        setup_logging(json=self.config.log_json, level=self.config.log_level)
        install_signal_handlers(self._shutdown_event)

        try:
            await self.start()
            try:
                async with asyncio.TaskGroup() as tg:
                    tg.create_task(self.janitor.run(self._shutdown_event))
                    tg.create_task(self._run_bridge_server())
            except* Exception:
                logger.exception("sealmail_task_group_error")
        finally:
            await self.stop()
            remove_signal_handlers()

    @property
    def seal_pipeline(self) -> SealPipeline:
        assert self._seal is not None, "Service not started"
        return self._seal

    @property
    def unseal_pipeline(self) -> UnsealPipeline:
        assert self._unseal is not None, "Service not started"
        return self._unseal

    # ------------------------------------------------------------------
    # Compose events
    # ------------------------------------------------------------------

    async def should_encrypt(self, tab_id: int) -> bool:
        """Replies to sealed mail are encrypted; otherwise the configured default."""
        details = await self.host.compose.get_details(tab_id)
        if details.type == "reply" and details.related_message_id is not None:
            if await was_sealed(self.host.mail_store, details.related_message_id):
                return True
        return self.config.encrypt_by_default

    async def on_tab_created(self, tab_id: int) -> ComposeTabState:
        encrypt = await self.should_encrypt(tab_id)
        return self.tabs.open_tab(tab_id, encrypt=encrypt)

    def on_tab_removed(self, tab_id: int) -> None:
        self.tabs.close_tab(tab_id)

    async def on_encryption_toggled(self, tab_id: int, enabled: bool) -> None:
        if tab_id not in self.tabs:
            return
        await self.tabs.set_encryption(tab_id, enabled)
        # Sealed mail must carry both a plain-text and an HTML placeholder.
        details = await self.host.compose.get_details(tab_id)
        await self.host.compose.set_details(
            tab_id, details.model_copy(update={"delivery_format": "both" if enabled else "auto"})
        )

    def on_notification_dismissed(self, notification_id: str) -> None:
        self.tabs.notification_dismissed(notification_id)

    async def on_configure_clicked(self, tab_id: int, *, sign: bool) -> None:
        await self.configurator.configure(tab_id, sign=sign)

    async def on_before_send(self, tab_id: int, details: ComposeDetails) -> SendDecision:
        return await self.seal_pipeline.on_before_send(tab_id, details)

    async def on_after_send(self, tab_id: int, sent: list[MessageHeader]) -> None:
        await self.seal_pipeline.on_after_send(tab_id, sent)

    # ------------------------------------------------------------------
    # Display events
    # ------------------------------------------------------------------

    async def on_decrypt_clicked(self, message_id: int) -> DecryptSession | None:
        """Run a decryption; failures were already reported to the user."""
        try:
            return await self.unseal_pipeline.decrypt(message_id)
        except SealmailError:
            return None

    async def describe_message(self, message_id: int) -> tuple[DisplayState, list[Badge]]:
        """Which bar the host should show above a displayed message."""
        if await is_sealed(self.host.mail_store, message_id):
            return DisplayState.SEALED, []
        badges = self.badges.get(message_id)
        if badges:
            return DisplayState.DECRYPTED, badges
        if await was_sealed(self.host.mail_store, message_id):
            return DisplayState.WAS_SEALED, []
        return DisplayState.PLAIN, []
