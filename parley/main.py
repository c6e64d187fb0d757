"""Composition root for an embedding UI shell.

Typical use from the shell's event loop::

    session = await create_session()
    await session.orchestrator.connect()
    ...
    await shutdown(session)
"""
import asyncio
import logging
import threading
from typing import Any, Dict, Optional

from parley.app.config.app_config import GlobalAppConfig, load_app_config
from parley.app.config.logging_config import setup_logging
from parley.app.event_bus import EventBus
from parley.app.services.audio.audio_service import AudioService
from parley.app.services.session.session_orchestrator import SessionOrchestrator
from parley.app.services.storage.credential_store import CredentialStore
from parley.app.services.storage.history_service import HistoryService
from parley.app.services.storage.storage_service import StorageService
from parley.app.services.transport.websocket_channel import WebSocketChannel

logger = logging.getLogger(__name__)


class SessionServiceInitializer:
    """Builds and wires the session services in dependency order.

    Storage comes first because the orchestrator restores usage counters
    from it, then the transport and audio layers, then the orchestrator,
    whose subscriptions are registered before the bus worker starts.
    """

    def __init__(self, event_bus: EventBus, config: GlobalAppConfig, loop: asyncio.AbstractEventLoop) -> None:
        self.event_bus = event_bus
        self.config = config
        self.loop = loop
        self.services: Dict[str, Any] = {}
        self._services_lock = threading.RLock()

    async def initialize_all(self) -> Dict[str, Any]:
        self._init_storage_services()
        self._init_transport_and_audio()
        await self._init_orchestrator()
        await self.event_bus.start_worker()
        logger.info("Session services initialized")
        with self._services_lock:
            return dict(self.services)

    def _init_storage_services(self) -> None:
        with self._services_lock:
            storage = StorageService(config=self.config)
            self.services["storage"] = storage
            self.services["history"] = HistoryService(storage=storage, config=self.config)
            self.services["credentials"] = CredentialStore(storage=storage, config=self.config.credentials)

    def _init_transport_and_audio(self) -> None:
        with self._services_lock:
            self.services["channel"] = WebSocketChannel(event_bus=self.event_bus, config=self.config.transport)
            self.services["audio"] = AudioService(
                event_bus=self.event_bus, config=self.config, main_event_loop=self.loop
            )

    async def _init_orchestrator(self) -> None:
        with self._services_lock:
            orchestrator = SessionOrchestrator(
                event_bus=self.event_bus,
                config=self.config,
                audio_service=self.services["audio"],
                channel=self.services["channel"],
                history=self.services["history"],
                credentials=self.services["credentials"],
                storage=self.services["storage"],
                main_event_loop=self.loop,
            )
            self.services["orchestrator"] = orchestrator
        await orchestrator.initialize()
        orchestrator.setup_subscriptions()


class Session:
    """Handle returned to the UI shell."""

    def __init__(self, config: GlobalAppConfig, event_bus: EventBus, services: Dict[str, Any]) -> None:
        self.config = config
        self.event_bus = event_bus
        self.services = services

    @property
    def orchestrator(self) -> SessionOrchestrator:
        return self.services["orchestrator"]

    @property
    def history(self) -> HistoryService:
        return self.services["history"]

    @property
    def credentials(self) -> CredentialStore:
        return self.services["credentials"]


async def create_session(config_path: Optional[str] = None, config: Optional[GlobalAppConfig] = None) -> Session:
    """Load configuration, configure logging and start every session service on the running loop."""
    app_config = config or load_app_config(config_path)
    setup_logging(app_config.logging)
    logger.info("Starting parley session core")

    event_bus = EventBus()
    initializer = SessionServiceInitializer(event_bus=event_bus, config=app_config, loop=asyncio.get_running_loop())
    services = await initializer.initialize_all()
    return Session(config=app_config, event_bus=event_bus, services=services)


async def shutdown(session: Session) -> None:
    """Disconnect, stop capture and release every service. Safe to call once per session."""
    logger.info("Shutting down parley session core")
    try:
        await session.orchestrator.shutdown()
        await session.services["audio"].shutdown()
    finally:
        await session.event_bus.stop_worker()
        await session.services["storage"].shutdown()
    logger.info("Shutdown complete")
