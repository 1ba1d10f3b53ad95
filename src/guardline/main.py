"""
Guardline Main Application Entry Point

Initializes configuration, logging and the database, wires the emergency
stores, notification gateway and coordinator into the REST API, and serves it
with uvicorn until a shutdown signal arrives.
"""

import asyncio
import contextlib
import signal
import sys
from typing import Any, Dict, Optional

import uvicorn

from .core.config import ConfigurationManager
from .core.database import DatabaseManager, initialize_database
from .core.logging import get_logger, initialize_logging
from .services.emergency.coordinator import EmergencyCoordinator
from .services.emergency.notifications import (
    LoggingNotificationGateway, NotificationDispatcher, NotificationGateway,
    WebSocketManager, WebSocketNotificationGateway
)
from .services.emergency.sos_store import SosAlertStore
from .services.location.history_store import LocationHistoryStore
from .services.location.share_store import LocationShareStore
from .services.web.api import create_app


class _EmbeddedServer(uvicorn.Server):
    """uvicorn server that leaves signal handling to the application"""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


def build_coordinator(config_manager: ConfigurationManager, db: DatabaseManager,
                      websocket_manager: WebSocketManager) -> EmergencyCoordinator:
    """Wire stores, gateway and dispatcher into a coordinator"""
    emergency_settings = config_manager.get_emergency_settings()
    location_settings = config_manager.get_location_settings()
    lock_timeout = emergency_settings.lock_timeout_seconds

    history_store = LocationHistoryStore(db, lock_timeout=lock_timeout)
    share_store = LocationShareStore(db, history_store, location_settings,
                                     lock_timeout=lock_timeout)
    sos_store = SosAlertStore(db, emergency_settings)

    gateway: NotificationGateway
    if config_manager.get('notifications.gateway', 'websocket') == 'websocket':
        gateway = WebSocketNotificationGateway(websocket_manager)
    else:
        gateway = LoggingNotificationGateway()

    return EmergencyCoordinator(
        sos_store, share_store, history_store, NotificationDispatcher(gateway),
        emergency_settings, location_settings
    )


class GuardlineApplication:
    """Main Guardline application class"""

    def __init__(self, config_dir: str = "config"):
        self.config_dir = config_dir
        self.config_manager: Optional[ConfigurationManager] = None
        self.db_manager: Optional[DatabaseManager] = None
        self.coordinator: Optional[EmergencyCoordinator] = None
        self.websocket_manager = WebSocketManager()
        self.app = None
        self.server: Optional[uvicorn.Server] = None
        self.logger = None

        # Application state
        self.running = False
        self.shutdown_event = asyncio.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    async def initialize(self):
        """Initialize all application components"""
        self.config_manager = ConfigurationManager(self.config_dir)
        self.config_manager.load_config()

        initialize_logging(self.config_manager.config)
        self.logger = get_logger('main')
        self.logger.info("Initializing Guardline...")

        self.db_manager = initialize_database(
            self.config_manager.get('database.path', 'data/guardline.db'),
            self.config_manager.get('database.max_connections', 10),
            self.config_manager.get('database.connection_wait', 5.0),
            float(self.config_manager.get('database.timeout_seconds', 10.0))
        )

        self.coordinator = build_coordinator(
            self.config_manager, self.db_manager, self.websocket_manager
        )

        web_config: Dict[str, Any] = dict(self.config_manager.get_section('web'))
        web_config['debug'] = self.config_manager.get('app.debug', False)
        self.app = create_app(self.coordinator, self.websocket_manager, web_config)

        self.logger.info("Guardline initialized")

    async def start(self):
        """Start the application and serve until shutdown"""
        await self.initialize()

        self._loop = asyncio.get_running_loop()
        signal.signal(signal.SIGTERM, self._signal_handler)
        signal.signal(signal.SIGINT, self._signal_handler)

        server_config = uvicorn.Config(
            self.app,
            host=self.config_manager.get('web.host', '0.0.0.0'),
            port=self.config_manager.get('web.port', 8080),
            log_config=None
        )
        self.server = _EmbeddedServer(server_config)
        server_task = asyncio.create_task(self.server.serve())

        self.running = True
        self.logger.info(f"Guardline listening on {server_config.host}:{server_config.port}")

        await self.shutdown_event.wait()
        self.logger.info("Shutdown signal received")
        self.server.should_exit = True
        await server_task
        await self.graceful_shutdown()

    def _signal_handler(self, signum, frame):
        """Handle shutdown signals"""
        self.logger.info(f"Received signal {signum}")
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self.shutdown_event.set)

    async def graceful_shutdown(self, timeout: float = 10.0):
        """Deliver pending notifications and release the database"""
        if not self.running:
            return
        self.running = False

        if self.coordinator is not None:
            await self.coordinator.drain_notifications(timeout)
        if self.db_manager is not None:
            self.db_manager.close()

        self.logger.info("Guardline stopped")


async def main():
    """Main entry point"""
    app = GuardlineApplication()

    try:
        await app.start()
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
    except Exception as e:
        print(f"Application failed to start: {e}")
        sys.exit(1)


def run():
    """Console script entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        print("\nApplication interrupted")
        sys.exit(0)


if __name__ == "__main__":
    run()
