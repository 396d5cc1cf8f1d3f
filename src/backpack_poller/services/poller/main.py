"""Poller Service - subscribes to Backpack stream channels and logs every message."""

import asyncio
import logging
import os
import signal
import sys
from datetime import datetime, timezone
from typing import Optional

from .clients.backpack_ws import BackpackWSClient
from .config.settings import PollerSettings, load_settings
from .utils.logging import setup_logging


logger = logging.getLogger(__name__)


class PollerService:
    """Owns the WebSocket client and wires process signals to its shutdown."""

    def __init__(self, config: PollerSettings):
        self.config = config
        self.client: Optional[BackpackWSClient] = None
        self._shutdown_event = asyncio.Event()

        setup_logging(self.config.logging, self.config.service_name)
        logger.info("Poller Service initialized")

    async def start(self):
        """Run until a shutdown is requested, then close the stream cleanly."""
        logger.info(
            f"Starting Poller Service: {self.config.backpack.ws_url} "
            f"channels={self.config.backpack.channels}"
        )

        self.client = BackpackWSClient(self.config.backpack, self.config.reconnect)
        self._setup_signal_handlers()
        self.client.start()

        await self._shutdown_event.wait()

        logger.info("Shutting down Poller Service")
        self.client.stop()
        await self.client.wait_closed()
        logger.info("Poller Service stopped")

    def request_shutdown(self):
        self._shutdown_event.set()

    def handle_signal(self, signum):
        """First signal shuts down gracefully; a second one exits immediately."""
        if self._shutdown_event.is_set():
            logger.warning(f"Received signal {signum.name} again, exiting without waiting for close")
            raise SystemExit(0)

        logger.info(f"Received signal {signum.name}, initiating shutdown")
        self.request_shutdown()

    def _setup_signal_handlers(self):
        """Setup signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, self.handle_signal, signum)

    async def health_check(self) -> dict:
        """Perform health check."""
        health_status = {
            "service": self.config.service_name,
            "status": "stopped",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "components": {}
        }

        if self.client:
            client_health = await self.client.health_check()
            health_status["components"]["ws_client"] = client_health
            health_status["status"] = client_health["status"]

        return health_status


async def main(config_file: Optional[str] = None):
    """Load configuration and run the service until signalled."""
    config_file = config_file or os.getenv("CONFIG_FILE")

    try:
        config = load_settings(config_file)
    except Exception as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    service = PollerService(config)
    try:
        await service.start()
    except Exception as e:
        logger.error(f"Service failed: {e}", exc_info=True)
        sys.exit(1)


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
