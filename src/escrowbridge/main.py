"""Main entry point - runs the API and the scheduler sweep loop."""

import asyncio
import logging
import signal

import uvicorn

from escrowbridge.api.app import create_app
from escrowbridge.config import get_settings
from escrowbridge.ledger.database import close_db, init_db
from escrowbridge.services.factory import create_services
from escrowbridge.services.scheduler import sweep_forever

logger = logging.getLogger(__name__)


class Application:
    """Main application that runs the API and the scheduler."""

    def __init__(self):
        self.settings = get_settings()
        self.services = None
        self._shutdown_event = asyncio.Event()

    async def start(self):
        """Start all services."""
        log_level = logging.DEBUG if self.settings.debug else logging.INFO
        logging.basicConfig(
            level=log_level,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        )

        logger.info("Starting EscrowBridge...")
        logger.info(f"Environment: {self.settings.environment} (dry_run={self.settings.dry_run})")

        await init_db()
        logger.info("Database initialized")
        self.services = create_services(self.settings)

        tasks = [
            asyncio.create_task(self._run_api()),
            asyncio.create_task(self._run_scheduler()),
        ]

        await self._shutdown_event.wait()

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await close_db()
        logger.info("Cleanup complete")

    async def _run_api(self):
        """Run the FastAPI server."""
        try:
            app = create_app(self.services)
            config = uvicorn.Config(
                app,
                host=self.settings.api_host,
                port=self.settings.api_port,
                log_level="debug" if self.settings.debug else "info",
            )
            server = uvicorn.Server(config)
            logger.info(f"Starting API server on {self.settings.api_host}:{self.settings.api_port}")
            await server.serve()
        except asyncio.CancelledError:
            logger.info("API server cancelled")

    async def _run_scheduler(self):
        """Sweep deadlines and executions at the configured interval."""
        interval = self.settings.scheduler_interval_seconds
        try:
            await sweep_forever(self.services.deals, self.services.driver, interval)
        except asyncio.CancelledError:
            logger.info("Scheduler cancelled")

    def shutdown(self):
        """Signal shutdown."""
        logger.info("Shutdown requested")
        self._shutdown_event.set()


def main():
    """Main entry point."""
    app = Application()

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.shutdown)

    try:
        loop.run_until_complete(app.start())
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received")
    finally:
        loop.close()


if __name__ == "__main__":
    main()
