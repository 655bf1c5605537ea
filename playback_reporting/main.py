import argparse
import asyncio
import logging
import signal
import sys

import uvicorn

from .backup import export_backup, import_backup
from .config import settings
from .database import db
from .jellyfin_client import jellyfin_api, jellyfin_client
from .monitor import PlaybackMonitor

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


class PlaybackReportingServer:
    def __init__(self):
        self._shutdown_event = asyncio.Event()
        self.monitor = PlaybackMonitor(
            db,
            jellyfin_api.get_session,
            confirmation_delay_seconds=settings.confirmation_delay_seconds,
            progress_debounce_seconds=settings.progress_debounce_seconds,
        )

    async def start(self) -> None:
        """Start the playback reporting server."""
        logger.info("Starting playback reporting...")

        await db.connect()
        logger.info(f"Connected to database: {settings.database_path}")

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, lambda s=sig: asyncio.create_task(self.shutdown()))

        jellyfin_client.set_event_handler(self.monitor.dispatch)
        ws_task = asyncio.create_task(self._run_websocket_client())
        web_task = asyncio.create_task(self._run_web_server())

        logger.info(f"Reports API available at http://localhost:{settings.api_port}")

        await self._shutdown_event.wait()

        ws_task.cancel()
        web_task.cancel()
        for task in (ws_task, web_task):
            try:
                await task
            except asyncio.CancelledError:
                pass

        await jellyfin_client.stop()
        await self.monitor.close()
        await db.close()
        logger.info("Playback reporting stopped")

    async def shutdown(self) -> None:
        """Signal shutdown."""
        logger.info("Shutting down...")
        self._shutdown_event.set()

    async def _run_websocket_client(self) -> None:
        """Run the Jellyfin WebSocket client."""
        try:
            await jellyfin_client.start()
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.error(f"WebSocket client error: {e}")

    async def _run_web_server(self) -> None:
        """Run the FastAPI web server."""
        from dashboard.app import app

        app.state.monitor = self.monitor
        config = uvicorn.Config(
            app,
            host="0.0.0.0",
            port=settings.api_port,
            log_level=settings.log_level.lower(),
        )
        server = uvicorn.Server(config)
        try:
            await server.serve()
        except asyncio.CancelledError:
            pass


async def run_export() -> str:
    await db.connect()
    try:
        return await export_backup(db)
    finally:
        await db.close()


async def run_import(payload: str) -> int:
    await db.connect()
    try:
        return await import_backup(db, payload)
    finally:
        await db.close()


def main() -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Playback Reporting - Jellyfin usage telemetry")
    subparsers = parser.add_subparsers(dest="command", help="Commands")
    subparsers.add_parser("export", help="Write all playback records as JSON to stdout")
    subparsers.add_parser("import", help="Load playback records from a JSON payload on stdin")

    args = parser.parse_args()

    if args.command == "export":
        sys.stdout.write(asyncio.run(run_export()))
        sys.stdout.write("\n")
        return
    if args.command == "import":
        count = asyncio.run(run_import(sys.stdin.read()))
        logger.info(f"Imported {count} playback records")
        return

    if not settings.jellyfin_api_key:
        logger.error("JELLYFIN_API_KEY is not set. Please set it in .env file.")
        sys.exit(1)

    server = PlaybackReportingServer()
    asyncio.run(server.start())


if __name__ == "__main__":
    main()
