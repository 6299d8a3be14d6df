"""
LunaChat server - main entry point.

Opens the forum database in ./db, checks table versions and serves the
FastAPI application with uvicorn.

Usage:
    lunachat
    python -m lunachat.main

Configuration is via LUNACHAT_* environment variables, see config.py.

Invariants:
    - The server refuses to start while a non-empty table is behind its
      current version (run lunachat-migrate first)
    - The database is closed on every exit path

How to change safely:
    - Keep startup checks in the app lifespan so tests exercise them
    - Test shutdown with an SSE client connected
"""

from __future__ import annotations

import asyncio
import logging
import sys

import json_log_formatter
import uvicorn
from pydantic import ValidationError

from .api import create_app
from .config import Settings
from .errors import ForumError
from .state import DEFAULT_PATH, ForumState

logger = logging.getLogger(__name__)


def setup_logging(settings: Settings) -> None:
    """Configure logging based on settings.

    Args:
        settings: Server settings
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.log_format == "json":
        formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]

    # Reduce noise from libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("multipart").setLevel(logging.WARNING)


class Server:
    """LunaChat server.

    Owns the forum state and the uvicorn server for one process lifetime.

    Example:
        >>> server = Server(Settings())
        >>> await server.run()
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or Settings()
        self.state: ForumState | None = None
        self._uvicorn: uvicorn.Server | None = None

    async def run(self) -> bool:
        """Open the database and serve until uvicorn exits (SIGINT/SIGTERM).

        Returns:
            False if the application failed to start
        """
        logger.info(
            "Starting LunaChat server",
            extra={"host": self.settings.host, "port": self.settings.port},
        )
        self.state = await ForumState.open(DEFAULT_PATH)
        try:
            app = create_app(self.settings, self.state)
            config = uvicorn.Config(
                app,
                host=self.settings.host,
                port=self.settings.port,
                log_config=None,
                lifespan="on",
            )
            self._uvicorn = uvicorn.Server(config)
            await self._uvicorn.serve()
            return self._uvicorn.started
        finally:
            self.stop()

    def stop(self) -> None:
        if self.state is not None:
            self.state.close()
            self.state = None
            logger.info("LunaChat server stopped")


def main() -> None:
    """Main entry point."""
    try:
        settings = Settings()
    except ValidationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(settings)
    server = Server(settings)

    try:
        started = asyncio.run(server.run())
    except KeyboardInterrupt:
        return
    except ForumError as e:
        logger.error(f"Server startup failed: {e.message}", extra={"code": e.code}, exc_info=True)
        sys.exit(1)

    if not started:
        logger.error("Server startup failed, see errors above")
        sys.exit(1)


if __name__ == "__main__":
    main()
