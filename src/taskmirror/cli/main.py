# src/taskmirror/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds the Engine, starts it, runs the console REPL and
shuts everything down (pending edits flushed, local snapshot saved).
"""

from __future__ import annotations

import asyncio
import logging

from ..cli.bootstrap import create_engine, save_remote_documents
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..core.engine import Engine
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def _shutdown(engine: Engine, settings) -> None:
    """Best-effort shutdown (no exceptions should escape)."""
    try:
        await engine.stop()
    except Exception:
        logger.exception("Engine stop failed.")

    try:
        save_remote_documents(engine.remote, settings.remote_snapshot_path)
    except Exception:
        logger.exception("Failed to save remote documents.")

    try:
        close = getattr(engine.fallback, "close", None)
        if close is not None:
            close()
    except Exception:
        logger.debug("Fallback store close failed.", exc_info=True)


async def run(settings) -> None:
    engine = create_engine(settings=settings)
    await engine.start()
    try:
        await run_console_loop(engine, app_name=settings.app_name)
    finally:
        await _shutdown(engine, settings)


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_dir = getattr(settings, "data_dir", ".local/taskmirror")
    setup_logging(log_dir=log_dir, console_level=console_level)

    logger.info("Starting %s...", getattr(settings, "app_name", "taskmirror"))

    try:
        asyncio.run(run(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down...")
    logger.info("Bye.")


if __name__ == "__main__":
    main()
