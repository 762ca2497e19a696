# src/taskmark/cli/main.py

"""
CLI entrypoint.

Initializes logging, builds AppState, restores the saved session, then runs the
console REPL until /exit, EOF or a signal.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import signal

from ..cli.bootstrap import activate_session, create_app_state, dispose_app_state
from ..config import get_settings
from ..connectors.console_connector import run_console_loop
from ..logging_setup import setup_logging

logger = logging.getLogger(__name__)


async def _run(settings) -> None:
    state = create_app_state(settings=settings)
    try:
        await state.auth.initialize()
        await activate_session(state)

        console = asyncio.create_task(run_console_loop(state))

        loop = asyncio.get_running_loop()

        def _handle_signal(signum: int) -> None:
            logger.info("Signal %s received, shutting down...", signum)
            console.cancel()

        for sig in (signal.SIGINT, signal.SIGTERM):
            # Not every platform supports loop signal handlers.
            with contextlib.suppress(NotImplementedError, RuntimeError):
                loop.add_signal_handler(sig, _handle_signal, sig)

        with contextlib.suppress(asyncio.CancelledError):
            await console
    finally:
        await dispose_app_state(state)


def main() -> None:
    settings = get_settings()

    level_name = str(getattr(settings, "log_level", "INFO")).upper()
    console_level = getattr(logging, level_name, logging.INFO)

    log_dir = getattr(settings, "data_dir", ".local/taskmark")
    setup_logging(log_dir=log_dir, console_level=console_level)

    logger.info("Starting %s...", getattr(settings, "app_name", "taskmark"))

    try:
        asyncio.run(_run(settings))
    except ValueError as e:
        # Raised by the backend client when the Supabase URL/key are missing.
        logger.error("%s", e)
        raise SystemExit(2) from None
    except KeyboardInterrupt:
        pass

    logger.info("Bye.")


if __name__ == "__main__":
    main()
