"""Stop the service on SIGTERM / SIGINT."""

from __future__ import annotations

import asyncio
import signal

import structlog

logger = structlog.get_logger()

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


def install_signal_handlers(shutdown_event: asyncio.Event) -> None:
    """Set *shutdown_event* on SIGTERM or SIGINT.

    Must be called from the running event loop.  The cache janitor and the
    surfaces bridge both stop when the event is set.
    """
    loop = asyncio.get_running_loop()

    def _on_signal(sig: signal.Signals) -> None:
        if shutdown_event.is_set():
            logger.info("shutdown_already_requested", signal=sig.name)
            return
        logger.info("shutdown_requested", signal=sig.name)
        shutdown_event.set()

    for sig in SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _on_signal, sig)


def remove_signal_handlers() -> None:
    """Hand the shutdown signals back to the host once the service stopped."""
    loop = asyncio.get_running_loop()
    for sig in SHUTDOWN_SIGNALS:
        loop.remove_signal_handler(sig)
