"""Termination handling: release device subscriptions before exit.

On SIGTERM/SIGINT, or on an exception nobody handled inside the event
loop, the controller fires UNSUBSCRIBE for every registered
subscription without waiting for acknowledgments and then sets the
shutdown event.  The bridge's teardown gives the fired requests a short
grace period before the process exits.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from upnp2mqtt._cli import EXIT_OK, EXIT_RUNTIME_ERROR
from upnp2mqtt._context import BridgeContext
from upnp2mqtt._subscriptions import SubscriptionManager

logger = logging.getLogger(__name__)


class LifecycleController:
    """Installs the termination hooks of one bridge run."""

    def __init__(self, ctx: BridgeContext, manager: SubscriptionManager) -> None:
        self._ctx = ctx
        self._manager = manager
        self._released: set[str] = set()
        self._terminating = False
        self.exit_code = EXIT_OK

    def install(self, loop: asyncio.AbstractEventLoop | None = None) -> None:
        """Register signal handlers and the loop exception handler."""
        loop = loop or asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.terminate, sig.name)
        loop.set_exception_handler(self._on_loop_exception)

    def terminate(self, reason: str = "shutdown") -> int:
        """Unsubscribe everything without waiting, then request shutdown.

        Safe to call repeatedly: each call only fires for subscriptions
        added since the previous one.  Returns the number of UNSUBSCRIBE
        requests fired.
        """
        if not self._terminating:
            self._terminating = True
            logger.info("Received %s, releasing %d device(s)", reason, len(self._ctx.registry))
        fired = 0
        for usn in self._ctx.registry.usns():
            fired += self._manager.unsubscribe_all_nowait(usn, self._released)
        self._ctx.shutdown_event.set()
        return fired

    def fatal(self, error: BaseException | None, message: str = "") -> int:
        """Handle an unrecoverable fault: release, then stop with an error."""
        logger.critical("Fatal error: %s", message or error, exc_info=error)
        self.exit_code = EXIT_RUNTIME_ERROR
        return self.terminate("fatal error")

    def _on_loop_exception(
        self,
        loop: asyncio.AbstractEventLoop,
        context: dict[str, Any],
    ) -> None:
        error = context.get("exception")
        if error is None:
            # Resource warnings and the like, not faults.
            loop.default_exception_handler(context)
            return
        self.fatal(error, context.get("message", ""))
