"""
Relay Worker Thread

Runs a RelayClient on a dedicated thread with its own event loop, so
network I/O and decryption never block the API or the renderer.
"""

import asyncio
import logging
import threading
from typing import Optional

from .client import RelayClient
from .models import ConnectionStatus

logger = logging.getLogger(__name__)


class RelayWorker(threading.Thread):
    """Background thread owning one RelayClient."""

    def __init__(self, client: RelayClient, name: str = "relay-worker"):
        super().__init__(name=name, daemon=True)
        self.client = client
        self.result: Optional[ConnectionStatus] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._ready = threading.Event()

    def run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._ready.set()

        try:
            self.result = loop.run_until_complete(self.client.run())
        except Exception as e:
            logger.exception("Relay worker crashed: %s", e)
            raise
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            self._loop = None
            logger.info("Relay worker stopped")

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        """Signal the client to stop and wait for the thread to exit."""
        self._ready.wait(timeout)
        loop = self._loop
        if loop is not None and not loop.is_closed():
            try:
                loop.call_soon_threadsafe(self.client.stop)
            except RuntimeError:
                # Loop closed between the check and the call.
                logger.debug("Relay worker loop already closed")
        if self.is_alive():
            self.join(timeout)
            if self.is_alive():
                logger.warning("Relay worker did not stop within %.1fs", timeout)
