from __future__ import annotations

import logging
import threading
from typing import Optional

from common.vault_client import SecretStoreClient

from .errors import BootstrapCancelled, FatalError


logger = logging.getLogger("secretstore")

HEALTHY_STATUS = 200


class HealthGate:
    """
    Block until the secret store answers `sys/health` with 200.

    Right after unseal the engine returns errors for a warm-up period. A
    background thread polls on a fixed interval and sets a one-shot event on
    the first healthy answer; `wait()` blocks on that event.

    There is no deadline by default; pass `timeout` to bound the wait.
    """

    def __init__(self, client: SecretStoreClient, *, poll_interval: float = 1.0) -> None:
        self._client = client
        self._poll_interval = poll_interval
        self._healthy = threading.Event()
        self._done = threading.Event()

    def wait(self, stop: Optional[threading.Event] = None, *, timeout: Optional[float] = None) -> None:
        """
        Raises:
        - BootstrapCancelled if `stop` is set before the engine is healthy.
        - FatalError if `timeout` elapses first.
        """
        stop = stop or threading.Event()
        poller = threading.Thread(target=self._poll, name="secretstore-health", daemon=True)
        poller.start()
        waited = 0.0
        try:
            # Wake up periodically so a stop request is observed promptly
            while not self._healthy.wait(self._poll_interval):
                if stop.is_set():
                    raise BootstrapCancelled("stop requested while waiting for vault to become healthy")
                waited += self._poll_interval
                if timeout is not None and waited >= timeout:
                    raise FatalError(f"vault not healthy after {timeout} seconds")
        finally:
            self._done.set()
            poller.join(timeout=self._poll_interval * 2)
        logger.info("vault is healthy and accepting requests")

    def _poll(self) -> None:
        while not self._done.wait(self._poll_interval):
            status = self._client.health_check()
            if status == HEALTHY_STATUS:
                self._healthy.set()
                return
            logger.debug("vault not ready yet (status code: %d)", status)
