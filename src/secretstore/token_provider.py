from __future__ import annotations

import logging
import shutil
import subprocess
from typing import Callable, List, Optional, Sequence

from .config import LONG_RUNNING_PROVIDER, ONESHOT_PROVIDER, SecretServiceInfo
from .errors import FatalError


logger = logging.getLogger("secretstore")

Runner = Callable[[Sequence[str]], subprocess.Popen]


def _default_runner(argv: Sequence[str]) -> subprocess.Popen:
    return subprocess.Popen(list(argv))


class TokenProvider:
    """
    Launches the external token provider that issues per-service tokens.

    - "oneshot": run to completion; a non-zero exit status is fatal.
    - "long-running": start and detach; the provider keeps its own
      token-issuing token fresh from then on.
    """

    def __init__(self, runner: Optional[Runner] = None) -> None:
        self._runner = runner or _default_runner
        self._executable: Optional[str] = None
        self._args: List[str] = []
        self._type = ONESHOT_PROVIDER
        self.process: Optional[subprocess.Popen] = None

    def set_configuration(self, info: SecretServiceInfo) -> None:
        if not info.token_provider:
            raise FatalError("TokenProvider is a required configuration setting")
        exe = shutil.which(info.token_provider)
        if exe is None:
            raise FatalError(f"token provider executable not found: {info.token_provider}")
        self._executable = exe
        self._args = list(info.token_provider_args)
        self._type = info.token_provider_type

    def launch(self) -> None:
        if self._executable is None:
            raise FatalError("token provider launched before configuration")
        logger.info("launching token provider %s (%s)", self._executable, self._type)
        try:
            self.process = self._runner([self._executable, *self._args])
        except OSError as exc:
            raise FatalError(f"failed to launch token provider: {exc}") from exc

        if self._type == LONG_RUNNING_PROVIDER:
            logger.info("token provider running in background (pid %s)", self.process.pid)
            return

        rc = self.process.wait()
        if rc != 0:
            raise FatalError(f"token provider exited with status {rc}")
        logger.info("token provider completed successfully")
