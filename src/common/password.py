from __future__ import annotations

import base64
import secrets
import shutil
import subprocess
from typing import Callable, Dict, Optional, Sequence


DEFAULT_PROVIDER = "default"
RANDOM_BYTES = 33  # 44 characters once base64 encoded


class PasswordGenerationError(RuntimeError):
    """The configured password strategy failed to produce a password."""


def _random_password(_args: Sequence[str]) -> str:
    return base64.b64encode(secrets.token_bytes(RANDOM_BYTES)).decode("ascii")


_BUILTIN: Dict[str, Callable[[Sequence[str]], str]] = {
    "": _random_password,
    DEFAULT_PROVIDER: _random_password,
}


class PasswordGenerator:
    """
    Named password-generation strategy.

    - An empty name or "default" uses the built-in random generator.
    - Any other name is an executable (resolved via PATH) that prints the
      password on stdout; `args` are passed through unchanged.
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        args: Sequence[str] = (),
        *,
        timeout: float = 30.0,
    ) -> None:
        self._provider = (provider or "").strip()
        self._args = list(args)
        self._timeout = timeout

    @property
    def provider(self) -> str:
        return self._provider or DEFAULT_PROVIDER

    def generate(self) -> str:
        builtin = _BUILTIN.get(self._provider)
        if builtin is not None:
            return builtin(self._args)
        return self._run_external()

    def _run_external(self) -> str:
        exe = shutil.which(self._provider)
        if exe is None:
            raise PasswordGenerationError(f"password provider not found: {self._provider}")
        try:
            proc = subprocess.run(
                [exe, *self._args],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise PasswordGenerationError(f"password provider {self._provider} failed: {exc}") from exc
        if proc.returncode != 0:
            raise PasswordGenerationError(
                f"password provider {self._provider} exited with status {proc.returncode}"
            )
        password = proc.stdout.decode("utf-8", errors="strict").strip()
        if not password:
            raise PasswordGenerationError(f"password provider {self._provider} printed nothing")
        return password
