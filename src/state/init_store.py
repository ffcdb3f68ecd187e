from __future__ import annotations

import json
import os
from pathlib import Path

from pydantic import ValidationError

from .models import InitResponse


FILE_MODE = 0o600
DIR_MODE = 0o700


class InitStoreError(RuntimeError):
    """The init response file could not be read or written."""


def _dump_init_json(resp: InitResponse) -> bytes:
    return json.dumps(resp.model_dump(), separators=(",", ":"), sort_keys=True).encode("utf-8")


def _load_init_json(data: bytes) -> InitResponse:
    raw = json.loads(data.decode("utf-8"))
    return InitResponse.model_validate(raw)


class InitResponseStore:
    """
    Local file persistence for the secret store init response.

    - The file is JSON at `<folder>/<filename>`, written owner read/write only
      (0600) and opened read-only for loading.
    - Encryption is the caller's concern; this store persists whatever form of
      InitResponse it is given.
    - Single writer is assumed; there is no file locking.
    """

    def __init__(self, folder: os.PathLike[str] | str, filename: str) -> None:
        self._path = Path(folder) / filename

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def read(self) -> InitResponse:
        """Load the init response.

        Raises:
        - InitStoreError if the file is missing, unreadable, or not a valid init response.
        """
        try:
            fd = os.open(self._path, os.O_RDONLY)
            with os.fdopen(fd, "rb") as f:
                data = f.read()
        except OSError as ex:
            raise InitStoreError(f"could not read master key shares file {self._path}: {ex}") from ex

        try:
            return _load_init_json(data)
        except (ValueError, ValidationError) as ex:
            raise InitStoreError(f"unable to parse init response file {self._path}") from ex

    def write(self, resp: InitResponse) -> None:
        """Persist the init response, replacing any previous content."""
        payload = _dump_init_json(resp)
        try:
            self._path.parent.mkdir(mode=DIR_MODE, parents=True, exist_ok=True)
            fd = os.open(self._path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, FILE_MODE)
            with os.fdopen(fd, "wb") as f:
                # umask may have widened the mode on an existing file
                os.fchmod(f.fileno(), FILE_MODE)
                f.write(payload)
        except OSError as ex:
            raise InitStoreError(f"unable to write init response file {self._path}: {ex}") from ex
