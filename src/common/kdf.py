from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Type

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF


SALT_FILE = "kdf-salt.dat"
SALT_SIZE = 32


class Kdf:
    """
    HKDF key derivation with a salt persisted next to the init response.

    - The salt is generated once (32 random bytes, mode 0600) and reused on every
      later run, so the same IKM and `info` always derive the same key.
    - `info` provides domain separation, e.g. one key per key share.
    """

    def __init__(
        self,
        persist_dir: os.PathLike[str] | str,
        algorithm: Type[hashes.HashAlgorithm] = hashes.SHA256,
    ) -> None:
        self._salt_path = Path(persist_dir) / SALT_FILE
        self._algorithm = algorithm
        self._salt: Optional[bytes] = None

    @property
    def salt_path(self) -> Path:
        return self._salt_path

    def salt(self) -> bytes:
        """Load the persisted salt, creating it on first use."""
        if self._salt is not None:
            return self._salt
        if not self._salt_path.exists():
            self._salt_path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
            fd = os.open(self._salt_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o600)
            with os.fdopen(fd, "wb") as f:
                f.write(os.urandom(SALT_SIZE))
        salt = self._salt_path.read_bytes()
        if len(salt) != SALT_SIZE:
            raise ValueError(
                f"{self._salt_path} must hold exactly {SALT_SIZE} bytes, got {len(salt)}"
            )
        self._salt = salt
        return salt

    def derive_key(self, ikm: bytes | bytearray, key_len: int, info: str) -> bytes:
        hkdf = HKDF(
            algorithm=self._algorithm(),
            length=key_len,
            salt=self.salt(),
            info=info.encode("utf-8"),
        )
        return hkdf.derive(ikm)
