"""
Vault master key encryption: at-rest protection of the init response key shares.

Each key share is encrypted with AES-256-GCM under its own key, derived by
HKDF from externally supplied input keying material (IKM) and the info string
"vault<index>". The IKM is read once at startup and must be wiped with
`wipe_ikm()` on every exit path once `load_ikm()` has been attempted.

Security Note:
    Never log IKM, derived keys, or key shares. Derived keys live only for the
    duration of one encrypt/decrypt call.
"""
from __future__ import annotations

import base64
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from common.hex_reader import PipedHexReader
from common.kdf import Kdf
from state.models import InitResponse


logger = logging.getLogger("secretstore")

NONCE_SIZE = 12  # 96-bit nonce
KEY_LENGTH = 32  # AES-256


class EncryptionError(RuntimeError):
    """Key shares could not be encrypted or decrypted."""


class VMKEncryption:
    def __init__(self, hex_reader: PipedHexReader, kdf: Kdf) -> None:
        self._hex_reader = hex_reader
        self._kdf = kdf
        self._ikm: Optional[bytearray] = None
        self._encrypting = False
        self.wipe_count = 0

    def load_ikm(self, hook: str) -> None:
        """Read IKM from the `hook` executable and prepare the KDF salt.

        Encryption is enabled only if both succeed; the flag is never changed
        again for the lifetime of this object.
        """
        if self._ikm is not None:
            raise EncryptionError("IKM already loaded")
        self._ikm = self._hex_reader.read_hex_bytes_from_exe(hook)
        self._kdf.salt()
        self._encrypting = True

    def is_encrypting(self) -> bool:
        return self._encrypting

    def wipe_ikm(self) -> None:
        """Overwrite the IKM buffer with zeroes."""
        if self._ikm is not None:
            self._ikm[:] = b"\x00" * len(self._ikm)
        self.wipe_count += 1

    def encrypt_init_response(self, resp: InitResponse) -> InitResponse:
        """Return an encrypted copy; plaintext shares are cleared from the copy."""
        if not resp.keys_base64:
            raise EncryptionError("init response holds no key shares to encrypt")
        encrypted_keys = []
        nonces = []
        for i, share in enumerate(resp.keys_base64):
            try:
                plaintext = base64.b64decode(share, validate=True)
            except ValueError as exc:
                raise EncryptionError(f"key share {i} is not base64 encoded") from exc
            cipher = AESGCM(self._share_key(i))
            nonce = os.urandom(NONCE_SIZE)
            encrypted_keys.append(cipher.encrypt(nonce, plaintext, None).hex())
            nonces.append(nonce.hex())

        return resp.model_copy(
            update={
                "keys": [],
                "keys_base64": [],
                "encrypted_keys": encrypted_keys,
                "nonces": nonces,
            },
            deep=True,
        )

    def decrypt_init_response(self, resp: InitResponse) -> InitResponse:
        """Return a decrypted copy with `keys` and `keys_base64` rebuilt."""
        if len(resp.encrypted_keys) != len(resp.nonces):
            raise EncryptionError(
                f"{len(resp.encrypted_keys)} encrypted key(s) but {len(resp.nonces)} nonce(s)"
            )
        keys = []
        keys_base64 = []
        for i, (hex_ct, hex_nonce) in enumerate(zip(resp.encrypted_keys, resp.nonces)):
            cipher = AESGCM(self._share_key(i))
            try:
                plaintext = cipher.decrypt(bytes.fromhex(hex_nonce), bytes.fromhex(hex_ct), None)
            except (ValueError, InvalidTag) as exc:
                raise EncryptionError(f"failed to decrypt key share {i}") from exc
            keys.append(plaintext.hex())
            keys_base64.append(base64.b64encode(plaintext).decode("ascii"))

        return resp.model_copy(
            update={
                "keys": keys,
                "keys_base64": keys_base64,
                "encrypted_keys": [],
                "nonces": [],
            },
            deep=True,
        )

    def _share_key(self, index: int) -> bytes:
        if not self._encrypting or self._ikm is None:
            raise EncryptionError("IKM not loaded; encryption is disabled")
        return self._kdf.derive_key(self._ikm, KEY_LENGTH, f"vault{index}")
