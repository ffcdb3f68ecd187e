from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from common.vault_client import SecretStoreClient, SecretStoreError
from state.models import Token

from .config import KV_MOUNT
from .errors import FatalError


logger = logging.getLogger("secretstore")


@dataclass(frozen=True)
class CertPair:
    cert: str
    key: str = field(repr=False)

    def to_secret(self) -> Dict[str, str]:
        return {"cert": self.cert, "key": self.key}


class Certs:
    """
    Proxy TLS certificate pair stored at `secret/<cert_path>`.

    Upload happens at most once per deployment: a pair already in the store
    is never overwritten, so certificates rotated out of band survive restarts.
    """

    def __init__(
        self,
        client: SecretStoreClient,
        cert_path: str,
        root: Token,
        *,
        mount: str = KV_MOUNT,
    ) -> None:
        if not cert_path.strip():
            raise FatalError("CertPath is required to store the proxy certificate pair")
        self._client = client
        self._path = f"{mount}/{cert_path.strip('/')}"
        self._root = root

    def already_in_store(self) -> bool:
        try:
            data = self._client.kv_read(self._root.value, self._path)
        except SecretStoreError as exc:
            raise FatalError(f"failed to check for proxy certificate at {self._path}: {exc}") from exc
        if data is None:
            return False
        return bool(data.get("cert")) and bool(data.get("key"))

    def read_from(self, cert_file: str, key_file: str) -> CertPair:
        """Read and validate a PEM certificate and private key from disk."""
        try:
            cert_pem = Path(cert_file).read_bytes()
            key_pem = Path(key_file).read_bytes()
        except OSError as exc:
            raise FatalError(f"failed to read certificate pair from volume: {exc}") from exc

        try:
            x509.load_pem_x509_certificate(cert_pem)
        except ValueError as exc:
            raise FatalError(f"{cert_file} is not a valid PEM certificate") from exc
        try:
            serialization.load_pem_private_key(key_pem, password=None)
        except (ValueError, TypeError) as exc:
            raise FatalError(f"{key_file} is not a valid unencrypted PEM private key") from exc

        return CertPair(cert=cert_pem.decode("utf-8"), key=key_pem.decode("utf-8"))

    def upload_to_store(self, pair: CertPair) -> None:
        try:
            self._client.kv_write(self._root.value, self._path, pair.to_secret())
        except SecretStoreError as exc:
            raise FatalError(f"failed to upload the proxy cert pair into the secret store: {exc}") from exc


def provision_certificate(certs: Certs, cert_file: str, key_file: str) -> str:
    """Upload the pair unless one is already stored. Returns "present" or "uploaded"."""
    if certs.already_in_store():
        logger.info("proxy certificate pair are in the secret store already, skip uploading")
        return "present"

    logger.info("proxy certificate pair are not in the secret store yet, uploading them")
    pair = certs.read_from(cert_file, key_file)
    logger.info("proxy certificate pair are loaded from volume successfully, will upload to secret store")
    certs.upload_to_store(pair)
    logger.info("proxy certificate pair are uploaded to secret store successfully")
    return "uploaded"
