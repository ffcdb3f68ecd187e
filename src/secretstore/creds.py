"""
Credential provisioning: shared database credentials uploaded to the secret store.

Each entry is written to two paths holding the same pair:
- `edgex/<service>/<db>`, read by the service itself (services only see
  their own `edgex/<service>` prefix).
- `edgex/<db>/<service>`, enumerated by whatever initializes the database.

One pair is generated per database and shared by every service configured
against it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from common.password import PasswordGenerationError, PasswordGenerator
from common.vault_client import SecretStoreClient, SecretStoreError
from state.models import Token

from .config import KV_MOUNT, DatabaseInfo
from .errors import FatalError


logger = logging.getLogger("secretstore")


@dataclass(frozen=True)
class UserPasswordPair:
    username: str
    password: str = field(repr=False)

    def to_secret(self) -> Dict[str, str]:
        return {"username": self.username, "password": self.password}


def service_path(service: str, db: str) -> str:
    return f"edgex/{service}/{db}"


def database_path(db: str, service: str) -> str:
    return f"edgex/{db}/{service}"


class Cred:
    def __init__(
        self,
        client: SecretStoreClient,
        root: Token,
        generator: PasswordGenerator,
        *,
        mount: str = KV_MOUNT,
    ) -> None:
        self._client = client
        self._root = root
        self._generator = generator
        self._mount = mount

    def generate_password(self) -> str:
        try:
            return self._generator.generate()
        except PasswordGenerationError as exc:
            raise FatalError(f"failed to generate password with provider {self._generator.provider}: {exc}") from exc

    def already_in_store(self, path: str) -> bool:
        try:
            return self._client.kv_read(self._root.value, self._full(path)) is not None
        except SecretStoreError as exc:
            raise FatalError(f"failed to check for credentials at {path}: {exc}") from exc

    def read_from_store(self, path: str) -> Optional[UserPasswordPair]:
        """Stored pair at `path`, or None if the path is absent or holds no password."""
        try:
            data = self._client.kv_read(self._root.value, self._full(path))
        except SecretStoreError as exc:
            raise FatalError(f"failed to read credentials at {path}: {exc}") from exc
        if not data or not data.get("password"):
            return None
        return UserPasswordPair(username=str(data.get("username") or ""), password=str(data["password"]))

    def upload_to_store(self, pair: UserPasswordPair, path: str) -> None:
        try:
            self._client.kv_write(self._root.value, self._full(path), pair.to_secret())
        except SecretStoreError as exc:
            raise FatalError(f"failed to upload credential pair on path {path}: {exc}") from exc

    def _full(self, path: str) -> str:
        return f"{self._mount}/{path}"


@dataclass
class ProvisionResult:
    uploaded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)


def _paths_by_database(databases: Iterable[DatabaseInfo]) -> Dict[str, List[Tuple[DatabaseInfo, str]]]:
    grouped: Dict[str, List[Tuple[DatabaseInfo, str]]] = {}
    for info in databases:
        if not info.service:
            continue
        entries = grouped.setdefault(info.database, [])
        for path in (service_path(info.service, info.database), database_path(info.database, info.service)):
            if all(path != seen for _, seen in entries):
                entries.append((info, path))
    return grouped


def provision_database_credentials(cred: Cred, databases: Iterable[DatabaseInfo]) -> ProvisionResult:
    """
    Upload one shared pair per database to every configured service's paths.

    Every path is checked before writing and skipped if present, so repeated
    runs are idempotent. A pair already stored on any path of a database is
    reused for that database's missing paths; a password is generated only
    when none of its paths holds one yet.
    """
    result = ProvisionResult()

    for database, entries in _paths_by_database(databases).items():
        pair: Optional[UserPasswordPair] = None
        missing: List[Tuple[DatabaseInfo, str]] = []
        for info, path in entries:
            if not cred.already_in_store(path):
                missing.append((info, path))
                continue
            logger.info("credentials for %s already present at path %s", info.service, path)
            result.skipped.append(path)
            if pair is None:
                pair = cred.read_from_store(path)

        if not missing:
            continue
        username = entries[0][0].username
        if pair is None:
            pair = UserPasswordPair(username=username, password=cred.generate_password())
        else:
            logger.info("reusing stored credentials for database %s", database)
            pair = UserPasswordPair(username=pair.username or username, password=pair.password)

        for info, path in missing:
            cred.upload_to_store(pair, path)
            logger.info("uploaded credentials for %s to path %s", info.service, path)
            result.uploaded.append(path)
    return result
