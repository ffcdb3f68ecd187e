"""
Vault state controller: drives the secret store to an initialized, unsealed state.

Each iteration polls `sys/health`, classifies the status code into an
EngineState and dispatches through a transition table:

    UNREACHABLE    -> retry after the interval
    UNSEALED       -> load persisted init response, done
    STANDBY        -> stop (terminal, not fatal)
    UNINITIALIZED  -> init, persist (stripped/encrypted copy), unseal; retry on failure
    SEALED         -> load persisted init response, unseal; retry on failure

Retries use a fixed interval and are unbounded unless `max_attempts` is set.
"""
from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

from common.vault_client import SecretStoreClient, SecretStoreError
from state.init_store import InitResponseStore, InitStoreError
from state.models import EngineState, InitResponse, classify_health

from .errors import BootstrapCancelled, FatalError, StandbyError
from .vmk import EncryptionError, VMKEncryption


logger = logging.getLogger("secretstore")


class StepOutcome(str, Enum):
    READY = "ready"
    STANDBY = "standby"
    RETRY = "retry"


StepResult = Tuple[StepOutcome, Optional[InitResponse]]


class VaultStateController:
    def __init__(
        self,
        client: SecretStoreClient,
        store: InitResponseStore,
        vmk: VMKEncryption,
        *,
        secret_shares: int,
        secret_threshold: int,
        revoke_root_tokens: bool,
        interval: float,
        max_attempts: int = 0,
    ) -> None:
        self._client = client
        self._store = store
        self._vmk = vmk
        self._secret_shares = secret_shares
        self._secret_threshold = secret_threshold
        self._revoke_root_tokens = revoke_root_tokens
        self._interval = interval
        self._max_attempts = max_attempts
        self._transitions: Dict[EngineState, Callable[[int], StepResult]] = {
            EngineState.UNREACHABLE: self._on_unreachable,
            EngineState.UNSEALED: self._on_unsealed,
            EngineState.STANDBY: self._on_standby,
            EngineState.UNINITIALIZED: self._on_uninitialized,
            EngineState.SEALED: self._on_sealed,
        }

    def run_until_ready(self, stop: Optional[threading.Event] = None) -> InitResponse:
        """Loop until the engine is unsealed and return the plaintext init response.

        Raises:
        - StandbyError if the engine is a standby node.
        - BootstrapCancelled if `stop` is set while waiting to retry.
        - FatalError on init response persistence or decryption failures, or
          when `max_attempts` is exhausted.
        """
        stop = stop or threading.Event()
        attempt = 0
        while True:
            attempt += 1
            outcome, resp = self.step()
            if outcome is StepOutcome.READY and resp is not None:
                return resp
            if outcome is StepOutcome.STANDBY:
                raise StandbyError("vault is unsealed and in standby mode")

            if self._max_attempts and attempt >= self._max_attempts:
                raise FatalError(f"vault not ready after {attempt} attempt(s)")
            logger.info("trying vault init/unseal again in %s seconds", self._interval)
            if stop.wait(self._interval):
                raise BootstrapCancelled("stop requested while waiting for vault init/unseal")

    def step(self) -> StepResult:
        """Run one poll, classify and act iteration."""
        status = self._client.health_check()
        state = classify_health(status)
        return self._transitions[state](status)

    # --------------- Transitions ---------------
    def _on_unreachable(self, status: int) -> StepResult:
        if status == 0:
            logger.error("vault is in an unknown state. No status code available")
        else:
            logger.error("vault is in an unknown state. Status code: %d", status)
        return StepOutcome.RETRY, None

    def _on_unsealed(self, status: int) -> StepResult:
        resp = self._load()
        logger.info("vault is initialized and unsealed (status code: %d)", status)
        return StepOutcome.READY, resp

    def _on_standby(self, status: int) -> StepResult:
        logger.error("vault is unsealed and in standby mode (status code: %d)", status)
        return StepOutcome.STANDBY, None

    def _on_uninitialized(self, status: int) -> StepResult:
        logger.info(
            "vault is not initialized (status code: %d). Starting initialization and unseal phases",
            status,
        )
        try:
            raw = self._client.init(self._secret_shares, self._secret_threshold)
        except SecretStoreError as exc:
            logger.error("vault init failed: %s", exc)
            return StepOutcome.RETRY, None

        try:
            resp = InitResponse(
                keys=list(raw.get("keys") or []),
                keys_base64=list(raw.get("keys_base64") or []),
                root_token=str(raw.get("root_token") or ""),
                secret_shares=self._secret_shares,
                secret_threshold=self._secret_threshold,
            )
        except ValueError as exc:
            raise FatalError(f"malformed key shares in init response: {exc}") from exc
        self._persist(resp)
        return self._unseal(resp)

    def _on_sealed(self, status: int) -> StepResult:
        logger.info("vault is sealed (status code: %d). Starting unseal phase", status)
        resp = self._load()
        return self._unseal(resp)

    # --------------- Helpers ---------------
    def _unseal(self, resp: InitResponse) -> StepResult:
        try:
            self._client.unseal(resp.unseal_keys())
        except SecretStoreError as exc:
            logger.error("vault unseal failed: %s", exc)
            return StepOutcome.RETRY, None
        except ValueError as exc:
            raise FatalError(f"cannot unseal: {exc}") from exc
        return StepOutcome.READY, resp

    def _persist(self, resp: InitResponse) -> None:
        """Persist a copy of `resp`; the in-memory original keeps its root token."""
        copy = resp
        if self._revoke_root_tokens:
            # Never persist the root token if it is going to be revoked later
            copy = resp.without_root_token()
            logger.info("Root token stripped from init response for security reasons")
        self.save(copy)

    def _load(self) -> InitResponse:
        try:
            resp = self._store.read()
        except InitStoreError as exc:
            raise FatalError(f"unable to load init response: {exc}") from exc
        if self._vmk.is_encrypting() and resp.encrypted_keys:
            try:
                resp = self._vmk.decrypt_init_response(resp)
            except EncryptionError as exc:
                raise FatalError(f"failed to decrypt key shares for secret store unsealing: {exc}") from exc
        elif resp.is_encrypted:
            raise FatalError("init response is encrypted but no IKM source is configured")
        return resp

    def save(self, resp: InitResponse) -> None:
        """Re-persist `resp` as-is (encrypting when enabled)."""
        copy = resp
        if self._vmk.is_encrypting():
            try:
                copy = self._vmk.encrypt_init_response(resp)
            except EncryptionError as exc:
                raise FatalError(f"failed to encrypt init response: {exc}") from exc
        try:
            self._store.write(copy)
        except InitStoreError as exc:
            raise FatalError(f"unable to save init response: {exc}") from exc
