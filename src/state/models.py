from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator


class EngineState(str, Enum):
    UNINITIALIZED = "uninitialized"
    SEALED = "sealed"
    UNSEALED = "unsealed"
    STANDBY = "standby"
    UNREACHABLE = "unreachable"


_STATUS_TO_STATE = {
    200: EngineState.UNSEALED,
    429: EngineState.STANDBY,
    501: EngineState.UNINITIALIZED,
    503: EngineState.SEALED,
}


def classify_health(status_code: Optional[int]) -> EngineState:
    """Map a `sys/health` status code to an EngineState; unknown or missing is UNREACHABLE."""
    if status_code is None:
        return EngineState.UNREACHABLE
    return _STATUS_TO_STATE.get(status_code, EngineState.UNREACHABLE)


class InitResponse(BaseModel):
    """
    Initialization material returned by the secret store and persisted to disk.

    Fields
    - keys / keys_base64: the key shares (hex / base64 of the same bytes).
    - encrypted_keys / nonces: hex AES-GCM ciphertexts and nonces of each share,
      populated only in the at-rest encrypted form (keys are then empty).
    - root_token: initial root token; empty when stripped for persistence.
    - secret_shares / secret_threshold: the sharing parameters used at init.
    """

    keys: List[str] = Field(default_factory=list)
    keys_base64: List[str] = Field(default_factory=list)
    encrypted_keys: List[str] = Field(default_factory=list)
    nonces: List[str] = Field(default_factory=list)
    root_token: str = ""
    secret_shares: int = 0
    secret_threshold: int = 0

    @model_validator(mode="after")
    def fill_share_encodings(self) -> "InitResponse":
        # Engines may return only one of the two encodings
        if self.keys_base64 and not self.keys:
            self.keys = [base64.b64decode(k).hex() for k in self.keys_base64]
        elif self.keys and not self.keys_base64:
            self.keys_base64 = [base64.b64encode(bytes.fromhex(k)).decode("ascii") for k in self.keys]
        return self

    @property
    def is_encrypted(self) -> bool:
        return bool(self.encrypted_keys) and not self.keys_base64

    def without_root_token(self) -> "InitResponse":
        """Copy with the root token cleared; the original is left untouched."""
        return self.model_copy(update={"root_token": ""}, deep=True)

    def unseal_keys(self) -> List[str]:
        """Key shares in submission order; callers stop once the threshold is met."""
        if not self.keys_base64:
            raise ValueError("init response holds no plaintext key shares")
        return list(self.keys_base64)


class TokenScope(str, Enum):
    ROOT = "root"
    DELEGATE = "delegate"
    SERVICE = "service"


@dataclass
class Token:
    """An engine-issued token; lifecycle is active -> revoked, one way."""

    value: str
    scope: TokenScope
    accessor: str = ""
    revoked: bool = False

    def __repr__(self) -> str:
        # Never render the token value
        return f"Token(scope={self.scope.value}, accessor={self.accessor!r}, revoked={self.revoked})"
