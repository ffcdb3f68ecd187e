"""
Persisted bootstrap state.

Defines the init response (key shares and root token) produced when the
secret store is initialized, the engine state derived from health checks,
and the owner-only file store the init response lives in.
"""

from .models import EngineState, InitResponse, Token, TokenScope, classify_health
from .init_store import InitResponseStore, InitStoreError

__all__ = [
    "EngineState",
    "InitResponse",
    "InitResponseStore",
    "InitStoreError",
    "Token",
    "TokenScope",
    "classify_health",
]
