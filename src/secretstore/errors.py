from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """How a bootstrap failure is dispatched."""

    TRANSIENT = "transient"  # retried on a fixed interval
    TERMINAL = "terminal"  # loop stops, run reports failure, process keeps going
    FATAL = "fatal"  # run aborts after cleanup, process exits non-zero
    BEST_EFFORT = "best-effort"  # logged as a warning, never escalated


class BootstrapError(RuntimeError):
    kind: ErrorKind = ErrorKind.FATAL

    def __init__(self, message: str, *, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class TransientError(BootstrapError):
    kind = ErrorKind.TRANSIENT


class TerminalError(BootstrapError):
    kind = ErrorKind.TERMINAL


class StandbyError(TerminalError):
    """The engine is an unsealed standby; this node is not the active unsealer."""


class BootstrapCancelled(TerminalError):
    """A stop was requested while waiting on the engine."""


class FatalError(BootstrapError):
    kind = ErrorKind.FATAL


class BestEffortError(BootstrapError):
    kind = ErrorKind.BEST_EFFORT


__all__ = [
    "ErrorKind",
    "BootstrapError",
    "TransientError",
    "TerminalError",
    "StandbyError",
    "BootstrapCancelled",
    "FatalError",
    "BestEffortError",
]
