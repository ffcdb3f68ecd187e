"""
Secret store setup.

Drives the secret store to an initialized, unsealed and healthy state,
manages administrative tokens, and provisions shared database credentials
and the proxy TLS certificate pair.
"""

from .handler import Bootstrap, run_once

__all__ = ["Bootstrap", "run_once"]
