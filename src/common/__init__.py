"""
Common building blocks for the secret store bootstrapper.

Modules:
- vault_client: secret store administrative API client (httpx)
- kdf: HKDF key derivation with a persisted salt
- hex_reader: reads hex-encoded key material from an external executable
- password: named password-generation strategies
"""

__all__ = [
    "vault_client",
    "kdf",
    "hex_reader",
    "password",
]
