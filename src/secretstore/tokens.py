"""
Token maintenance: transient root token, stale token cleanup, token-issuing token.

Security Note:
    Token values are never logged. Only accessors and counts are.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, Tuple

from common.vault_client import SecretStoreClient, SecretStoreError
from state.models import InitResponse, Token, TokenScope

from .errors import BestEffortError, FatalError


logger = logging.getLogger("secretstore")

ROOT_POLICY = "root"
TOKEN_ISSUING_POLICY = "token-issuing-policy"
TOKEN_ISSUING_POLICY_HCL = """
path "auth/token/create" {
  capabilities = ["create", "update", "sudo"]
}

path "auth/token/create-orphan" {
  capabilities = ["create", "update", "sudo"]
}

path "auth/token/create/*" {
  capabilities = ["create", "update", "sudo"]
}

path "sys/policies/acl/edgex-service-*" {
  capabilities = ["create", "read", "update", "delete"]
}

path "sys/policies/acl" {
  capabilities = ["list"]
}
"""
TOKEN_ISSUING_PARAMS: Dict[str, Any] = {
    "display_name": "token-issuing-token",
    "no_parent": True,
    "period": "1h",
    "policies": [TOKEN_ISSUING_POLICY],
}

RevokeFunc = Callable[[], None]


class TokenMaintenance:
    def __init__(self, client: SecretStoreClient) -> None:
        self._client = client

    def regenerate_root_token(self, resp: InitResponse) -> Token:
        """Mint a transient root token from the key shares. Failure is fatal."""
        try:
            value = self._client.regen_root_token(resp.unseal_keys())
        except (SecretStoreError, ValueError) as exc:
            raise FatalError(f"could not regenerate root token: {exc}") from exc
        logger.info("generated transient root token")
        return Token(value=value, scope=TokenScope.ROOT)

    def revoke_self(self, token: Token) -> None:
        """Revoke exactly `token`. A second call on the same token is a no-op."""
        if token.revoked:
            return
        self._client.revoke_self(token.value)
        token.revoked = True

    def revoke_root_tokens(self, keep: Token) -> int:
        """Revoke every root token except `keep`. Returns the number revoked."""
        return self._revoke_matching(keep, lambda policies: ROOT_POLICY in policies, "root")

    def revoke_non_root_tokens(self, keep: Token) -> int:
        """Revoke every non-root token except `keep`. Returns the number revoked."""
        return self._revoke_matching(keep, lambda policies: ROOT_POLICY not in policies, "non-root")

    def create_token_issuing_token(self, root: Token) -> Tuple[Dict[str, Any], RevokeFunc]:
        """
        Create a least-privilege token that can only issue further tokens.

        Returns the create response `auth` block and a closure that revokes the
        token by accessor; the caller decides whether to invoke it.
        """
        try:
            self._client.install_policy(root.value, TOKEN_ISSUING_POLICY, TOKEN_ISSUING_POLICY_HCL)
            created = self._client.create_token(root.value, TOKEN_ISSUING_PARAMS)
        except SecretStoreError as exc:
            raise FatalError(f"failed to create token issuing token: {exc}") from exc

        auth = created["auth"]
        accessor = str(auth.get("accessor") or "")
        delegate = Token(value=str(auth.get("client_token") or ""), scope=TokenScope.DELEGATE, accessor=accessor)

        def revoke() -> None:
            if delegate.revoked:
                return
            try:
                self._client.revoke_accessor(root.value, accessor)
            except SecretStoreError as exc:
                logger.error("failed to revoke token issuing token %s: %s", accessor, exc)
                return
            delegate.revoked = True
            logger.info("revoked token issuing token %s", accessor)

        logger.info("created token issuing token %s", accessor)
        return auth, revoke

    def _revoke_matching(self, keep: Token, predicate: Callable[[list], bool], label: str) -> int:
        try:
            own_accessor = str(self._client.lookup_self(keep.value).get("accessor") or "")
            accessors = self._client.list_accessors(keep.value)
        except SecretStoreError as exc:
            raise BestEffortError(f"failed to enumerate {label} tokens: {exc}") from exc

        revoked = 0
        for accessor in accessors:
            if accessor == own_accessor:
                continue
            try:
                info = self._client.lookup_accessor(keep.value, accessor)
                policies = info.get("policies") or []
                if not predicate(policies):
                    continue
                self._client.revoke_accessor(keep.value, accessor)
            except SecretStoreError as exc:
                # Tokens from earlier runs may already be expired or invalid
                logger.warning("failed to revoke %s token %s: %s", label, accessor, exc)
                continue
            revoked += 1
            logger.debug("revoked %s token %s", label, accessor)
        logger.info("revoked %d %s token(s)", revoked, label)
        return revoked


def write_token_issuing_token(admin_token_path: str, auth: Dict[str, Any]) -> Path:
    """Write the token-issuing token for the token provider (dir 0700, file 0600)."""
    path = Path(admin_token_path).absolute()
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(path, os.O_CREAT | os.O_TRUNC | os.O_WRONLY, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            os.fchmod(f.fileno(), 0o600)
            json.dump(auth, f)
            f.write("\n")
    except OSError as exc:
        raise FatalError(f"failed to write token issuing token to {path}: {exc}") from exc
    return path


def make_token_issuing_token(
    tokens: TokenMaintenance, root: Token, admin_token_path: str
) -> RevokeFunc:
    """Create the token-issuing token and hand it to the provider through a file.

    If the file cannot be written the token is revoked before the error propagates.
    """
    if not admin_token_path:
        raise FatalError("TokenProviderAdminTokenPath is a required configuration setting")
    auth, revoke = tokens.create_token_issuing_token(root)
    try:
        write_token_issuing_token(admin_token_path, auth)
    except FatalError:
        revoke()
        raise
    return revoke
