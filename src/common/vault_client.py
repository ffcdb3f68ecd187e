from __future__ import annotations

import base64
import logging
import ssl
from typing import Any, Dict, Iterable, List, Optional, Union

import httpx


logger = logging.getLogger("secretstore")

TOKEN_HEADER = "X-Vault-Token"


class SecretStoreError(RuntimeError):
    """Base error for the secret store client."""


class SecretStoreApiError(SecretStoreError):
    """API returned an unexpected status code or payload."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class SecretStoreTransportError(SecretStoreError):
    """The request never produced an HTTP response."""


class SecretStoreClient:
    """
    Minimal client for the secret store administrative HTTP API.

    Notes
    - Covers only the calls needed to bootstrap the store: health, init, unseal,
      root token regeneration, token maintenance, mounts, policies and KV paths.
    - Does not retry. Retry policy belongs to the caller (fixed-interval loops).
    - `server_name` is passed as the TLS SNI hostname on every request so the
      certificate can be verified against a name other than the connect host.
    """

    def __init__(
        self,
        base_url: str,
        *,
        verify: Union[bool, ssl.SSLContext] = True,
        server_name: Optional[str] = None,
        timeout: float = 15.0,
        client: Optional[httpx.Client] = None,
    ) -> None:
        if not base_url:
            raise ValueError("base_url is required")
        self._base_url = base_url.rstrip("/")
        self._server_name = server_name or None
        self._owns_client = client is None
        self._client = client or httpx.Client(
            base_url=self._base_url, verify=verify, timeout=timeout
        )

    # -------- Construction helpers --------
    @classmethod
    def with_tls(
        cls,
        base_url: str,
        ca_file: str,
        server_name: Optional[str] = None,
        **kwargs: Any,
    ) -> "SecretStoreClient":
        """Client that verifies the server against the CA bundle at `ca_file`."""
        ctx = ssl.create_default_context(cafile=ca_file)
        return cls(base_url, verify=ctx, server_name=server_name, **kwargs)

    @classmethod
    def insecure(cls, base_url: str, **kwargs: Any) -> "SecretStoreClient":
        """Client that skips certificate verification entirely."""
        return cls(base_url, verify=False, **kwargs)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> "SecretStoreClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # --------------- System backend ---------------
    def health_check(self) -> int:
        """
        Return the HTTP status code of `sys/health`, or 0 when unreachable.

        The status code encodes the engine state (200 active, 429 standby,
        501 uninitialized, 503 sealed), so non-2xx codes are not errors here.
        """
        try:
            resp = self._send("GET", "/v1/sys/health", expected=range(100, 600))
        except SecretStoreTransportError as exc:
            logger.debug("health check transport error: %s", exc)
            return 0
        return resp.status_code

    def init(self, secret_shares: int, secret_threshold: int) -> Dict[str, Any]:
        """Initialize the engine. Returns `{keys, keys_base64, root_token}`."""
        body = {"secret_shares": secret_shares, "secret_threshold": secret_threshold}
        data = self._json("PUT", "/v1/sys/init", json_body=body)
        if not isinstance(data.get("keys_base64"), list):
            raise SecretStoreApiError("Malformed init response: keys_base64 missing")
        return data

    def unseal(self, keys_base64: Iterable[str]) -> None:
        """
        Submit key shares one at a time until the engine reports unsealed.

        Raises SecretStoreApiError if all shares were submitted and the engine
        is still sealed.
        """
        submitted = 0
        for key in keys_base64:
            data = self._json("PUT", "/v1/sys/unseal", json_body={"key": key})
            submitted += 1
            if data.get("sealed") is False:
                logger.info("vault unsealed after %d key share(s)", submitted)
                return
            logger.debug(
                "unseal progress %s/%s", data.get("progress"), data.get("t")
            )
        raise SecretStoreApiError(
            f"vault still sealed after submitting {submitted} key share(s)"
        )

    def regen_root_token(self, keys_base64: List[str]) -> str:
        """
        Mint a new root token from key shares via the generate-root protocol.

        Any attempt already in progress is cancelled first. The engine returns
        the token XOR-ed with a one-time password; the decoded token is returned.
        """
        self._send("DELETE", "/v1/sys/generate-root/attempt", expected=(200, 204))
        attempt = self._json("PUT", "/v1/sys/generate-root/attempt", json_body={})
        nonce = attempt.get("nonce")
        otp = attempt.get("otp")
        if not nonce or not otp:
            raise SecretStoreApiError("Malformed generate-root attempt: nonce/otp missing")

        for key in keys_base64:
            data = self._json(
                "PUT",
                "/v1/sys/generate-root/update",
                json_body={"key": key, "nonce": nonce},
            )
            if data.get("complete") is True:
                encoded = data.get("encoded_token") or data.get("encoded_root_token")
                if not encoded:
                    raise SecretStoreApiError("generate-root completed without encoded token")
                return _decode_otp_token(encoded, otp)

        raise SecretStoreApiError("generate-root did not complete with the supplied key shares")

    def check_secrets_engine_installed(self, token: str, mount_point: str, engine: str) -> bool:
        """Return True if `engine` is mounted at `mount_point` (e.g. "secret/")."""
        data = self._json("GET", "/v1/sys/mounts", token=token)
        mounts = data.get("data") if isinstance(data.get("data"), dict) else data
        mount = mounts.get(mount_point)
        return isinstance(mount, dict) and mount.get("type") == engine

    def enable_kv_secrets_engine(self, token: str, mount_point: str, kv_version: str) -> None:
        body = {"type": "kv", "options": {"version": kv_version}}
        self._send("POST", f"/v1/sys/mounts/{mount_point}", token=token, json_body=body)

    def install_policy(self, token: str, name: str, policy: str) -> None:
        self._send(
            "PUT", f"/v1/sys/policies/acl/{name}", token=token, json_body={"policy": policy}
        )

    # --------------- Token backend ---------------
    def create_token(self, token: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
        """Create a token. Returns the full response; the token is under `auth`."""
        data = self._json("POST", "/v1/auth/token/create", token=token, json_body=parameters)
        if not isinstance(data.get("auth"), dict):
            raise SecretStoreApiError("Malformed token create response: auth missing")
        return data

    def lookup_self(self, token: str) -> Dict[str, Any]:
        data = self._json("GET", "/v1/auth/token/lookup-self", token=token)
        return data.get("data") or {}

    def list_accessors(self, token: str) -> List[str]:
        data = self._json("LIST", "/v1/auth/token/accessors", token=token)
        keys = (data.get("data") or {}).get("keys")
        return [str(k) for k in keys] if isinstance(keys, list) else []

    def lookup_accessor(self, token: str, accessor: str) -> Dict[str, Any]:
        data = self._json(
            "POST", "/v1/auth/token/lookup-accessor", token=token, json_body={"accessor": accessor}
        )
        return data.get("data") or {}

    def revoke_accessor(self, token: str, accessor: str) -> None:
        self._send(
            "POST", "/v1/auth/token/revoke-accessor", token=token, json_body={"accessor": accessor}
        )

    def revoke_self(self, token: str) -> None:
        self._send("POST", "/v1/auth/token/revoke-self", token=token)

    # --------------- Key/value paths ---------------
    def kv_read(self, token: str, path: str) -> Optional[Dict[str, Any]]:
        """Read the secret at `path` (e.g. "secret/edgex/a/redisdb"). None if absent."""
        resp = self._send("GET", f"/v1/{path.lstrip('/')}", token=token, expected=(200, 404))
        if resp.status_code == 404:
            return None
        payload = _parse_json(resp)
        data = payload.get("data")
        return data if isinstance(data, dict) else {}

    def kv_write(self, token: str, path: str, data: Dict[str, Any]) -> None:
        self._send("POST", f"/v1/{path.lstrip('/')}", token=token, json_body=data)

    # --------------- Internal ---------------
    def _json(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json_body: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        resp = self._send(method, path, token=token, json_body=json_body, expected=(200,))
        return _parse_json(resp)

    def _send(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json_body: Optional[Dict[str, Any]] = None,
        expected: Iterable[int] = (200, 204),
    ) -> httpx.Response:
        headers = {TOKEN_HEADER: token} if token else None
        extensions = {"sni_hostname": self._server_name} if self._server_name else None
        try:
            resp = self._client.request(
                method, path, json=json_body, headers=headers, extensions=extensions
            )
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            raise SecretStoreTransportError(f"{method} {path} failed: {exc}") from exc

        if resp.status_code not in tuple(expected):
            raise SecretStoreApiError(
                f"HTTP {resp.status_code} from {method} {path}: {_error_text(resp)}",
                status_code=resp.status_code,
            )
        return resp


def _parse_json(resp: httpx.Response) -> Dict[str, Any]:
    try:
        payload = resp.json()
    except ValueError as exc:
        raise SecretStoreApiError("Failed to parse JSON from secret store") from exc
    if not isinstance(payload, dict):
        raise SecretStoreApiError("Unexpected JSON payload from secret store")
    return payload


def _error_text(resp: httpx.Response) -> str:
    # Engine errors come as {"errors": [...]}; never echo request bodies
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict) and isinstance(body.get("errors"), list):
        return "; ".join(str(e) for e in body["errors"])[:200]
    return resp.text[:200]


def _decode_otp_token(encoded: str, otp: str) -> str:
    """Undo the one-time-password XOR applied to a regenerated root token."""
    padded = encoded + "=" * (-len(encoded) % 4)
    try:
        raw = base64.b64decode(padded)
    except ValueError as exc:
        raise SecretStoreApiError("encoded root token is not valid base64") from exc
    otp_bytes = otp.encode("utf-8")
    if len(raw) != len(otp_bytes):
        raise SecretStoreApiError(
            f"encoded root token length {len(raw)} does not match OTP length {len(otp_bytes)}"
        )
    return bytes(a ^ b for a, b in zip(raw, otp_bytes)).decode("utf-8")


__all__ = [
    "SecretStoreClient",
    "SecretStoreError",
    "SecretStoreApiError",
    "SecretStoreTransportError",
]
