import base64
import json
import os
import secrets
import string
import sys
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest


def pytest_configure():
    # Ensure `src/` is importable as top-level for `common.*` imports
    root = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    src_path = os.path.join(root, "src")
    if src_path not in sys.path:
        sys.path.insert(0, src_path)


BASE_URL = "http://vault.test:8200"


def _json(status: int, body: Any = None) -> httpx.Response:
    if body is None:
        return httpx.Response(status)
    return httpx.Response(status, json=body)


def _random_token(prefix: str = "s.") -> str:
    alphabet = string.ascii_letters + string.digits
    return prefix + "".join(secrets.choice(alphabet) for _ in range(24))


class FakeVault:
    """
    In-memory stand-in for the secret store administrative API.

    Serve it through `httpx.MockTransport(vault.handler)`. Knobs:
    - `health_script`: status codes returned (in order) before the computed
      health; 0 simulates a connection failure.
    - `standby`: report 429 once unsealed.
    - `warmup`: number of 500 answers after unseal before turning healthy.
    - `fail`: {(METHOD, path): status} one-shot failure injection.
    """

    def __init__(self) -> None:
        self.initialized = False
        self.sealed = True
        self.standby = False
        self.warmup = 0
        self.health_script: List[int] = []
        self.fail: Dict[Tuple[str, str], int] = {}

        self.shares: List[bytes] = []
        self.threshold = 0
        self.progress = 0
        self.gen_root: Optional[Dict[str, Any]] = None

        self.tokens: Dict[str, Dict[str, Any]] = {}
        self.mounts: Dict[str, Dict[str, Any]] = {"sys/": {"type": "system"}}
        self.policies: Dict[str, str] = {}
        self.kv: Dict[str, Dict[str, Any]] = {}

        self.calls: List[Tuple[str, str]] = []
        self.kv_writes: List[str] = []
        self.revoked_self: List[str] = []

    # -------- Helpers for tests --------
    def client(self, **kwargs: Any):
        from common.vault_client import SecretStoreClient

        http = httpx.Client(base_url=BASE_URL, transport=httpx.MockTransport(self.handler))
        return SecretStoreClient(BASE_URL, client=http, **kwargs)

    def add_token(self, policies: List[str], token: Optional[str] = None) -> Tuple[str, str]:
        token = token or _random_token()
        accessor = "acc-" + secrets.token_hex(6)
        self.tokens[token] = {"accessor": accessor, "policies": list(policies)}
        return token, accessor

    def seed_initialized(self, shares: int = 5, threshold: int = 3, *, sealed: bool = True) -> Dict[str, Any]:
        """Initialize out of band; returns the init payload."""
        return self._init(shares, threshold, sealed=sealed)

    def count(self, method: str, path: str) -> int:
        return sum(1 for c in self.calls if c == (method, path))

    def accessors(self) -> List[str]:
        return [t["accessor"] for t in self.tokens.values()]

    # -------- Transport --------
    def handler(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.calls.append((method, path))
        body = json.loads(request.content) if request.content else {}

        if path == "/v1/sys/health" and self.health_script:
            status = self.health_script.pop(0)
            if status == 0:
                raise httpx.ConnectError("connection refused", request=request)
            return _json(status, {})

        injected = self.fail.pop((method, path), None)
        if injected is not None:
            return _json(injected, {"errors": ["injected failure"]})

        if path == "/v1/sys/health":
            return _json(self._health_status(), {})
        if path == "/v1/sys/init" and method == "PUT":
            if self.initialized:
                return _json(400, {"errors": ["Vault is already initialized"]})
            return _json(200, self._init(body["secret_shares"], body["secret_threshold"]))
        if path == "/v1/sys/unseal" and method == "PUT":
            return self._unseal(body)
        if path == "/v1/sys/generate-root/attempt":
            return self._gen_root_attempt(method)
        if path == "/v1/sys/generate-root/update" and method == "PUT":
            return self._gen_root_update(body)

        token = request.headers.get("X-Vault-Token")
        if token not in self.tokens:
            return _json(403, {"errors": ["permission denied"]})
        return self._authenticated(method, path, token, body)

    def _health_status(self) -> int:
        if not self.initialized:
            return 501
        if self.sealed:
            return 503
        if self.standby:
            return 429
        if self.warmup > 0:
            self.warmup -= 1
            return 500
        return 200

    def _init(self, shares: int, threshold: int, *, sealed: bool = True) -> Dict[str, Any]:
        self.initialized = True
        self.sealed = sealed
        self.threshold = threshold
        self.shares = [secrets.token_bytes(33) for _ in range(shares)]
        root, _ = self.add_token(["root"])
        return {
            "keys": [s.hex() for s in self.shares],
            "keys_base64": [base64.b64encode(s).decode("ascii") for s in self.shares],
            "root_token": root,
        }

    def _valid_share(self, key: str) -> bool:
        try:
            return base64.b64decode(key) in self.shares
        except ValueError:
            return False

    def _unseal(self, body: Dict[str, Any]) -> httpx.Response:
        if not self._valid_share(body.get("key", "")):
            return _json(400, {"errors": ["invalid key"]})
        self.progress += 1
        if self.progress >= self.threshold:
            self.sealed = False
            self.progress = 0
        return _json(200, {"sealed": self.sealed, "progress": self.progress, "t": self.threshold})

    def _gen_root_attempt(self, method: str) -> httpx.Response:
        if method == "DELETE":
            self.gen_root = None
            return _json(204)
        token = _random_token()
        otp = "".join(secrets.choice(string.ascii_letters) for _ in range(len(token)))
        self.gen_root = {"nonce": "nonce-" + secrets.token_hex(4), "otp": otp, "token": token, "progress": 0}
        return _json(200, {
            "nonce": self.gen_root["nonce"],
            "otp": otp,
            "otp_length": len(otp),
            "started": True,
            "progress": 0,
            "required": self.threshold,
            "complete": False,
        })

    def _gen_root_update(self, body: Dict[str, Any]) -> httpx.Response:
        attempt = self.gen_root
        if attempt is None or body.get("nonce") != attempt["nonce"]:
            return _json(400, {"errors": ["no root generation in progress"]})
        if not self._valid_share(body.get("key", "")):
            return _json(400, {"errors": ["invalid key"]})
        attempt["progress"] += 1
        if attempt["progress"] < self.threshold:
            return _json(200, {"complete": False, "progress": attempt["progress"]})
        token = attempt["token"]
        self.add_token(["root"], token=token)
        xored = bytes(a ^ b for a, b in zip(token.encode(), attempt["otp"].encode()))
        self.gen_root = None
        encoded = base64.b64encode(xored).decode("ascii").rstrip("=")
        return _json(200, {"complete": True, "encoded_token": encoded})

    def _authenticated(self, method: str, path: str, token: str, body: Dict[str, Any]) -> httpx.Response:
        if path == "/v1/auth/token/lookup-self":
            return _json(200, {"data": dict(self.tokens[token])})
        if path == "/v1/auth/token/accessors" and method == "LIST":
            return _json(200, {"data": {"keys": self.accessors()}})
        if path == "/v1/auth/token/lookup-accessor":
            found = self._by_accessor(body.get("accessor"))
            if found is None:
                return _json(400, {"errors": ["invalid accessor"]})
            return _json(200, {"data": dict(self.tokens[found])})
        if path == "/v1/auth/token/revoke-accessor":
            found = self._by_accessor(body.get("accessor"))
            if found is None:
                return _json(400, {"errors": ["invalid accessor"]})
            del self.tokens[found]
            return _json(204)
        if path == "/v1/auth/token/revoke-self":
            del self.tokens[token]
            self.revoked_self.append(token)
            return _json(204)
        if path == "/v1/auth/token/create":
            new_token, accessor = self.add_token(body.get("policies") or ["default"])
            return _json(200, {"auth": {"client_token": new_token, "accessor": accessor, "policies": body.get("policies")}})
        if path.startswith("/v1/sys/policies/acl/") and method == "PUT":
            self.policies[path.rsplit("/", 1)[-1]] = body["policy"]
            return _json(204)
        if path == "/v1/sys/mounts" and method == "GET":
            return _json(200, {"data": dict(self.mounts)})
        if path.startswith("/v1/sys/mounts/") and method == "POST":
            self.mounts[path[len("/v1/sys/mounts/"):] + "/"] = {"type": body["type"], "options": body.get("options")}
            return _json(204)
        if path.startswith("/v1/secret/"):
            key = path[len("/v1/"):]
            if method == "GET":
                if key not in self.kv:
                    return _json(404, {"errors": []})
                return _json(200, {"data": dict(self.kv[key])})
            if method == "POST":
                self.kv[key] = dict(body)
                self.kv_writes.append(key)
                return _json(204)
        return _json(404, {"errors": [f"no handler for {method} {path}"]})

    def _by_accessor(self, accessor: Optional[str]) -> Optional[str]:
        for tok, meta in self.tokens.items():
            if meta["accessor"] == accessor:
                return tok
        return None


@pytest.fixture
def vault() -> FakeVault:
    return FakeVault()


class FakeHexReader:
    """Returns fixed IKM instead of running an executable."""

    def __init__(self, ikm: bytes = b"\x11" * 32, *, fail: bool = False) -> None:
        self._ikm = ikm
        self._fail = fail
        self.buffers: List[bytearray] = []

    def read_hex_bytes_from_exe(self, executable: str, args=()) -> bytearray:  # noqa: ARG002
        if self._fail:
            from common.hex_reader import HexReaderError

            raise HexReaderError(f"{executable} exited with status 1")
        buf = bytearray(self._ikm)
        self.buffers.append(buf)
        return buf


@pytest.fixture
def hex_reader() -> FakeHexReader:
    return FakeHexReader()
