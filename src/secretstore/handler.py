from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from contextlib import ExitStack
from typing import Any, Dict, Mapping, Optional, Sequence

from common.hex_reader import HexReaderError, PipedHexReader
from common.kdf import Kdf
from common.password import PasswordGenerator
from common.vault_client import SecretStoreClient, SecretStoreError
from state.init_store import InitResponseStore
from state.models import InitResponse, Token

from .certs import Certs, provision_certificate
from .config import KV_MOUNT, ONESHOT_PROVIDER, Configuration, SecretServiceInfo
from .controller import VaultStateController
from .creds import Cred, provision_database_credentials
from .errors import BestEffortError, FatalError, TerminalError
from .health import HealthGate
from .token_provider import TokenProvider
from .tokens import TokenMaintenance, make_token_issuing_token
from .vmk import EncryptionError, VMKEncryption


logger = logging.getLogger("secretstore")

ENV_IKM_HOOK = "IKM_HOOK"
DEFAULT_VAULT_INTERVAL = 30


def _make_client(info: SecretServiceInfo, insecure_skip_verify: bool) -> SecretStoreClient:
    base_url = info.base_url()
    if info.ca_file_path and not insecure_skip_verify:
        logger.info("using certificate verification for secret store connection")
        try:
            return SecretStoreClient.with_tls(base_url, info.ca_file_path, info.server_name)
        except OSError as exc:
            raise FatalError(f"failed to load CA certificate: {exc}") from exc
    logger.info("bypassing certificate verification for secret store connection")
    return SecretStoreClient.insecure(base_url)


def enable_kv_secrets_engine(client: SecretStoreClient, root: Token) -> None:
    try:
        installed = client.check_secrets_engine_installed(root.value, f"{KV_MOUNT}/", "kv")
        if installed:
            logger.info("KV secrets engine already enabled...")
            return
        logger.info("enabling KV secrets engine for the first time...")
        # KV version 1 at /v1/secret (the /v1 prefix is supplied by the engine)
        client.enable_kv_secrets_engine(root.value, KV_MOUNT, "1")
    except SecretStoreError as exc:
        raise FatalError(f"failed to enable KV secrets engine: {exc}") from exc


def _revoke_transient_root(tokens: TokenMaintenance, root: Token) -> None:
    logger.info("revoking temporary root token")
    try:
        tokens.revoke_self(root)
    except SecretStoreError as exc:
        logger.error("could not revoke temporary root token: %s", exc)


def _cleanup_stale_tokens(
    info: SecretServiceInfo,
    controller: VaultStateController,
    tokens: TokenMaintenance,
    init_resp: InitResponse,
    root: Token,
) -> None:
    if info.revoke_root_tokens:
        if init_resp.root_token:
            controller.save(init_resp.without_root_token())
            logger.info("Root token stripped from init response (on disk) for security reasons")
        try:
            tokens.revoke_root_tokens(root)
        except BestEffortError as exc:
            logger.warning("failed to revoke non-transient root tokens: %s", exc)
        logger.info("completed cleanup of old root tokens")
    else:
        logger.info("not revoking existing root tokens")

    try:
        tokens.revoke_non_root_tokens(root)
    except BestEffortError as exc:
        logger.warning("failed to revoke non-root tokens: %s", exc)
    logger.info("completed cleanup of old admin/service tokens")


def run_once(
    config: Configuration,
    *,
    insecure_skip_verify: bool = False,
    vault_interval: float = DEFAULT_VAULT_INTERVAL,
    stop: Optional[threading.Event] = None,
    client: Optional[SecretStoreClient] = None,
    hex_reader: Optional[PipedHexReader] = None,
    token_provider: Optional[TokenProvider] = None,
    environ: Optional[Mapping[str, str]] = None,
    health_poll_interval: float = 1.0,
) -> Dict[str, Any]:
    """
    Bring the secret store to a ready state and provision shared secrets.

    - Initializes/unseals the engine, persisting the init response (encrypted
      when `IKM_HOOK` names a key material source).
    - Mints a transient root token, cleans up tokens from earlier runs, and
      optionally issues a token-issuing token and launches the token provider.
    - Enables the KV engine and uploads database credentials and the proxy
      certificate pair, skipping anything already present.

    The IKM wipe and the transient root token revocation are registered on an
    ExitStack, so they run on every exit path once their resource exists.

    Returns a summary dict; `ok` is False when the run stopped early for a
    terminal reason (standby node, stop requested).
    Raises FatalError for unrecoverable failures, after cleanup has run.
    """
    info = config.secret_service
    env = os.environ if environ is None else environ
    stop = stop or threading.Event()

    with ExitStack() as stack:
        if client is None:
            client = stack.enter_context(_make_client(info, insecure_skip_verify))

        vmk = VMKEncryption(hex_reader or PipedHexReader(), Kdf(info.token_folder_path))
        hook = env.get(ENV_IKM_HOOK)
        if hook:
            stack.callback(vmk.wipe_ikm)
            try:
                vmk.load_ikm(hook)
            except (HexReaderError, EncryptionError, OSError, ValueError) as exc:
                raise FatalError(f"failed to setup vault master key encryption: {exc}") from exc
            logger.info("Enabled encryption of Vault master key")
        else:
            logger.info("vault master key encryption not enabled. %s not set.", ENV_IKM_HOOK)

        controller = VaultStateController(
            client,
            InitResponseStore(info.token_folder_path, info.token_file),
            vmk,
            secret_shares=info.vault_secret_shares,
            secret_threshold=info.vault_secret_threshold,
            revoke_root_tokens=info.revoke_root_tokens,
            interval=vault_interval,
            max_attempts=info.vault_init_max_attempts,
        )
        try:
            init_resp = controller.run_until_ready(stop)
            HealthGate(client, poll_interval=health_poll_interval).wait(stop)
        except TerminalError as exc:
            logger.error("secret store setup stopped: %s", exc)
            return {"ok": False, "kind": exc.kind.value, "note": str(exc)}

        tokens = TokenMaintenance(client)
        root = tokens.regenerate_root_token(init_resp)
        stack.callback(_revoke_transient_root, tokens, root)

        _cleanup_stale_tokens(info, controller, tokens, init_resp, root)

        if info.token_provider_admin_token_path:
            revoke_issuing = make_token_issuing_token(tokens, root, info.token_provider_admin_token_path)
            if info.token_provider_type == ONESHOT_PROVIDER:
                # Otherwise the provider keeps its own token fresh from here on
                stack.callback(revoke_issuing)

        if info.token_provider:
            provider = token_provider or TokenProvider()
            provider.set_configuration(info)
            provider.launch()
        else:
            logger.info("no token provider configured")

        enable_kv_secrets_engine(client, root)

        cred = Cred(client, root, PasswordGenerator(info.password_provider, info.password_provider_args))
        creds = provision_database_credentials(cred, config.databases)

        if info.wants_cert_upload():
            certs = Certs(client, info.cert_path, root)
            certificate = provision_certificate(certs, info.cert_file_path, info.key_file_path)
        else:
            logger.info("proxy certificate pair upload was skipped because cert config value(s) were blank")
            certificate = "skipped"

        logger.info("Vault init done successfully")
        return {
            "ok": True,
            "credentials": {"uploaded": creds.uploaded, "skipped": creds.skipped},
            "certificate": certificate,
        }


class Bootstrap:
    def __init__(self, insecure_skip_verify: bool = False, vault_interval: float = DEFAULT_VAULT_INTERVAL) -> None:
        self.insecure_skip_verify = insecure_skip_verify
        self.vault_interval = vault_interval
        self.result: Optional[Dict[str, Any]] = None

    def bootstrap_handler(self, config: Configuration, *, stop: Optional[threading.Event] = None, **kwargs: Any) -> bool:
        """
        Run the setup and report whether the service should keep running.

        Always False: this is a terminal stage, success included. The outcome
        of the run is kept on `self.result`. FatalError propagates.
        """
        self.result = run_once(
            config,
            insecure_skip_verify=self.insecure_skip_verify,
            vault_interval=self.vault_interval,
            stop=stop,
            **kwargs,
        )
        return False


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="secretstore-setup",
        description="Initialize and unseal the secret store, then provision shared secrets.",
    )
    parser.add_argument("-c", "--config", default=None, help="path to configuration.toml")
    parser.add_argument(
        "--vaultInterval",
        dest="vault_interval",
        type=int,
        default=DEFAULT_VAULT_INTERVAL,
        help="seconds between init/unseal attempts",
    )
    parser.add_argument(
        "--insecureSkipVerify",
        dest="insecure_skip_verify",
        action="store_true",
        help="skip TLS verification of the secret store even if a CA file is configured",
    )
    args = parser.parse_args(argv)

    try:
        config = Configuration.from_file(args.config) if args.config else Configuration.from_env()
    except (OSError, ValueError) as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("failed to load configuration: %s", exc)
        return 1

    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    stop = threading.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        signal.signal(sig, lambda *_: stop.set())

    bootstrap = Bootstrap(args.insecure_skip_verify, args.vault_interval)
    try:
        bootstrap.bootstrap_handler(config, stop=stop)
    except FatalError as exc:
        logger.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
