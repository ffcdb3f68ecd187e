from __future__ import annotations

import stat

import pytest

from state.init_store import InitResponseStore, InitStoreError
from state.models import EngineState, InitResponse, Token, TokenScope, classify_health


def test_write_then_read(tmp_path):
    store = InitResponseStore(tmp_path / "assets", "resp-init.json")
    resp = InitResponse(keys=["aa"], keys_base64=["qg=="], root_token="s.root", secret_shares=1, secret_threshold=1)

    store.write(resp)

    assert store.exists()
    assert stat.S_IMODE(store.path.stat().st_mode) == 0o600
    assert stat.S_IMODE(store.path.parent.stat().st_mode) == 0o700
    assert store.read() == resp


def test_existing_file_mode_is_tightened(tmp_path):
    path = tmp_path / "resp-init.json"
    path.write_text("{}")
    path.chmod(0o644)

    InitResponseStore(tmp_path, "resp-init.json").write(InitResponse())

    assert stat.S_IMODE(path.stat().st_mode) == 0o600


def test_missing_file_raises(tmp_path):
    store = InitResponseStore(tmp_path, "resp-init.json")
    assert store.exists() is False
    with pytest.raises(InitStoreError):
        store.read()


@pytest.mark.parametrize("content", ["not json", '{"keys": "not-a-list"}'])
def test_corrupt_file_raises(tmp_path, content):
    (tmp_path / "resp-init.json").write_text(content)
    with pytest.raises(InitStoreError):
        InitResponseStore(tmp_path, "resp-init.json").read()


def test_reads_foreign_field_layout(tmp_path):
    # Files written by earlier tooling may carry extra fields
    (tmp_path / "resp-init.json").write_text(
        '{"keys": ["aa"], "keys_base64": ["qg=="], "root_token": "", "recovery_keys": null}'
    )
    resp = InitResponseStore(tmp_path, "resp-init.json").read()
    assert resp.unseal_keys() == ["qg=="]


@pytest.mark.parametrize(
    "status,state",
    [
        (200, EngineState.UNSEALED),
        (429, EngineState.STANDBY),
        (501, EngineState.UNINITIALIZED),
        (503, EngineState.SEALED),
        (500, EngineState.UNREACHABLE),
        (0, EngineState.UNREACHABLE),
        (None, EngineState.UNREACHABLE),
    ],
)
def test_classify_health(status, state):
    assert classify_health(status) is state


def test_without_root_token_leaves_original():
    resp = InitResponse(keys_base64=["qg=="], root_token="s.root")
    stripped = resp.without_root_token()
    assert stripped.root_token == ""
    assert resp.root_token == "s.root"


def test_unseal_keys_requires_plaintext():
    with pytest.raises(ValueError):
        InitResponse(encrypted_keys=["00"], nonces=["00"]).unseal_keys()


def test_token_repr_hides_value():
    token = Token(value="s.secret", scope=TokenScope.ROOT, accessor="acc")
    assert "s.secret" not in repr(token)


@pytest.mark.parametrize(
    "kwargs",
    [{"keys": ["aa", "0b"]}, {"keys_base64": ["qg==", "Cw=="]}],
)
def test_either_share_encoding_fills_the_other(kwargs):
    resp = InitResponse(**kwargs)
    assert resp.keys == ["aa", "0b"]
    assert resp.keys_base64 == ["qg==", "Cw=="]
