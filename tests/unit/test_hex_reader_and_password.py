from __future__ import annotations

import base64
import os
from pathlib import Path

import pytest

from common.hex_reader import HexReaderError, PipedHexReader
from common.password import PasswordGenerationError, PasswordGenerator


def _script(tmp_path: Path, name: str, body: str) -> str:
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body + "\n")
    os.chmod(path, 0o755)
    return str(path)


def test_hex_reader_decodes_stdout(tmp_path):
    exe = _script(tmp_path, "ikm", "echo '  00ff10  '")
    assert PipedHexReader().read_hex_bytes_from_exe(exe) == bytearray(b"\x00\xff\x10")


def test_hex_reader_passes_args(tmp_path):
    exe = _script(tmp_path, "ikm", 'echo "$1"')
    assert PipedHexReader().read_hex_bytes_from_exe(exe, ["abcd"]) == bytearray(b"\xab\xcd")


@pytest.mark.parametrize(
    "body",
    [
        "exit 3",
        "echo not-hex",
        "true",
    ],
)
def test_hex_reader_failures(tmp_path, body):
    exe = _script(tmp_path, "ikm", body)
    with pytest.raises(HexReaderError):
        PipedHexReader().read_hex_bytes_from_exe(exe)


def test_hex_reader_missing_executable(tmp_path):
    with pytest.raises(HexReaderError):
        PipedHexReader().read_hex_bytes_from_exe(str(tmp_path / "missing"))


@pytest.mark.parametrize("provider", [None, "", "default"])
def test_default_password_is_random_base64(provider):
    gen = PasswordGenerator(provider)
    first = gen.generate()
    second = gen.generate()

    assert len(first) == 44
    assert len(base64.b64decode(first)) == 33
    assert first != second
    assert gen.provider == "default"


def test_external_password_provider(tmp_path):
    exe = _script(tmp_path, "pw", 'echo "pw-$1"')
    assert PasswordGenerator(exe, ["x"]).generate() == "pw-x"


def test_external_password_provider_failure(tmp_path):
    exe = _script(tmp_path, "pw", "exit 1")
    with pytest.raises(PasswordGenerationError):
        PasswordGenerator(exe).generate()


def test_unknown_password_provider():
    with pytest.raises(PasswordGenerationError):
        PasswordGenerator("no-such-password-provider").generate()
