from __future__ import annotations

import subprocess
from typing import Sequence


class HexReaderError(RuntimeError):
    """The key material source could not be executed or decoded."""


class PipedHexReader:
    """
    Read binary key material from the stdout of an external executable.

    The executable prints the material hex-encoded; surrounding whitespace is
    ignored. The decoded bytes come back as a `bytearray` so the caller can
    zero them in place when done.
    """

    def __init__(self, *, timeout: float = 30.0) -> None:
        self._timeout = timeout

    def read_hex_bytes_from_exe(self, executable: str, args: Sequence[str] = ()) -> bytearray:
        try:
            proc = subprocess.run(
                [executable, *args],
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise HexReaderError(f"failed to run {executable}: {exc}") from exc

        if proc.returncode != 0:
            raise HexReaderError(f"{executable} exited with status {proc.returncode}")

        out = bytearray(proc.stdout.strip())
        try:
            decoded = bytearray.fromhex(out.decode("ascii"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise HexReaderError(f"{executable} did not print hex-encoded key material") from exc
        finally:
            out[:] = b"\x00" * len(out)
        if not decoded:
            raise HexReaderError(f"{executable} printed no key material")
        return decoded
