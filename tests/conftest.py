from __future__ import annotations

import shlex
import struct
import sys
import zlib
from pathlib import Path
from typing import Callable, List, Optional

import pytest

ALICE_COMMENT_LINES = [
    "untrusted comment: verify with alice.pub",
    "RWQf6LRCGA9i59SLOFxz6NxvASXDJeRtuZykwQepbDEGt87ig1BNpWaVWuNrm73YiIiJpq01dE2SR1thmsbCmOfzz1jQFqHbTAg=",
    "date=2024-07-28T17:32:01Z",
    "key=/etc/keys/alice.sec",
    "algorithm=SHA512/256",
    "blocksize=65536",
    "",
    "3f0e1a5c9d2b7e4f8a6c1d0e2b3a4f5e6d7c8b9a0f1e2d3c4b5a69788796a5b4",
]

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="fake verifier is a /bin/sh script")


def gzip_member(payload: bytes, comment: Optional[str] = None, filename: Optional[str] = None) -> bytes:
    flags = (0x10 if comment is not None else 0) | (0x08 if filename is not None else 0)
    data = struct.pack("<2sBBIBB", b"\x1f\x8b", 8, flags, 0, 0, 3)
    if filename is not None:
        data += filename.encode("latin-1") + b"\x00"
    if comment is not None:
        data += comment.encode("utf-8") + b"\x00"
    compressor = zlib.compressobj(9, zlib.DEFLATED, -15)
    data += compressor.compress(payload) + compressor.flush()
    data += struct.pack("<II", zlib.crc32(payload) & 0xFFFFFFFF, len(payload) & 0xFFFFFFFF)
    return data


@pytest.fixture(scope="session")
def repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


@pytest.fixture
def signed_archive(tmp_path: Path) -> Callable[..., Path]:
    """Build a gzip archive whose header comment carries signify metadata."""

    def _build(
        lines: Optional[List[str]] = None,
        payload: bytes = b"package contents\n" * 64,
        name: str = "pkg.tgz",
    ) -> Path:
        comment_lines = ALICE_COMMENT_LINES if lines is None else lines
        path = tmp_path / name
        path.write_bytes(gzip_member(payload, "\n".join(comment_lines) + "\n"))
        return path

    return _build


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def fake_signify(tmp_path: Path) -> Callable[..., Path]:
    """Write an executable stand-in for signify.

    The script echoes the archive named by ``-x`` to stdout, optionally
    writes a diagnostic line to stderr, records that it ran, and exits with
    the chosen status.
    """
    counter = {"n": 0}

    def _build(
        exit_status: int = 0,
        diagnostic: Optional[str] = None,
        body: Optional[str] = None,
    ) -> Path:
        counter["n"] += 1
        path = tmp_path / f"signify-{counter['n']}"
        marker = tmp_path / f"signify-{counter['n']}.ran"
        lines = ["#!/bin/sh", f"echo \"$@\" > {shlex.quote(str(marker))}"]
        if body is not None:
            lines.append(body)
        else:
            lines.append('cat "$3"')
            if diagnostic is not None:
                lines.append(f"printf '%s\\n' {shlex.quote(diagnostic)} >&2")
            lines.append(f"exit {exit_status}")
        path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        path.chmod(0o755)
        return path

    return _build


def ran(signify: Path) -> bool:
    return signify.with_name(signify.name + ".ran").exists()


def ran_with(signify: Path) -> str:
    return signify.with_name(signify.name + ".ran").read_text(encoding="utf-8").strip()
