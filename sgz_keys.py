#!/usr/bin/env python3
"""signify key file parsing.

A signify public key file is two lines:

    untrusted comment: <free text>
    base64("Ed" || keynum[8] || ed25519 public key[32])

This module is optional and only requires `cryptography` when used.
"""

from __future__ import annotations

import argparse
import base64
import binascii
import json
import pathlib
import sys
from typing import NamedTuple

from sgz_config import SignifyConfig, resolve_key_path
from sgz_errors import KeyFormatError, SignifyError

COMMENT_PREFIX = "untrusted comment: "
PKALG = b"Ed"
KEYNUM_SIZE = 8
PUBLIC_KEY_SIZE = 32


class SignifyPublicKey(NamedTuple):
    comment: str  # Text after "untrusted comment: "
    keynum: bytes
    key: object  # cryptography Ed25519PublicKey


def _load_ed25519():
    try:
        from cryptography.hazmat.primitives.asymmetric import ed25519
    except Exception as exc:  # pragma: no cover - depends on optional dependency
        raise RuntimeError(
            "cryptography is required for key operations. Install with: pip install cryptography"
        ) from exc
    return ed25519


def parse_public_key(text: str, source: str = "<key>") -> SignifyPublicKey:
    ed25519 = _load_ed25519()

    lines = text.splitlines()
    if not lines or not lines[0].startswith(COMMENT_PREFIX):
        raise KeyFormatError(f"invalid comment in {source}; must start with '{COMMENT_PREFIX}'")
    if len(lines) < 2:
        raise KeyFormatError(f"missing key data in {source}")

    try:
        blob = base64.b64decode(lines[1].strip(), validate=True)
    except binascii.Error as exc:
        raise KeyFormatError(f"invalid base64 key data in {source}") from exc

    if len(blob) != len(PKALG) + KEYNUM_SIZE + PUBLIC_KEY_SIZE:
        raise KeyFormatError(f"invalid key length in {source}: {len(blob)} bytes")
    if blob[: len(PKALG)] != PKALG:
        raise KeyFormatError(f"unsupported key algorithm in {source}: {blob[:2]!r}")

    keynum = blob[len(PKALG) : len(PKALG) + KEYNUM_SIZE]
    key = ed25519.Ed25519PublicKey.from_public_bytes(blob[len(PKALG) + KEYNUM_SIZE :])
    return SignifyPublicKey(comment=lines[0][len(COMMENT_PREFIX) :], keynum=keynum, key=key)


def read_public_key(path: pathlib.Path) -> SignifyPublicKey:
    """
    Read and validate a signify public key file.

    Raises:
        SignifyError: If the file cannot be read
        KeyFormatError: If the contents are not a signify Ed25519 public key
    """
    try:
        text = pathlib.Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise SignifyError(f"no readable public key {path}. {exc}") from exc
    return parse_public_key(text, str(path))


def main() -> int:
    parser = argparse.ArgumentParser(description="Show signify public key details")
    parser.add_argument("public_key", help="Public key file (bare names resolve in the key dir)")
    parser.add_argument("--key-dir", type=str, help="Directory holding signify keys")
    args = parser.parse_args()

    config = SignifyConfig.from_env().with_overrides(key_dir=args.key_dir)
    path = resolve_key_path(args.public_key, config.key_dir)
    try:
        key = read_public_key(path)
    except SignifyError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1

    print(json.dumps({"path": str(path), "comment": key.comment, "keynum": key.keynum.hex()}, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
