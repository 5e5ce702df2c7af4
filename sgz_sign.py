#!/usr/bin/env python3
"""Sign and verify files with signify.

Helpers:
- sign: create a detached <file>.sig
- verify: check a detached <file>.sig against a public key
- sign_gzip: embed a signature in a gzip archive, in place

Each helper checks its inputs first (skippable) and raises SignifyError with
a one-line reason on failure.
"""

from __future__ import annotations

import argparse
import logging
import os
import pathlib
import shutil
import subprocess
import sys
from typing import Optional

from sgz_config import SignifyConfig, check_signify_executable, resolve_key_path
from sgz_errors import GzipVerificationError, SignifyError
from sgz_keys import read_public_key

logger = logging.getLogger(__name__)


def _require_signify(config: SignifyConfig, skip_signify_check: bool) -> None:
    if skip_signify_check:
        return
    try:
        check_signify_executable(config)
    except GzipVerificationError as exc:
        raise SignifyError(exc.message) from exc


def _require_readable(path: pathlib.Path, what: str) -> None:
    if not os.access(path, os.R_OK):
        raise SignifyError(f"no readable {what} {path}.")


def _run(argv: list, passphrase: Optional[str] = None) -> subprocess.CompletedProcess:
    logger.debug("running %s", argv)
    try:
        return subprocess.run(
            argv,
            input=None if passphrase is None else f"{passphrase}\n",
            capture_output=True,
            text=True,
            check=False,
        )
    except OSError as exc:
        raise SignifyError(f"Could not exec {argv[0]}. {exc.strerror or exc}") from exc


def sign(
    file_path: pathlib.Path,
    passphrase: str,
    secret_key: pathlib.Path,
    config: Optional[SignifyConfig] = None,
    skip_signify_check: bool = False,
    skip_prechecks: bool = False,
) -> pathlib.Path:
    """Create <file_path>.sig and return its path."""
    config = config or SignifyConfig.from_env()
    file_path = pathlib.Path(file_path)
    sig_path = file_path.with_name(file_path.name + ".sig")
    _require_signify(config, skip_signify_check)

    if not skip_prechecks:
        _require_readable(file_path, "file")
        # Absent is fine; signify reports a missing directory itself.
        if sig_path.exists() and not os.access(sig_path, os.W_OK):
            raise SignifyError(f"cannot write signature file {sig_path}.")
        _require_readable(secret_key, "secret key")

    result = _run(
        [config.signify_path, "-S", "-s", str(secret_key), "-m", str(file_path)],
        passphrase,
    )
    if result.returncode != 0:
        raise SignifyError(f"signify error: {result.stderr.strip()}")
    return sig_path


def verify(
    file_path: pathlib.Path,
    public_key: pathlib.Path,
    config: Optional[SignifyConfig] = None,
    skip_signify_check: bool = False,
    skip_prechecks: bool = False,
) -> bool:
    """Verify <file_path>.sig. Returns True or raises SignifyError."""
    config = config or SignifyConfig.from_env()
    file_path = pathlib.Path(file_path)
    _require_signify(config, skip_signify_check)

    if not skip_prechecks:
        _require_readable(file_path, "file")
        _require_readable(file_path.with_name(file_path.name + ".sig"), "signature file")
        _require_readable(public_key, "public key")
        read_public_key(public_key)

    result = _run([config.signify_path, "-V", "-p", str(public_key), "-m", str(file_path)])
    output = (result.stdout + result.stderr).rstrip("\n")
    if result.returncode != 0:
        raise SignifyError(f"signature not verified: {output}")
    if output != "Signature Verified":
        raise SignifyError(f"unexpected signature result, signature not verified. {output}")
    return True


def sign_gzip(
    gzip_path: pathlib.Path,
    passphrase: str,
    secret_key: pathlib.Path,
    temp_dir: pathlib.Path,
    config: Optional[SignifyConfig] = None,
    skip_signify_check: bool = False,
    skip_prechecks: bool = False,
) -> None:
    """Sign a gzip archive in place, staging the output in temp_dir."""
    config = config or SignifyConfig.from_env()
    gzip_path = pathlib.Path(gzip_path)
    _require_signify(config, skip_signify_check)

    if not skip_prechecks:
        _require_readable(secret_key, "secret key")
        _require_readable(gzip_path, "gzip")
        if not os.access(gzip_path, os.W_OK):
            raise SignifyError(f"no writeable gzip {gzip_path}.")

    out_path = pathlib.Path(temp_dir) / "out.tgz"
    try:
        result = _run(
            [
                config.signify_path,
                "-Sz",
                "-s",
                str(secret_key),
                "-m",
                str(gzip_path),
                "-x",
                str(out_path),
            ],
            passphrase,
        )
        if result.returncode != 0:
            raise SignifyError(f"failed to sign gzip {gzip_path}. {result.stderr.strip()}")
        # Never replace the original with an empty file.
        if not out_path.exists() or out_path.stat().st_size == 0:
            raise SignifyError(f"error signing gzip {gzip_path}. Zero-length output.")
        shutil.copyfile(out_path, gzip_path)
    finally:
        out_path.unlink(missing_ok=True)


# =============================================================================
# CLI
# =============================================================================


def _read_passphrase(env_var: Optional[str]) -> str:
    if env_var:
        value = os.environ.get(env_var)
        if value is None:
            raise SignifyError(f"environment variable {env_var} is not set")
        return value
    return sys.stdin.readline().rstrip("\n")


def _common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--signify", type=str, help="Path to the signify binary")
    parser.add_argument("--key-dir", type=str, help="Directory holding signify keys")
    parser.add_argument(
        "--skip-signify-check", action="store_true", help="Do not check that signify is executable"
    )
    parser.add_argument("--skip-prechecks", action="store_true", help="Skip input checks")


def _config_from(args: argparse.Namespace) -> SignifyConfig:
    return SignifyConfig.from_env().with_overrides(signify_path=args.signify, key_dir=args.key_dir)


def sign_main() -> int:
    parser = argparse.ArgumentParser(description="Create a detached signify signature")
    parser.add_argument("file", type=pathlib.Path, help="File to sign")
    parser.add_argument("--secret-key", "-s", required=True, help="Secret key to sign with")
    parser.add_argument(
        "--passphrase-env", help="Read the passphrase from this variable instead of stdin"
    )
    _common_args(parser)
    args = parser.parse_args()

    config = _config_from(args)
    try:
        sig_path = sign(
            args.file,
            _read_passphrase(args.passphrase_env),
            resolve_key_path(args.secret_key, config.key_dir),
            config=config,
            skip_signify_check=args.skip_signify_check,
            skip_prechecks=args.skip_prechecks,
        )
    except SignifyError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    print(sig_path)
    return 0


def verify_main() -> int:
    parser = argparse.ArgumentParser(description="Verify a detached signify signature")
    parser.add_argument("file", type=pathlib.Path, help="Signed file (signature in <file>.sig)")
    parser.add_argument("--public-key", "-p", required=True, help="Public key to verify with")
    _common_args(parser)
    args = parser.parse_args()

    config = _config_from(args)
    try:
        verify(
            args.file,
            resolve_key_path(args.public_key, config.key_dir),
            config=config,
            skip_signify_check=args.skip_signify_check,
            skip_prechecks=args.skip_prechecks,
        )
    except SignifyError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    print("Signature Verified")
    return 0


def sign_gzip_main() -> int:
    parser = argparse.ArgumentParser(description="Sign a gzip archive in place with signify")
    parser.add_argument("archive", type=pathlib.Path, help="gzip archive to sign")
    parser.add_argument("--secret-key", "-s", required=True, help="Secret key to sign with")
    parser.add_argument("--temp-dir", type=pathlib.Path, help="Private scratch directory")
    parser.add_argument(
        "--passphrase-env", help="Read the passphrase from this variable instead of stdin"
    )
    _common_args(parser)
    args = parser.parse_args()

    config = _config_from(args)
    try:
        sign_gzip(
            args.archive,
            _read_passphrase(args.passphrase_env),
            resolve_key_path(args.secret_key, config.key_dir),
            args.temp_dir or pathlib.Path(config.temp_dir),
            config=config,
            skip_signify_check=args.skip_signify_check,
            skip_prechecks=args.skip_prechecks,
        )
    except SignifyError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(sign_main())
