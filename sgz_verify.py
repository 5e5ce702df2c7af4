#!/usr/bin/env python3
"""Verify signify-signed gzip archives and enforce signing-key policy.

Verification steps:
- Read the untrusted signify header and check it against policy
- Run signify on the archive while decoding its gzip comment in-process
- Classify any verifier failure
- Cross-check the verified signer against the header and the policy

Usage:
    # Verify an archive, reporting signer and date
    python sgz_verify.py package.tgz

    # Require a particular signing key
    python sgz_verify.py package.tgz --require-secret-key /etc/signify/release.sec

    # Take requirements from a policy file, print JSON
    python sgz_verify.py package.tgz --policy policy.json --json

Exit codes:
    0 = Verification passed
    1 = Verification failed
    2 = Error (verifier unavailable, invalid policy, etc.)
"""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
from typing import Optional

from sgz_config import SignifyConfig, check_signify_executable, resolve_key_path
from sgz_errors import ErrorKind, GzipVerificationError
from sgz_exec import verify_gzip_signature
from sgz_header import check_header_policy, read_archive_header
from sgz_policy import (
    PolicyConstraints,
    PolicyError,
    VerifiedSigner,
    cross_validate,
    load_policy,
    merge_policy,
)

logger = logging.getLogger(__name__)


def verify_gzip(
    archive: pathlib.Path,
    temp_dir: Optional[pathlib.Path] = None,
    policy: Optional[PolicyConstraints] = None,
    config: Optional[SignifyConfig] = None,
    public_key: Optional[pathlib.Path] = None,
    skip_signify_check: bool = False,
    skip_prechecks: bool = False,
) -> VerifiedSigner:
    """
    Verify a signify-signed gzip archive.

    Args:
        archive: Path to the archive
        temp_dir: Private scratch directory for verifier diagnostics
            (defaults to config.temp_dir)
        policy: Required public key file and/or secret key path
        config: signify configuration (defaults to the environment)
        public_key: Explicit public key handed to signify
        skip_signify_check: Do not check that signify is executable
        skip_prechecks: Skip header inspection. No archive verifies without
            it, so this always fails with NO_SIGNATURE_COMMENT.

    Returns:
        VerifiedSigner(signer, sign_date)

    Raises:
        GzipVerificationError: Exactly one, describing why verification failed
    """
    config = config or SignifyConfig.from_env()
    archive = pathlib.Path(archive)
    temp_dir = pathlib.Path(temp_dir) if temp_dir is not None else pathlib.Path(config.temp_dir)

    if not skip_signify_check:
        check_signify_executable(config)

    no_comment = GzipVerificationError(
        ErrorKind.NO_SIGNATURE_COMMENT,
        "gzip header: no signify comment found",
        {"path": str(archive)},
    )
    if skip_prechecks:
        raise no_comment

    header = read_archive_header(archive)
    if header is None:
        raise no_comment
    check_header_policy(header, policy)

    outcome = verify_gzip_signature(archive, temp_dir, config, public_key)
    if not outcome.verified:
        kind = outcome.kind or ErrorKind.OTHER
        raise GzipVerificationError(
            kind,
            f"signature not verified: {outcome.message}",
            {"diagnostic": outcome.diagnostic, "exitStatus": outcome.exit_status},
        )

    return cross_validate(outcome, header, policy)


# =============================================================================
# CLI
# =============================================================================


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Verify signify-signed gzip archives",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("archive", type=pathlib.Path, help="Path to signed gzip archive")
    parser.add_argument(
        "--temp-dir",
        type=pathlib.Path,
        help="Private scratch directory for verifier diagnostics",
    )
    parser.add_argument(
        "--policy",
        type=pathlib.Path,
        help="Policy file (JSON or YAML) naming the required signing key",
    )
    parser.add_argument(
        "--require-public-key",
        type=str,
        help="Public key file name the archive must name, e.g. release.pub",
    )
    parser.add_argument(
        "--require-secret-key",
        type=str,
        help="Secret key path the archive must be signed with",
    )
    parser.add_argument(
        "--public-key",
        type=str,
        help="Public key to verify with (bare names resolve in the key dir)",
    )
    parser.add_argument("--signify", type=str, help="Path to the signify binary")
    parser.add_argument("--key-dir", type=str, help="Directory holding signify keys")
    parser.add_argument(
        "--skip-signify-check",
        action="store_true",
        help="Do not check that signify is executable",
    )
    parser.add_argument(
        "--skip-prechecks",
        action="store_true",
        help="Skip header inspection (verification then always fails)",
    )
    parser.add_argument("--json", action="store_true", help="Output result as JSON")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug logging")

    args = parser.parse_args()
    _configure_logging(args.verbose)

    config = SignifyConfig.from_env().with_overrides(
        signify_path=args.signify,
        key_dir=args.key_dir,
        temp_dir=str(args.temp_dir) if args.temp_dir else None,
    )

    try:
        base = load_policy(args.policy) if args.policy else None
    except PolicyError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    policy = merge_policy(base, args.require_public_key, args.require_secret_key)
    public_key = resolve_key_path(args.public_key, config.key_dir) if args.public_key else None

    try:
        signer, sign_date = verify_gzip(
            args.archive,
            policy=policy,
            config=config,
            public_key=public_key,
            skip_signify_check=args.skip_signify_check,
            skip_prechecks=args.skip_prechecks,
        )
    except GzipVerificationError as e:
        if args.json:
            print(json.dumps(e.to_dict(), indent=2))
        else:
            print(f"Error: {e.message}", file=sys.stderr)
        return 2 if e.kind.is_system_fault else 1

    if args.json:
        print(json.dumps({"verified": True, "signer": signer, "date": sign_date}, indent=2))
    else:
        print(f"Signer: {signer}")
        print(f"Date: {sign_date}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
