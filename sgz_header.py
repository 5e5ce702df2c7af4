#!/usr/bin/env python3
"""Read the signify metadata block embedded in a signed gzip archive.

signify stores its signature in the gzip header comment. Immediately after
the fixed 10-byte gzip framing the archive carries four text lines:

    untrusted comment: verify with <public-key-file>
    <signature-line>
    date=<ISO8601 date>
    key=<secret-key-path>

This module reads those lines from the raw bytes without decompressing or
validating the gzip stream. Nothing read here is trusted; the values are
cross-checked against the verifier's own findings later on.
"""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
import posixpath
import re
import sys
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, BinaryIO, Dict, Optional, Tuple

from sgz_errors import ErrorKind, GzipVerificationError
from sgz_gzip import decode_header_text

if TYPE_CHECKING:
    from sgz_policy import PolicyConstraints

logger = logging.getLogger(__name__)

# Fixed gzip member framing: magic(2) CM(1) FLG(1) MTIME(4) XFL(1) OS(1)
GZIP_FRAMING_SIZE = 10
# Upper bound on a single metadata line; signify writes short lines.
METADATA_LINE_LIMIT = 4096

# untrusted comment: verify with <token>
COMMENT_RE = re.compile(r"untrusted comment: verify with ([\w.-]+)")
# key=<path>
KEY_RE = re.compile(r"key=(.*)\Z")


def split_key_path(path: Optional[str]) -> Tuple[str, str]:
    """Split a key path into (directory, file). None splits as ("", "")."""
    if path is None:
        return "", ""
    return posixpath.split(path)


@dataclass(frozen=True)
class SignedArchiveHeader:
    comment_line: str
    public_key_file: Optional[str]
    signature_line: str
    sign_date_raw: str
    key_line: str
    secret_key_path: Optional[str]

    @property
    def secret_key_dir(self) -> str:
        return split_key_path(self.secret_key_path)[0]

    @property
    def secret_key_file(self) -> str:
        return split_key_path(self.secret_key_path)[1]


def _read_line(fh: BinaryIO) -> str:
    return decode_header_text(fh.readline(METADATA_LINE_LIMIT)).rstrip("\r\n")


def parse_key_line(line: str) -> Optional[str]:
    match = KEY_RE.match(line)
    return match.group(1) if match else None


def read_archive_header(path: pathlib.Path) -> Optional[SignedArchiveHeader]:
    """
    Read the comment, signature, date and key lines from a signed archive.

    Args:
        path: Path to the gzip archive

    Returns:
        The parsed header, or None if the comment line is not a signify
        "verify with" comment (no signature metadata present).

    Raises:
        GzipVerificationError: ARCHIVE_UNREADABLE if the file cannot be read
    """
    try:
        with open(path, "rb") as fh:
            fh.seek(GZIP_FRAMING_SIZE)
            comment_line = _read_line(fh)
            signature_line = _read_line(fh)
            date_line = _read_line(fh)
            key_line = _read_line(fh)
    except OSError as exc:
        raise GzipVerificationError(
            ErrorKind.ARCHIVE_UNREADABLE,
            f"Could not open gzip {path} to verify signature. {exc.strerror or exc}",
            {"path": str(path)},
        ) from exc

    match = COMMENT_RE.match(comment_line)
    if not match:
        logger.debug("no signify comment in %s", path)
        return None

    header = SignedArchiveHeader(
        comment_line=comment_line,
        public_key_file=match.group(1),
        signature_line=signature_line,
        sign_date_raw=date_line,
        key_line=key_line,
        secret_key_path=parse_key_line(key_line),
    )
    logger.debug(
        "header of %s: pubkey=%s key=%s", path, header.public_key_file, header.secret_key_path
    )
    return header


def check_header_policy(
    header: SignedArchiveHeader, policy: Optional["PolicyConstraints"] = None
) -> None:
    """Check the self-declared header against policy before any crypto runs."""
    require_public_key_file = policy.require_public_key_file if policy else None
    require_secret_key_path = policy.require_secret_key_path if policy else None

    if require_public_key_file is not None and header.public_key_file != require_public_key_file:
        raise GzipVerificationError(
            ErrorKind.HEADER_PUBLIC_KEY_MISMATCH,
            f'gzip header: untrusted comment public key is "{header.public_key_file}" '
            f'but required is "{require_public_key_file}"',
            {"found": header.public_key_file, "required": require_public_key_file},
        )

    if header.secret_key_path is None:
        raise GzipVerificationError(
            ErrorKind.HEADER_KEY_PATH_MALFORMED,
            f'gzip header: no key path where expected, found "{header.key_line}"',
            {"found": header.key_line},
        )

    if require_secret_key_path is None:
        return

    required_dir, required_file = split_key_path(require_secret_key_path)
    if header.secret_key_dir != required_dir:
        raise GzipVerificationError(
            ErrorKind.HEADER_KEY_DIR_MISMATCH,
            f'gzip header: key directory in comment is "{header.secret_key_dir}" '
            f'but required is "{required_dir}"',
            {"found": header.secret_key_dir, "required": required_dir},
        )
    if header.secret_key_file != required_file:
        raise GzipVerificationError(
            ErrorKind.HEADER_KEY_FILE_MISMATCH,
            f'gzip header: key file in comment is "{header.secret_key_file}" '
            f'but required is "{required_file}"',
            {"found": header.secret_key_file, "required": required_file},
        )


def header_to_dict(header: SignedArchiveHeader) -> Dict[str, Any]:
    return {
        "comment": header.comment_line,
        "publicKeyFile": header.public_key_file,
        "signature": header.signature_line,
        "date": header.sign_date_raw,
        "secretKeyPath": header.secret_key_path,
        "secretKeyDir": header.secret_key_dir,
        "secretKeyFile": header.secret_key_file,
    }


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Show the untrusted signify header of a signed gzip archive",
    )
    parser.add_argument("archive", type=pathlib.Path, help="Path to signed gzip archive")
    args = parser.parse_args()

    try:
        header = read_archive_header(args.archive)
    except GzipVerificationError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 2

    if header is None:
        print("Error: gzip header: no signify comment found", file=sys.stderr)
        return 1

    print(json.dumps(header_to_dict(header), indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
