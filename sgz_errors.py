#!/usr/bin/env python3
"""Error taxonomy and verifier diagnostic classification for SGZ.

Every failed verification surfaces as exactly one GzipVerificationError whose
``kind`` is one of the ErrorKind members below. The classifier functions map
the external verifier's diagnostic text or exit status onto that taxonomy.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Tuple

# =============================================================================
# Error kinds
# =============================================================================


class ErrorKind(Enum):
    # Header inspection
    ARCHIVE_UNREADABLE = "archive_unreadable"
    NO_SIGNATURE_COMMENT = "no_signature_comment"
    HEADER_PUBLIC_KEY_MISMATCH = "header_public_key_mismatch"
    HEADER_KEY_PATH_MALFORMED = "header_key_path_malformed"
    HEADER_KEY_DIR_MISMATCH = "header_key_dir_mismatch"
    HEADER_KEY_FILE_MISMATCH = "header_key_file_mismatch"

    # External verifier
    NO_FILE = "no_file"
    UNSIGNED = "unsigned"
    NOT_COMPRESSED_FORMAT = "not_compressed_format"
    TRUNCATED = "truncated"
    SIGNATURE_MISMATCH = "signature_mismatch"
    BAD_SIGNATURE = "bad_signature"
    EXEC_FAILED = "exec_failed"
    NO_EXECUTABLE = "no_executable"
    OTHER = "other"

    # Post-verification cross-checks
    SIGNER_HEADER_DIR_MISMATCH = "signer_header_dir_mismatch"
    SIGNER_HEADER_FILE_MISMATCH = "signer_header_file_mismatch"
    SIGNER_POLICY_DIR_MISMATCH = "signer_policy_dir_mismatch"
    SIGNER_POLICY_FILE_MISMATCH = "signer_policy_file_mismatch"
    SIGNER_PUBLIC_KEY_MISMATCH = "signer_public_key_mismatch"

    @property
    def is_system_fault(self) -> bool:
        """True for failures of the environment rather than of the archive."""
        return self in {ErrorKind.EXEC_FAILED, ErrorKind.NO_EXECUTABLE}


# =============================================================================
# Exceptions
# =============================================================================


class SignifyError(Exception):
    """Base error for signify operations."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class KeyFormatError(SignifyError):
    """Raised when a signify key file is malformed."""

    pass


class GzipVerificationError(SignifyError):
    """A classified failure of signed gzip verification."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.details: Dict[str, Any] = dict(details or {})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": False,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return f"GzipVerificationError({self.kind.name}, {self.message!r})"


# =============================================================================
# Classification of verifier results
# =============================================================================

# Checked in order; the first substring found wins.
DIAGNOSTIC_PATTERNS: Tuple[Tuple[str, ErrorKind, str], ...] = (
    ("unsigned gzip archive", ErrorKind.UNSIGNED, "unsigned gzip archive"),
    ("invalid magic in gzheader", ErrorKind.NOT_COMPRESSED_FORMAT, "not a gzip"),
    ("gzheader truncated", ErrorKind.TRUNCATED, "gzheader truncated"),
    ("signature mismatch", ErrorKind.SIGNATURE_MISMATCH, "signature mismatch"),
)

EXIT_STATUS_KINDS: Dict[int, Tuple[ErrorKind, str]] = {
    1: (ErrorKind.BAD_SIGNATURE, "bad signature"),
    2: (ErrorKind.EXEC_FAILED, "no exec of signify"),
    4: (ErrorKind.SIGNATURE_MISMATCH, "signature mismatch"),
}


def classify_diagnostic(text: str) -> Tuple[ErrorKind, str]:
    """
    Classify a line written by the verifier to its diagnostic channel.

    Args:
        text: Raw diagnostic text (may carry a trailing newline)

    Returns:
        Tuple of (error kind, short message). Unrecognized text is kept
        verbatim as the message of an OTHER error.
    """
    for needle, kind, message in DIAGNOSTIC_PATTERNS:
        if needle in text:
            return kind, message
    return ErrorKind.OTHER, text.rstrip("\r\n")


def classify_exit_status(status: int) -> Optional[Tuple[ErrorKind, str]]:
    """
    Classify a verifier exit status when no diagnostic text was produced.

    Returns None for status 0 (verified). Negative values are the
    subprocess convention for termination by signal.
    """
    if status == 0:
        return None
    if status < 0:
        return ErrorKind.EXEC_FAILED, f"verifier killed by signal {-status}"
    if status in EXIT_STATUS_KINDS:
        return EXIT_STATUS_KINDS[status]
    return ErrorKind.EXEC_FAILED, f"no exec of signify: {status}"
