"""Signing-key policy and post-verification cross-checks.

After signify accepts an archive, three independent claims about the signer
must agree: the untrusted header written into the archive, the signer
recorded in the decompressed gzip comment, and the caller's policy.
"""

from __future__ import annotations

import json
import logging
import pathlib
import re
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional

from sgz_errors import ErrorKind, GzipVerificationError
from sgz_exec import VerificationOutcome
from sgz_header import SignedArchiveHeader, split_key_path

logger = logging.getLogger(__name__)

POLICY_SCHEMA_NAME = "sgz-policy-v1.schema.json"


class PolicyError(ValueError):
    """Raised when a policy file cannot be loaded or is invalid."""

    pass


@dataclass(frozen=True)
class PolicyConstraints:
    require_public_key_file: Optional[str] = None
    require_secret_key_path: Optional[str] = None

    @property
    def require_secret_key_dir(self) -> Optional[str]:
        if self.require_secret_key_path is None:
            return None
        return split_key_path(self.require_secret_key_path)[0]

    @property
    def require_secret_key_file(self) -> Optional[str]:
        if self.require_secret_key_path is None:
            return None
        return split_key_path(self.require_secret_key_path)[1]


class VerifiedSigner(NamedTuple):
    signer: Optional[str]
    sign_date: Optional[str]


# =============================================================================
# Policy files
# =============================================================================


def _format_schema_errors(errors: List[Any]) -> str:
    lines = []
    for err in errors[:5]:
        path = err.json_path or "$"
        lines.append(f"{path}: {err.message}")
    if len(errors) > 5:
        lines.append(f"... {len(errors) - 5} more")
    return "\n".join(lines)


def _load_schema() -> Dict[str, Any]:
    candidate = pathlib.Path(__file__).parent / POLICY_SCHEMA_NAME
    if not candidate.exists():
        raise PolicyError(f"Policy schema not found ({POLICY_SCHEMA_NAME})")
    with candidate.open(encoding="utf-8") as f:
        return json.load(f)


def _parse_policy_text(path: pathlib.Path, text: str) -> Any:
    if path.suffix.lower() in {".yaml", ".yml"}:
        try:
            import yaml
        except ImportError as exc:  # pragma: no cover - depends on optional dependency
            raise RuntimeError(
                "PyYAML is required for YAML policy files. Install with: pip install pyyaml"
            ) from exc
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise PolicyError(f"Invalid YAML in policy {path}: {exc}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise PolicyError(f"Invalid JSON in policy {path}: {exc}") from exc


def load_policy(path: pathlib.Path) -> PolicyConstraints:
    """
    Load and validate a policy file (JSON, or YAML by extension).

    Raises:
        PolicyError: If the file is unreadable or fails schema validation
    """
    try:
        from jsonschema import Draft202012Validator
    except ImportError as exc:  # pragma: no cover - depends on optional dependency
        raise RuntimeError(
            "jsonschema is required to validate policy files. Install with: pip install jsonschema"
        ) from exc

    path = pathlib.Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise PolicyError(f"Could not read policy {path}: {exc.strerror or exc}") from exc

    data = _parse_policy_text(path, text)
    if data is None:
        data = {}

    schema = _load_schema()
    Draft202012Validator.check_schema(schema)
    errors = sorted(Draft202012Validator(schema).iter_errors(data), key=lambda e: e.json_path)
    if errors:
        raise PolicyError(f"Policy {path} failed validation:\n{_format_schema_errors(errors)}")

    return PolicyConstraints(
        require_public_key_file=data.get("requirePublicKeyFile"),
        require_secret_key_path=data.get("requireSecretKeyPath"),
    )


def merge_policy(
    base: Optional[PolicyConstraints],
    require_public_key_file: Optional[str] = None,
    require_secret_key_path: Optional[str] = None,
) -> PolicyConstraints:
    """Overlay explicitly given requirements on a (possibly absent) base policy."""
    base = base or PolicyConstraints()
    return PolicyConstraints(
        require_public_key_file=(
            require_public_key_file
            if require_public_key_file is not None
            else base.require_public_key_file
        ),
        require_secret_key_path=(
            require_secret_key_path
            if require_secret_key_path is not None
            else base.require_secret_key_path
        ),
    )


# =============================================================================
# Cross-validation
# =============================================================================


def _mismatch(kind: ErrorKind, message: str, expected: str, actual: str) -> GzipVerificationError:
    return GzipVerificationError(kind, message, {"expected": expected, "actual": actual})


def expected_secret_key_file(public_key_file: str) -> str:
    """Map a signify public key name to its conventional secret key name."""
    return re.sub(r"\.pub\Z", ".sec", public_key_file)


def cross_validate(
    outcome: VerificationOutcome,
    header: Optional[SignedArchiveHeader],
    policy: Optional[PolicyConstraints] = None,
) -> VerifiedSigner:
    """
    Reconcile the verified signer with the archive header and the policy.

    Args:
        outcome: A verified outcome from verify_gzip_signature
        header: The header read before verification, or None if header
            inspection was bypassed
        policy: Caller requirements

    Returns:
        VerifiedSigner(signer, sign_date)

    Raises:
        GzipVerificationError: On the first disagreement found
    """
    if not outcome.verified:
        raise ValueError("cross_validate requires a verified outcome")

    policy = policy or PolicyConstraints()
    signer_dir, signer_file = split_key_path(outcome.signer)

    if header is not None:
        if signer_dir != header.secret_key_dir:
            raise _mismatch(
                ErrorKind.SIGNER_HEADER_DIR_MISMATCH,
                f'signify verified: key directory in gzip header is "{header.secret_key_dir}" '
                f'but actual signing key directory is "{signer_dir}"',
                header.secret_key_dir,
                signer_dir,
            )
        if signer_file != header.secret_key_file:
            raise _mismatch(
                ErrorKind.SIGNER_HEADER_FILE_MISMATCH,
                f'signify verified: key file in gzip header is "{header.secret_key_file}" '
                f'but actual signing key file is "{signer_file}"',
                header.secret_key_file,
                signer_file,
            )

    if policy.require_secret_key_path is not None:
        required_dir = policy.require_secret_key_dir
        required_file = policy.require_secret_key_file
        if signer_dir != required_dir:
            raise _mismatch(
                ErrorKind.SIGNER_POLICY_DIR_MISMATCH,
                f'signify verified: required key directory is "{required_dir}" '
                f'but actual signing key directory is "{signer_dir}"',
                required_dir,
                signer_dir,
            )
        if signer_file != required_file:
            raise _mismatch(
                ErrorKind.SIGNER_POLICY_FILE_MISMATCH,
                f'signify verified: required key file is "{required_file}" '
                f'but actual signing key file is "{signer_file}"',
                required_file,
                signer_file,
            )

    if policy.require_public_key_file is not None and header is None:
        required_file = expected_secret_key_file(policy.require_public_key_file)
        if signer_file != required_file:
            raise _mismatch(
                ErrorKind.SIGNER_PUBLIC_KEY_MISMATCH,
                f'signify verified: required public key file is "{policy.require_public_key_file}" '
                f'but actual signing key file is "{signer_file}"',
                required_file,
                signer_file,
            )

    logger.debug("signer %s accepted", outcome.signer)
    return VerifiedSigner(outcome.signer, outcome.sign_date)
