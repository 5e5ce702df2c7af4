"""Runtime configuration for SGZ tools.

Values come from the environment and can be overridden per call or by CLI
flags:

    SGZ_SIGNIFY_PATH  path to the signify binary   (default /usr/bin/signify)
    SGZ_KEY_DIR       directory holding keys       (default /etc/signify)
    SGZ_TEMP_DIR      scratch directory            (default: system temp dir)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Mapping, Optional

from sgz_errors import ErrorKind, GzipVerificationError

DEFAULT_SIGNIFY_PATH = "/usr/bin/signify"
DEFAULT_KEY_DIR = "/etc/signify"


@dataclass(frozen=True)
class SignifyConfig:
    signify_path: str = DEFAULT_SIGNIFY_PATH
    key_dir: str = DEFAULT_KEY_DIR
    temp_dir: str = field(default_factory=tempfile.gettempdir)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SignifyConfig":
        env = os.environ if environ is None else environ
        return cls(
            signify_path=env.get("SGZ_SIGNIFY_PATH") or DEFAULT_SIGNIFY_PATH,
            key_dir=env.get("SGZ_KEY_DIR") or DEFAULT_KEY_DIR,
            temp_dir=env.get("SGZ_TEMP_DIR") or tempfile.gettempdir(),
        )

    def with_overrides(
        self,
        signify_path: Optional[str] = None,
        key_dir: Optional[str] = None,
        temp_dir: Optional[str] = None,
    ) -> "SignifyConfig":
        """Return a copy with any non-None values replaced."""
        changes = {
            name: value
            for name, value in (
                ("signify_path", signify_path),
                ("key_dir", key_dir),
                ("temp_dir", temp_dir),
            )
            if value is not None
        }
        return replace(self, **changes)


def resolve_key_path(name: str, key_dir: str) -> Path:
    """Resolve a bare key file name inside key_dir; other paths pass through."""
    if "/" not in name and os.sep not in name:
        return Path(key_dir) / name
    return Path(name)


def check_signify_executable(config: SignifyConfig) -> None:
    if not os.access(config.signify_path, os.X_OK) or os.path.isdir(config.signify_path):
        raise GzipVerificationError(
            ErrorKind.NO_EXECUTABLE,
            f"no executable {config.signify_path}.",
            {"signifyPath": config.signify_path},
        )
