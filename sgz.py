#!/usr/bin/env python3
"""Unified CLI wrapper for SGZ tools."""

from __future__ import annotations

import importlib
import sys
from typing import List, Optional, Tuple

_COMMANDS: dict[str, Tuple[str, str, str]] = {
    "verify-gzip": ("sgz_verify", "main", "Verify a signed gzip archive"),
    "sign-gzip": ("sgz_sign", "sign_gzip_main", "Sign a gzip archive in place"),
    "sign": ("sgz_sign", "sign_main", "Create a detached signature"),
    "verify": ("sgz_sign", "verify_main", "Verify a detached signature"),
    "header": ("sgz_header", "main", "Show the untrusted header of a signed archive"),
    "key": ("sgz_keys", "main", "Show signify public key details"),
}

_BANNER = "sgz - signify gzip signing and verification"


def _render_help() -> str:
    lines = [
        _BANNER,
        "",
        "Usage:",
        "  sgz <command> [options]",
        "",
        "Commands:",
    ]
    for name, (_, _, description) in _COMMANDS.items():
        lines.append(f"  {name:<12} {description}")
    lines.extend(
        [
            "",
            "Run: sgz <command> --help for command-specific options.",
        ]
    )
    return "\n".join(lines)


def _dispatch(command: str, argv: List[str]) -> int:
    module_name, entry, _ = _COMMANDS[command]
    module = importlib.import_module(module_name)
    if not hasattr(module, entry):
        print(f"Error: {module_name} has no {entry}()", file=sys.stderr)
        return 2

    old_argv = sys.argv
    sys.argv = [f"sgz {command}", *argv]
    try:
        result = getattr(module, entry)()
        return int(result) if result is not None else 0
    except SystemExit as exc:
        code = exc.code
        if code is None:
            return 0
        return code if isinstance(code, int) else 1
    finally:
        sys.argv = old_argv


def main(argv: Optional[List[str]] = None) -> int:
    if argv is None:
        argv = sys.argv[1:]

    if not argv or argv[0] in {"-h", "--help"}:
        print(_render_help())
        return 0

    command, *rest = argv
    if command not in _COMMANDS:
        print(f"Unknown command: {command}", file=sys.stderr)
        print(_render_help())
        return 2

    return _dispatch(command, rest)


if __name__ == "__main__":
    sys.exit(main())
