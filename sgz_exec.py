"""Run signify against a signed gzip archive and classify the result.

The verifier runs as a child process. Its stdout (the verified stream) is
drained by the caller while the archive's own gzip header is decoded in a
worker thread; its stderr goes to a per-archive diagnostic file in the temp
directory that is read once and removed before returning.
"""

from __future__ import annotations

import logging
import os
import pathlib
import subprocess
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import IO, Dict, List, Optional

import sgz_gzip
from sgz_config import SignifyConfig
from sgz_errors import ErrorKind, classify_diagnostic, classify_exit_status

logger = logging.getLogger(__name__)


@dataclass
class VerificationOutcome:
    verified: bool
    kind: Optional[ErrorKind] = None
    message: Optional[str] = None  # Classified cause, e.g. "bad signature"
    diagnostic: Optional[str] = None  # Verifier stderr line, verbatim
    exit_status: Optional[int] = None
    # Reported by the archive's own gzip comment; trust only when verified.
    signer: Optional[str] = None
    sign_date: Optional[str] = None


def verifier_argv(
    archive: pathlib.Path, config: SignifyConfig, public_key: Optional[pathlib.Path] = None
) -> List[str]:
    argv = [config.signify_path, "-zV", "-x", str(archive)]
    if public_key is not None:
        argv.extend(["-p", str(public_key)])
    return argv


def diagnostic_path(archive: pathlib.Path, temp_dir: pathlib.Path) -> pathlib.Path:
    return pathlib.Path(temp_dir) / f"{pathlib.Path(archive).name}.err"


def _child_env() -> Dict[str, str]:
    # Diagnostics are matched as text, so keep them untranslated.
    env = dict(os.environ)
    env["LC_ALL"] = "C"
    return env


class VerifierProcess:
    """Handle on a running verifier child."""

    def __init__(self, proc: subprocess.Popen, err_path: pathlib.Path):
        self._proc = proc
        self.err_path = err_path

    @property
    def stdout(self) -> IO[bytes]:
        return self._proc.stdout

    def drain(self, chunk_size: int = 65536) -> int:
        total = 0
        while chunk := self._proc.stdout.read(chunk_size):
            total += len(chunk)
        self._proc.stdout.close()
        return total

    def wait(self) -> int:
        return self._proc.wait()

    def kill(self) -> None:
        self._proc.kill()

    def read_diagnostic(self) -> Optional[str]:
        """Return the first non-empty diagnostic line and delete the file."""
        try:
            text = self.err_path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None
        finally:
            self.err_path.unlink(missing_ok=True)
        for line in text.splitlines():
            if line.strip():
                return line
        return None


def spawn_verifier(
    archive: pathlib.Path,
    config: SignifyConfig,
    err_path: pathlib.Path,
    public_key: Optional[pathlib.Path] = None,
) -> VerifierProcess:
    """
    Start signify with stdout piped and stderr sent to err_path.

    Raises:
        OSError: If the verifier cannot be executed
    """
    argv = verifier_argv(archive, config, public_key)
    logger.debug("spawning verifier: %s", argv)
    with open(err_path, "wb") as err:
        proc = subprocess.Popen(
            argv,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=err,
            env=_child_env(),
        )
    return VerifierProcess(proc, err_path)


def verify_gzip_signature(
    archive: pathlib.Path,
    temp_dir: pathlib.Path,
    config: Optional[SignifyConfig] = None,
    public_key: Optional[pathlib.Path] = None,
) -> VerificationOutcome:
    """
    Verify the signify signature embedded in a gzip archive.

    Args:
        archive: Path to the signed gzip archive
        temp_dir: Directory for the verifier's diagnostic file; must be
            private to the caller
        config: signify configuration (defaults to the environment)
        public_key: Explicit public key; otherwise signify picks the key
            named by the archive comment

    Returns:
        VerificationOutcome. signer/sign_date are filled from the archive's
        gzip comment whenever it can be decoded, even on failure.
    """
    config = config or SignifyConfig.from_env()
    archive = pathlib.Path(archive)

    if not archive.exists():
        return VerificationOutcome(False, ErrorKind.NO_FILE, "no file")

    err_path = diagnostic_path(archive, pathlib.Path(temp_dir))
    try:
        err_path.touch()
    except OSError as exc:
        return VerificationOutcome(
            False, ErrorKind.EXEC_FAILED, f"cannot write diagnostic file {err_path}: {exc.strerror or exc}"
        )

    try:
        process = spawn_verifier(archive, config, err_path, public_key)
    except OSError as exc:
        err_path.unlink(missing_ok=True)
        print(f"Could not exec {config.signify_path}. {exc.strerror or exc}", file=sys.stderr)
        return VerificationOutcome(False, ErrorKind.EXEC_FAILED, "no exec of signify")

    unreadable = None
    try:
        with ThreadPoolExecutor(max_workers=1) as pool:
            payload_future = pool.submit(sgz_gzip.decompress_payload, archive)
            try:
                streamed = process.drain()
            except BaseException:
                process.kill()
                raise
            finally:
                status = process.wait()
            try:
                payload = payload_future.result()
            except OSError as exc:
                payload, unreadable = None, exc
        diagnostic = process.read_diagnostic()
    finally:
        err_path.unlink(missing_ok=True)

    logger.debug("verifier exit status %d, %d bytes streamed", status, streamed)

    outcome = VerificationOutcome(verified=False, exit_status=status, diagnostic=diagnostic)
    if payload is not None:
        outcome.signer = payload.signer
        outcome.sign_date = payload.sign_date

    if diagnostic is not None:
        logger.debug("verifier diagnostic: %s", diagnostic)
        outcome.kind, outcome.message = classify_diagnostic(diagnostic)
        return outcome

    if unreadable is not None:
        outcome.kind = ErrorKind.ARCHIVE_UNREADABLE
        outcome.message = f"Could not open gzip {archive}. {unreadable.strerror or unreadable}"
        return outcome

    if payload is None:
        outcome.kind, outcome.message = ErrorKind.NOT_COMPRESSED_FORMAT, "not a gzip"
        return outcome

    classified = classify_exit_status(status)
    if classified is None:
        outcome.verified = True
        return outcome

    outcome.kind, outcome.message = classified
    return outcome
