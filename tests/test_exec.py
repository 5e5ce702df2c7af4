from __future__ import annotations

import os
import signal
from pathlib import Path

import pytest

import sgz_exec
from conftest import posix_only, ran, ran_with
from sgz_config import SignifyConfig
from sgz_errors import ErrorKind
from sgz_exec import diagnostic_path, verifier_argv, verify_gzip_signature

pytestmark = posix_only


def _config(signify: Path) -> SignifyConfig:
    return SignifyConfig(signify_path=str(signify))


def test_verifier_argv(tmp_path: Path) -> None:
    config = SignifyConfig(signify_path="/usr/bin/signify")
    assert verifier_argv(tmp_path / "a.tgz", config) == [
        "/usr/bin/signify",
        "-zV",
        "-x",
        str(tmp_path / "a.tgz"),
    ]
    assert verifier_argv(tmp_path / "a.tgz", config, Path("/k/a.pub"))[-2:] == ["-p", "/k/a.pub"]


def test_diagnostic_path_uses_archive_basename(tmp_path: Path) -> None:
    assert diagnostic_path(Path("/some/dir/pkg.tgz"), tmp_path) == tmp_path / "pkg.tgz.err"


def test_verified(signed_archive, fake_signify, work_dir: Path) -> None:
    signify = fake_signify(exit_status=0)
    archive = signed_archive()

    outcome = verify_gzip_signature(archive, work_dir, _config(signify))

    assert outcome.verified
    assert outcome.kind is None
    assert outcome.exit_status == 0
    assert outcome.signer == "/etc/keys/alice.sec"
    assert outcome.sign_date == "2024-07-28T17:32:01Z"
    assert ran_with(signify) == f"-zV -x {archive}"
    assert list(work_dir.iterdir()) == []


def test_passes_public_key(signed_archive, fake_signify, work_dir: Path) -> None:
    signify = fake_signify()
    archive = signed_archive()
    verify_gzip_signature(archive, work_dir, _config(signify), Path("/etc/signify/alice.pub"))
    assert ran_with(signify).endswith("-p /etc/signify/alice.pub")


def test_missing_archive_does_not_spawn(tmp_path: Path, fake_signify, work_dir: Path) -> None:
    signify = fake_signify()
    outcome = verify_gzip_signature(tmp_path / "missing.tgz", work_dir, _config(signify))
    assert not outcome.verified
    assert outcome.kind is ErrorKind.NO_FILE
    assert not ran(signify)


def test_diagnostic_takes_precedence(signed_archive, fake_signify, work_dir: Path) -> None:
    signify = fake_signify(exit_status=1, diagnostic="signify: signature mismatch")

    outcome = verify_gzip_signature(signed_archive(), work_dir, _config(signify))

    assert not outcome.verified
    assert outcome.kind is ErrorKind.SIGNATURE_MISMATCH
    assert outcome.message == "signature mismatch"
    assert outcome.diagnostic == "signify: signature mismatch"
    assert outcome.exit_status == 1
    # Best-effort metadata is still reported.
    assert outcome.signer == "/etc/keys/alice.sec"
    assert list(work_dir.iterdir()) == []


def test_diagnostic_with_zero_exit_is_not_verified(signed_archive, fake_signify, work_dir) -> None:
    signify = fake_signify(exit_status=0, diagnostic="signify: unsigned gzip archive")
    outcome = verify_gzip_signature(signed_archive(), work_dir, _config(signify))
    assert not outcome.verified
    assert outcome.kind is ErrorKind.UNSIGNED


def test_unknown_diagnostic_kept_verbatim(signed_archive, fake_signify, work_dir: Path) -> None:
    text = "signify: verification failed: checked against wrong key"
    signify = fake_signify(exit_status=1, diagnostic=text)
    outcome = verify_gzip_signature(signed_archive(), work_dir, _config(signify))
    assert outcome.kind is ErrorKind.OTHER
    assert outcome.message == text


@pytest.mark.parametrize(
    ("status", "kind"),
    [
        (1, ErrorKind.BAD_SIGNATURE),
        (2, ErrorKind.EXEC_FAILED),
        (4, ErrorKind.SIGNATURE_MISMATCH),
        (9, ErrorKind.EXEC_FAILED),
    ],
)
def test_exit_status_without_diagnostic(signed_archive, fake_signify, work_dir, status, kind) -> None:
    signify = fake_signify(exit_status=status)
    outcome = verify_gzip_signature(signed_archive(), work_dir, _config(signify))
    assert not outcome.verified
    assert outcome.kind is kind
    assert outcome.exit_status == status


def test_killed_verifier_is_not_verified(signed_archive, fake_signify, work_dir: Path) -> None:
    signify = fake_signify(body='kill -9 $$')
    outcome = verify_gzip_signature(signed_archive(), work_dir, _config(signify))
    assert not outcome.verified
    assert outcome.kind is ErrorKind.EXEC_FAILED
    assert outcome.exit_status == -9


def test_exec_failure(signed_archive, tmp_path: Path, work_dir: Path, capfd) -> None:
    config = SignifyConfig(signify_path=str(tmp_path / "no-such-signify"))

    outcome = verify_gzip_signature(signed_archive(), work_dir, config)

    assert not outcome.verified
    assert outcome.kind is ErrorKind.EXEC_FAILED
    assert "Could not exec" in capfd.readouterr().err
    assert list(work_dir.iterdir()) == []


def test_missing_temp_dir_does_not_spawn(signed_archive, fake_signify, tmp_path: Path) -> None:
    signify = fake_signify()
    outcome = verify_gzip_signature(signed_archive(), tmp_path / "absent", _config(signify))
    assert outcome.kind is ErrorKind.EXEC_FAILED
    assert outcome.message.startswith("cannot write diagnostic file")
    assert not ran(signify)


def test_directory_archive_is_unreadable(tmp_path: Path, fake_signify, work_dir: Path) -> None:
    archive = tmp_path / "pkg.tgz"
    archive.mkdir()

    outcome = verify_gzip_signature(archive, work_dir, _config(fake_signify(body="exit 0")))

    assert not outcome.verified
    assert outcome.kind is ErrorKind.ARCHIVE_UNREADABLE
    assert outcome.message.startswith("Could not open gzip")
    assert list(work_dir.iterdir()) == []


@pytest.mark.skipif(hasattr(os, "geteuid") and os.geteuid() == 0, reason="root can read any file")
def test_unreadable_archive(signed_archive, fake_signify, work_dir: Path) -> None:
    archive = signed_archive()
    archive.chmod(0)
    try:
        outcome = verify_gzip_signature(archive, work_dir, _config(fake_signify(body="exit 0")))
    finally:
        archive.chmod(0o644)

    assert not outcome.verified
    assert outcome.kind is ErrorKind.ARCHIVE_UNREADABLE


def test_failed_drain_reaps_verifier(signed_archive, fake_signify, work_dir: Path, monkeypatch) -> None:
    statuses = []
    real_wait = sgz_exec.VerifierProcess.wait

    def broken_drain(self, chunk_size: int = 65536) -> int:
        raise OSError("read failed")

    def recording_wait(self) -> int:
        status = real_wait(self)
        statuses.append(status)
        return status

    monkeypatch.setattr(sgz_exec.VerifierProcess, "drain", broken_drain)
    monkeypatch.setattr(sgz_exec.VerifierProcess, "wait", recording_wait)

    with pytest.raises(OSError, match="read failed"):
        verify_gzip_signature(signed_archive(), work_dir, _config(fake_signify(body="sleep 30")))

    assert statuses == [-signal.SIGKILL]
    assert list(work_dir.iterdir()) == []


def test_not_gzip_without_diagnostic(tmp_path: Path, fake_signify, work_dir: Path) -> None:
    archive = tmp_path / "plain.tgz"
    archive.write_text("plain text\n", encoding="utf-8")
    signify = fake_signify(exit_status=0)

    outcome = verify_gzip_signature(archive, work_dir, _config(signify))

    assert not outcome.verified
    assert outcome.kind is ErrorKind.NOT_COMPRESSED_FORMAT
    assert outcome.signer is None


def test_large_payload_is_drained(signed_archive, fake_signify, work_dir: Path) -> None:
    # Larger than any pipe buffer; the verifier would block if stdout were not read.
    archive = signed_archive(payload=os.urandom(1 << 20))
    signify = fake_signify(exit_status=0)
    outcome = verify_gzip_signature(archive, work_dir, _config(signify))
    assert outcome.verified


def test_stale_diagnostic_not_reused(signed_archive, fake_signify, work_dir: Path) -> None:
    archive = signed_archive()
    failing = fake_signify(exit_status=4, diagnostic="signify: signature mismatch")
    passing = fake_signify(exit_status=0)

    assert not verify_gzip_signature(archive, work_dir, _config(failing)).verified
    assert verify_gzip_signature(archive, work_dir, _config(passing)).verified
