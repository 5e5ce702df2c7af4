"""Gzip header inspection and payload decompression.

The standard gzip module decompresses concatenated members transparently but
does not expose the member header, so the header is parsed here (RFC 1952)
and the payload is streamed through gzip.open separately.
"""

from __future__ import annotations

import gzip
import hashlib
import logging
import pathlib
import struct
import zlib
from typing import BinaryIO, NamedTuple, Optional, Tuple

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
CM_DEFLATE = 8

FTEXT = 0x01
FHCRC = 0x02
FEXTRA = 0x04
FNAME = 0x08
FCOMMENT = 0x10


class GzipHeaderInfo(NamedTuple):
    """Fields of the first gzip member header."""

    flags: int
    mtime: int
    os: int
    extra: Optional[bytes]
    filename: Optional[str]
    comment: Optional[str]


class PayloadInfo(NamedTuple):
    header: GzipHeaderInfo
    signer: Optional[str]  # key= line of the header comment
    sign_date: Optional[str]  # date= line of the header comment
    size: int  # Decompressed bytes read
    digest: Optional[str]  # SHA-256 hex of the payload; None if decompression failed
    error: Optional[str]


def decode_header_text(raw: bytes) -> str:
    """Decode header bytes so that any byte sequence maps to one string and back."""
    return raw.decode("utf-8", errors="surrogateescape")


class _Truncated(Exception):
    pass


def _read_exact(fh: BinaryIO, size: int) -> bytes:
    data = fh.read(size)
    if len(data) != size:
        raise _Truncated()
    return data


def _read_zero_terminated(fh: BinaryIO) -> bytes:
    chunks = bytearray()
    while True:
        byte = fh.read(1)
        if not byte:
            raise _Truncated()
        if byte == b"\x00":
            return bytes(chunks)
        chunks += byte


def read_gzip_header(fh: BinaryIO) -> Optional[GzipHeaderInfo]:
    """
    Parse one gzip member header from the current position of fh.

    Returns:
        GzipHeaderInfo, or None if the stream does not start with the gzip
        magic, uses an unknown compression method, or ends inside the header.
    """
    magic = fh.read(2)
    if magic != GZIP_MAGIC:
        logger.debug("not a gzip stream (magic %r)", magic)
        return None

    try:
        method, flags, mtime, _xfl, os_code = struct.unpack("<BBIBB", _read_exact(fh, 8))
        if method != CM_DEFLATE:
            logger.debug("unsupported gzip compression method %d", method)
            return None

        extra = None
        if flags & FEXTRA:
            (extra_len,) = struct.unpack("<H", _read_exact(fh, 2))
            extra = _read_exact(fh, extra_len)

        filename = None
        if flags & FNAME:
            filename = decode_header_text(_read_zero_terminated(fh))

        comment = None
        if flags & FCOMMENT:
            comment = decode_header_text(_read_zero_terminated(fh))

        if flags & FHCRC:
            _read_exact(fh, 2)
    except _Truncated:
        logger.debug("gzip header truncated")
        return None

    return GzipHeaderInfo(
        flags=flags,
        mtime=mtime,
        os=os_code,
        extra=extra,
        filename=filename,
        comment=comment,
    )


def parse_comment_metadata(comment: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Return (signer, sign_date) from the key= and date= lines of a header comment."""
    signer = None
    sign_date = None
    for line in (comment or "").split("\n"):
        if line.startswith("key="):
            signer = line[len("key=") :]
        elif line.startswith("date="):
            sign_date = line[len("date=") :]
    return signer, sign_date


def read_header_info(path: pathlib.Path) -> Optional[GzipHeaderInfo]:
    with open(path, "rb") as fh:
        return read_gzip_header(fh)


def decompress_payload(path: pathlib.Path, chunk_size: int = 65536) -> Optional[PayloadInfo]:
    """
    Decompress a (possibly multi-member) gzip archive and extract signer metadata.

    Args:
        path: Path to the gzip archive
        chunk_size: Read buffer size

    Returns:
        PayloadInfo, or None if the archive has no gzip header. A payload
        that fails to decompress still yields header metadata, with the
        failure recorded in ``error``.

    Raises:
        OSError: If the archive cannot be opened
    """
    header = read_header_info(path)
    if header is None:
        return None

    signer, sign_date = parse_comment_metadata(header.comment)

    hasher = hashlib.sha256()
    size = 0
    error = None
    try:
        with gzip.open(path, "rb") as gz:
            while chunk := gz.read(chunk_size):
                hasher.update(chunk)
                size += len(chunk)
    except (OSError, EOFError, zlib.error) as exc:
        error = str(exc) or exc.__class__.__name__
        logger.warning("payload of %s did not decompress cleanly: %s", path, error)

    logger.debug("payload of %s: signer=%s date=%s size=%d", path, signer, sign_date, size)
    return PayloadInfo(
        header=header,
        signer=signer,
        sign_date=sign_date,
        size=size,
        digest=None if error else hasher.hexdigest(),
        error=error,
    )
