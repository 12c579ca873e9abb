"""Truncation / corruption tests – bad input fails with an S3Error and
never leaves the handle half-advanced."""

from __future__ import annotations

import random
import struct

import numpy as np
import pytest

from s3file import ChecksumError, ReadError, S3Error, S3File, S3Writer, TruncatedError

from conftest import NATIVE, header


def _make_valid(byteorder: str = "=") -> bytes:
    w = S3Writer(byteorder=byteorder)
    w.write_header({"version": "1.0"})
    w.write_1d(np.array([1.0, 2.0, 3.0], dtype="f4"))
    w.write_2d(np.arange(6, dtype="i2").reshape(2, 3))
    w.write_checksum()
    return w.getvalue()


# ── Truncation ──────────────────────────────────────────────────────────────


def test_declared_count_exceeds_buffer():
    data = header() + struct.pack(NATIVE + "I", 1000) + b"\x00" * 16
    with S3File(data) as s:
        s.parse_header()
        before = (s.cursor, s.checksum)
        with pytest.raises(TruncatedError) as exc_info:
            s.read_1d("f4")
        assert (s.cursor, s.checksum) == before
        assert exc_info.value.requested == 4000
        assert exc_info.value.available == 16
        # the handle is still usable after a recoverable failure
        count = np.empty(1, dtype="u4")
        s.read_raw(count, 4, 1)
        assert count[0] == 1000


def test_truncated_inside_dimensions():
    data = header() + struct.pack(NATIVE + "2I", 2, 3)
    with S3File(data) as s:
        s.parse_header()
        start = s.cursor
        with pytest.raises(TruncatedError):
            s.read_3d("u1")
        assert s.cursor == start
        assert s.checksum == 0


def test_truncated_payload_after_dims():
    data = _make_valid()
    cut = len(data) - 4 - 4  # drop checksum and the last two int16 values
    with S3File(data, length=cut) as s:
        s.parse_header()
        s.read_1d("f4")
        cursor, checksum = s.cursor, s.checksum
        with pytest.raises(ReadError):
            s.read_2d("i2")
        assert (s.cursor, s.checksum) == (cursor, checksum)


def test_read_raw_short_copies_nothing():
    data = header() + b"\x01\x02\x03"
    with S3File(data) as s:
        s.parse_header()
        dest = bytearray(b"\xaa" * 4)
        with pytest.raises(TruncatedError):
            s.read_raw(dest, 4, 1)
        assert dest == bytearray(b"\xaa" * 4)
        assert s.remaining() == 3
        assert s.read_raw(dest, 1, 3) == 3
        assert dest[:3] == b"\x01\x02\x03"


def test_huge_count_does_not_allocate():
    data = header() + struct.pack(NATIVE + "3I", 0xFFFFFFFF, 0xFFFFFFFF, 0xFFFFFFFF)
    with S3File(data) as s:
        s.parse_header()
        with pytest.raises(TruncatedError):
            s.read_3d("f8")


def test_verify_checksum_truncated():
    data = _make_valid()
    with S3File(data, length=len(data) - 2) as s:
        s.parse_header()
        s.read_1d("f4")
        s.read_2d("i2")
        cursor = s.cursor
        with pytest.raises(TruncatedError):
            s.verify_checksum()
        assert s.cursor == cursor


# ── Checksum mismatch ───────────────────────────────────────────────────────


def test_corrupt_payload_detected():
    data = bytearray(_make_valid())
    # flip a byte inside the float payload (after the 4-byte count)
    payload_start = data.index(b"endhdr\n") + len(b"endhdr\n") + 4 + 4
    data[payload_start + 1] ^= 0xFF
    with S3File(bytes(data)) as s:
        s.parse_header()
        values, n = s.read_1d("f4")
        assert n == 3
        s.read_2d("i2")
        with pytest.raises(ChecksumError):
            s.verify_checksum()
    # data already extracted stays usable
    assert values.shape == (3,)


def test_corrupt_stored_checksum():
    data = bytearray(_make_valid())
    data[-1] ^= 0x01
    with S3File(bytes(data)) as s:
        s.parse_header()
        s.read_1d("f4")
        s.read_2d("i2")
        computed = s.checksum
        with pytest.raises(ChecksumError) as exc_info:
            s.verify_checksum()
    assert exc_info.value.computed == computed
    assert exc_info.value.stored != computed


def test_early_verify_is_well_defined():
    data = _make_valid()
    with S3File(data) as s:
        s.parse_header()
        s.read_1d("f4")
        with pytest.raises(ChecksumError):
            s.verify_checksum()


# ── Random mutations ────────────────────────────────────────────────────────


def _walk(data: bytes) -> None:
    with S3File(data) as s:
        s.parse_header()
        s.read_1d("f4")
        s.read_2d("i2")
        s.verify_checksum()


@pytest.mark.parametrize("byteorder", ["<", ">"])
def test_random_mutations(byteorder):
    rng = random.Random(4607)
    valid = _make_valid(byteorder)
    _walk(valid)
    for _ in range(300):
        data = bytearray(valid)
        for _ in range(rng.randint(1, 3)):
            pos = rng.randint(0, len(data) - 1)
            data[pos] = (data[pos] + rng.randint(1, 255)) & 0xFF
        try:
            _walk(bytes(data))
        except S3Error:
            pass


@pytest.mark.parametrize("cut", range(0, 60, 3))
def test_every_truncation_point(cut):
    valid = _make_valid()
    with pytest.raises(S3Error):
        _walk(valid[:cut])
