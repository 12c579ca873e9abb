"""s3file reader – parse the text header and walk the binary segments of a
Sphinx-3 binary file held in memory."""

from __future__ import annotations

import re
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

import numpy as np

from .format import (
    CHECKSUM_HEADER,
    CHECKSUM_SIZE,
    DIM_SIZE,
    ELEMENT_SIZES,
    END_HEADER_LINE,
    COMMENT_PREFIX,
    HOST_ORDER,
    MAGIC_LINE,
    MARKER_SIZE,
    VERSION_HEADER,
    as_dtype,
    checksum_accum,
    detect_swap,
    file_byteorder,
    payload_nbytes,
    unsigned_view,
)
from .log import logger


# ── Exceptions ──────────────────────────────────────────────────────────────


class S3Error(Exception):
    """Base exception for s3file format / parse errors."""


class HeaderError(S3Error):
    """The text header or byte-order marker is missing or malformed."""


class ReadError(S3Error):
    """A payload read could not be satisfied."""


class TruncatedError(ReadError):
    """Fewer bytes remain than a read requires."""

    def __init__(self, requested: int, available: int, offset: int) -> None:
        super().__init__(
            f"truncated input: need {requested} bytes at offset {offset}, "
            f"{available} available"
        )
        self.requested = requested
        self.available = available
        self.offset = offset


class ChecksumError(S3Error):
    """Stored trailing checksum does not match the accumulated one."""

    def __init__(self, stored: int, computed: int) -> None:
        super().__init__(
            f"checksum mismatch: stored 0x{stored:08x}, computed 0x{computed:08x}"
        )
        self.stored = stored
        self.computed = computed


class UsageError(S3Error):
    """The handle was used out of order (programming error, not bad data)."""


# ── Header entries ──────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Span:
    """A (start, length) window into the handle's buffer."""

    start: int
    length: int

    @property
    def stop(self) -> int:
        return self.start + self.length


@dataclass(frozen=True)
class HeaderEntry:
    name: Span
    value: Span


_ENTRY_RE = re.compile(rb"\s*(\S+)\s+(\S(?:.*\S)?)\s*\Z", re.S)

_SCAN_CHUNK = 4096

_NEW = "new"
_PARSED = "parsed"
_FAILED = "failed"
_RELEASED = "released"


def _find_newline(view: memoryview, start: int, end: int) -> int:
    """Offset of the next ``\\n`` in ``view[start:end]`` or -1."""
    pos = start
    while pos < end:
        stop = min(pos + _SCAN_CHUNK, end)
        i = view[pos:stop].tobytes().find(b"\n")
        if i >= 0:
            return pos + i
        pos = stop
    return -1


def _as_bytes(text: str | bytes) -> bytes:
    return text.encode("utf-8") if isinstance(text, str) else bytes(text)


def _byte_view(dest):
    """Writable flat ``uint8`` view over *dest* (ndarray or buffer)."""
    if isinstance(dest, np.ndarray):
        if not dest.flags.c_contiguous:
            raise UsageError("destination is not a contiguous buffer")
        if not dest.flags.writeable:
            raise UsageError("destination buffer is read-only")
        return dest.reshape(-1).view(np.uint8)
    try:
        out = memoryview(dest)
        if out.readonly:
            raise UsageError("destination buffer is read-only")
        if out.ndim != 1 or out.format != "B":
            out = out.cast("B") if out.nbytes else memoryview(bytearray())
    except TypeError as exc:
        raise UsageError(f"destination is not a contiguous buffer: {exc}") from exc
    return out


# ── S3File ──────────────────────────────────────────────────────────────────


class S3File:
    """Read cursor and parsed header over a borrowed s3 file buffer.

    The buffer is never copied, mutated or closed; the handle only holds a
    read-only view.  Typical use::

        with S3File(data) as s:
            s.parse_header(expected_version="1.0")
            means, n = s.read_1d("f4")
            mat, rows, cols = s.read_2d("f4")
            if s.has_checksum:
                s.verify_checksum()

    ``retain``/``release`` share one handle between owners: the view is
    dropped when the last reference is released.
    """

    def __init__(self, buf, length: int | None = None) -> None:
        view = memoryview(buf)
        if view.ndim != 1 or view.format != "B":
            view = view.cast("B")
        view = view.toreadonly()
        size = len(view)
        if length is None:
            length = size
        if length < 0 or length > size:
            view.release()
            raise UsageError(f"length {length} outside buffer of {size} bytes")
        self._view = view
        self._cursor = 0
        self._end = length
        self._headers: list[HeaderEntry] = []
        self._swap = False
        self._byteorder = HOST_ORDER
        self._checksum = 0
        self._has_checksum = False
        self._state = _NEW
        self._refcount = 1
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        return (
            f"<S3File {self._state} cursor={self._cursor} end={self._end} "
            f"headers={len(self._headers)} swap={self._swap} refs={self._refcount}>"
        )

    # ── Ownership ────────────────────────────────────────────────────────

    def retain(self) -> S3File:
        with self._lock:
            if self._refcount <= 0:
                raise UsageError("retain on a released handle")
            self._refcount += 1
        return self

    def release(self) -> bool:
        """Drop one reference; return ``True`` once the last one is gone."""
        with self._lock:
            if self._refcount <= 0:
                raise UsageError("handle already released")
            self._refcount -= 1
            if self._refcount > 0:
                return False
            try:
                self._view.release()
            except BufferError as exc:
                self._refcount = 1
                raise UsageError(
                    "buffer still exported; drop views of .buffer before release"
                ) from exc
            self._headers = []
            self._state = _RELEASED
            return True

    close = release

    def __enter__(self) -> S3File:
        return self

    def __exit__(self, *_: object) -> None:
        self.release()

    # ── Public properties ────────────────────────────────────────────────

    @property
    def refcount(self) -> int:
        return self._refcount

    @property
    def released(self) -> bool:
        return self._state == _RELEASED

    @property
    def parsed(self) -> bool:
        return self._state == _PARSED

    @property
    def buffer(self) -> memoryview:
        self._check_alive()
        return self._view

    @property
    def cursor(self) -> int:
        return self._cursor

    @property
    def end(self) -> int:
        return self._end

    @property
    def swap(self) -> bool:
        return self._swap

    @property
    def byteorder(self) -> str:
        """File byte order, ``"<"`` or ``">"``."""
        return self._byteorder

    @property
    def checksum(self) -> int:
        return self._checksum

    @property
    def has_checksum(self) -> bool:
        return self._has_checksum

    @property
    def headers(self) -> list[HeaderEntry]:
        return list(self._headers)

    @property
    def version(self) -> str | None:
        idx = self.header_index(VERSION_HEADER)
        return None if idx is None else self.header_value(idx)

    def tell(self) -> int:
        return self._cursor

    def remaining(self) -> int:
        return self._end - self._cursor

    # ── Header ───────────────────────────────────────────────────────────

    def parse_header(self, expected_version: str | None = None) -> None:
        """Parse ``s3`` magic, ``name value`` lines, ``endhdr`` and the
        byte-order marker.

        On failure the handle is left unusable for extraction and a
        :class:`HeaderError` is raised.
        """
        self._check_alive()
        if self._state == _PARSED:
            raise UsageError("header already parsed")
        if self._state == _FAILED:
            raise UsageError("header parse already failed on this handle")
        try:
            entries, pos, swap = self._scan_header()
        except HeaderError as exc:
            self._state = _FAILED
            logger.error("Failed to read s3 header: %s", exc)
            raise

        self._headers = entries
        self._swap = swap
        self._byteorder = file_byteorder(swap)
        self._cursor = pos
        self._checksum = 0
        self._has_checksum = self.header_index(CHECKSUM_HEADER) is not None
        self._state = _PARSED

        if swap:
            logger.info("Input file is byte-swapped relative to host")
        if expected_version is not None:
            found = self.version
            if found != expected_version:
                logger.warning(
                    "Version mismatch: %s, expecting %s", found, expected_version
                )

    def _scan_header(self) -> tuple[list[HeaderEntry], int, bool]:
        view = self._view
        pos, end = self._cursor, self._end

        if end - pos < len(MAGIC_LINE) or view[pos : pos + len(MAGIC_LINE)] != MAGIC_LINE:
            raise HeaderError("missing 's3' magic line")
        pos += len(MAGIC_LINE)

        terminator = END_HEADER_LINE.rstrip(b"\n")
        entries: list[HeaderEntry] = []
        while True:
            nl = _find_newline(view, pos, end)
            if nl < 0:
                raise HeaderError("missing 'endhdr' terminator")
            line_start = pos
            line = view[pos:nl].tobytes()
            pos = nl + 1
            if line == terminator:
                break
            if line.startswith(COMMENT_PREFIX):
                continue
            m = _ENTRY_RE.match(line)
            if m is None:
                raise HeaderError(f"malformed header line: {line!r}")
            entries.append(
                HeaderEntry(
                    name=Span(line_start + m.start(1), m.end(1) - m.start(1)),
                    value=Span(line_start + m.start(2), m.end(2) - m.start(2)),
                )
            )

        if end - pos < MARKER_SIZE:
            raise HeaderError("truncated byte-order marker")
        marker = view[pos : pos + MARKER_SIZE].tobytes()
        swap = detect_swap(marker)
        if swap is None:
            raise HeaderError(f"bad byte-order marker {marker.hex()}")
        return entries, pos + MARKER_SIZE, swap

    def _entry(self, idx: int) -> HeaderEntry:
        self._check_alive()
        if not 0 <= idx < len(self._headers):
            raise UsageError(
                f"header index {idx} out of range ({len(self._headers)} headers)"
            )
        return self._headers[idx]

    def _span_equals(self, span: Span, expected: str | bytes) -> bool:
        expected = _as_bytes(expected)
        return span.length == len(expected) and self._view[span.start : span.stop] == expected

    def _span_text(self, span: Span) -> str:
        return self._view[span.start : span.stop].tobytes().decode("utf-8", errors="replace")

    def header_name_is(self, idx: int, name: str | bytes) -> bool:
        return self._span_equals(self._entry(idx).name, name)

    def header_value_is(self, idx: int, value: str | bytes) -> bool:
        return self._span_equals(self._entry(idx).value, value)

    def header_name(self, idx: int) -> str:
        return self._span_text(self._entry(idx).name)

    def header_value(self, idx: int) -> str:
        return self._span_text(self._entry(idx).value)

    def header_index(self, name: str | bytes) -> int | None:
        """Index of the first header called *name*, or ``None``."""
        self._check_alive()
        for i, entry in enumerate(self._headers):
            if self._span_equals(entry.name, name):
                return i
        return None

    def header_dict(self) -> dict[str, str]:
        """Owned copy of all headers; later duplicates win."""
        return {self.header_name(i): self.header_value(i) for i in range(len(self._headers))}

    # ── Extraction ───────────────────────────────────────────────────────

    def read_raw(self, dest, element_size: int, element_count: int) -> int:
        """Copy *element_count* elements into *dest* in host byte order.

        Every element is folded into the running checksum.  Nothing is
        copied and the cursor does not move if the input is too short.
        """
        self._check_readable()
        if element_size not in ELEMENT_SIZES:
            raise UsageError(f"unsupported element size: {element_size}")
        if element_count < 0:
            raise UsageError(f"negative element count: {element_count}")
        nbytes = element_size * element_count
        out = _byte_view(dest)
        if len(out) < nbytes:
            raise UsageError(
                f"destination holds {len(out)} bytes, {nbytes} requested"
            )

        values = self._fetch(element_size, element_count)
        out[:nbytes] = values.astype(unsigned_view(element_size, HOST_ORDER)).view(np.uint8)
        self._checksum = checksum_accum(values, self._checksum)
        self._cursor += nbytes
        return element_count

    def read_scalar(self, dtype) -> np.generic:
        dt = self._element_dtype(dtype)
        out = np.empty(1, dtype=dt)
        self.read_raw(out, dt.itemsize, 1)
        return out[0]

    def read_1d(self, dtype) -> tuple[np.ndarray, int]:
        """Read ``<count>`` then ``count`` elements."""
        arr, (n,) = self._read_nd(dtype, 1)
        return arr, n

    def read_2d(self, dtype) -> tuple[np.ndarray, int, int]:
        """Read ``<rows> <cols>`` then a row-major ``rows x cols`` matrix."""
        arr, (d1, d2) = self._read_nd(dtype, 2)
        return arr, d1, d2

    def read_3d(self, dtype) -> tuple[np.ndarray, int, int, int]:
        """Read ``<d1> <d2> <d3>`` then a ``d1 x d2 x d3`` array."""
        arr, (d1, d2, d3) = self._read_nd(dtype, 3)
        return arr, d1, d2, d3

    def _read_nd(self, dtype, ndim: int) -> tuple[np.ndarray, tuple[int, ...]]:
        dt = self._element_dtype(dtype)
        self._check_readable()
        with self._rollback_on_error():
            dims = self._read_dims(ndim)
            nbytes = payload_nbytes(dims, dt.itemsize)
            if nbytes > self.remaining():
                raise TruncatedError(nbytes, self.remaining(), self._cursor)
            arr = np.empty(dims, dtype=dt)
            self.read_raw(arr, dt.itemsize, arr.size)
        return arr, dims

    def _read_dims(self, ndim: int) -> tuple[int, ...]:
        dims = np.empty(ndim, dtype="=u4")
        self.read_raw(dims, DIM_SIZE, ndim)
        return tuple(int(d) for d in dims)

    @staticmethod
    def _element_dtype(dtype) -> np.dtype:
        try:
            return as_dtype(dtype).newbyteorder("=")
        except (TypeError, ValueError) as exc:
            raise UsageError(str(exc)) from exc

    @contextmanager
    def _rollback_on_error(self) -> Iterator[None]:
        cursor, checksum = self._cursor, self._checksum
        try:
            yield
        except BaseException:
            self._cursor, self._checksum = cursor, checksum
            raise

    def _fetch(self, element_size: int, element_count: int) -> np.ndarray:
        """Logical unsigned values of the next elements; cursor untouched."""
        nbytes = element_size * element_count
        available = self._end - self._cursor
        if nbytes > available:
            raise TruncatedError(nbytes, available, self._cursor)
        raw = self._view[self._cursor : self._cursor + nbytes].tobytes()
        return np.frombuffer(raw, dtype=unsigned_view(element_size, self._byteorder))

    # ── Checksum ─────────────────────────────────────────────────────────

    def verify_checksum(self) -> None:
        """Read the trailing checksum word and compare it to the running sum.

        The stored word itself is not folded into the accumulator.
        """
        self._check_readable()
        (stored,) = self._fetch(CHECKSUM_SIZE, 1).tolist()
        self._cursor += CHECKSUM_SIZE
        if stored != self._checksum:
            logger.error(
                "Checksum error; read corrupt data (stored 0x%08x, computed 0x%08x)",
                stored,
                self._checksum,
            )
            raise ChecksumError(stored, self._checksum)

    # ── Internal ─────────────────────────────────────────────────────────

    def _check_alive(self) -> None:
        if self._state == _RELEASED:
            raise UsageError("handle has been released")

    def _check_readable(self) -> None:
        self._check_alive()
        if self._state == _NEW:
            raise UsageError("parse_header() must succeed before reading data")
        if self._state == _FAILED:
            raise UsageError("header parse failed; handle cannot be read")


# ── Function interface ──────────────────────────────────────────────────────


def init(buf, length: int | None = None) -> S3File:
    return S3File(buf, length)


def retain(s: S3File) -> S3File:
    return s.retain()


def release(s: S3File) -> bool:
    return s.release()
