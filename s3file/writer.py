"""s3file writer – produces Sphinx-3 binary files.

Writes the text header, the byte-order marker, 1-D/2-D/3-D arrays with
their leading dimensions and the trailing checksum, in either byte order.
"""

from __future__ import annotations

import os
import re
import struct
from typing import Iterable

import numpy as np

from .format import (
    CHECKSUM_HEADER,
    COMMENT_PREFIX,
    DIM_SIZE,
    END_HEADER_LINE,
    HOST_ORDER,
    MAGIC_LINE,
    U32_MASK,
    as_dtype,
    checksum_accum,
    marker_bytes,
    resolve_byteorder,
    unsigned_view,
)
from .log import logger

_NAME_RE = re.compile(r"\S+\Z")


def _check_entry(name: str, value: str) -> None:
    if not _NAME_RE.match(name) or name.startswith(COMMENT_PREFIX.decode()):
        raise ValueError(f"invalid header name: {name!r}")
    if not value or value != value.strip() or "\n" in value:
        raise ValueError(f"invalid header value for {name!r}: {value!r}")


# ── S3Writer ────────────────────────────────────────────────────────────────


class S3Writer:
    """Assemble an s3 file in memory.

    Usage::

        w = S3Writer(byteorder="<")
        w.write_header({"version": "1.0"})
        w.write_1d(np.array([1.0, 2.0], dtype="f4"))
        w.write_checksum()
        w.save("means")
    """

    def __init__(self, byteorder: str = "=", checksum: bool = True) -> None:
        self._order = resolve_byteorder(byteorder)
        self._use_checksum = checksum
        self._out = bytearray()
        self._checksum = 0
        self._header_written = False
        self._checksum_written = False

    @property
    def byteorder(self) -> str:
        return self._order

    @property
    def checksum(self) -> int:
        return self._checksum

    def __len__(self) -> int:
        return len(self._out)

    # ── Header ───────────────────────────────────────────────────────────

    def write_header(
        self,
        headers: dict[str, str] | Iterable[tuple[str, str]] | None = None,
        comments: Iterable[str] = (),
    ) -> None:
        if self._header_written:
            raise ValueError("header already written")
        if headers is None:
            items: list[tuple[str, str]] = []
        elif isinstance(headers, dict):
            items = list(headers.items())
        else:
            items = list(headers)
        items = [(str(k), str(v)) for k, v in items]
        for name, value in items:
            _check_entry(name, value)
        if self._use_checksum and all(name != CHECKSUM_HEADER for name, _ in items):
            items.append((CHECKSUM_HEADER, "yes"))

        out = bytearray(MAGIC_LINE)
        for comment in comments:
            if "\n" in comment:
                raise ValueError(f"comment spans lines: {comment!r}")
            if not comment.startswith("#"):
                comment = "# " + comment
            out += comment.encode("utf-8") + b"\n"
        for name, value in items:
            out += f"{name} {value}\n".encode("utf-8")
        out += END_HEADER_LINE
        out += marker_bytes(self._order)
        self._out += out
        self._header_written = True

    # ── Payload ──────────────────────────────────────────────────────────

    def write_raw(self, array, dtype=None) -> int:
        """Append elements of *array* without dimensions; return the count."""
        self._check_writable()
        arr = np.ascontiguousarray(array, dtype=dtype)
        dt = as_dtype(arr.dtype)
        native = arr.astype(dt.newbyteorder("="), copy=False)
        self._out += native.astype(dt.newbyteorder(self._order)).tobytes()
        if self._use_checksum:
            logical = native.view(unsigned_view(dt.itemsize, HOST_ORDER))
            self._checksum = checksum_accum(logical, self._checksum)
        return arr.size

    def write_1d(self, array, dtype=None) -> int:
        return self._write_nd(array, dtype, 1)

    def write_2d(self, array, dtype=None) -> int:
        return self._write_nd(array, dtype, 2)

    def write_3d(self, array, dtype=None) -> int:
        return self._write_nd(array, dtype, 3)

    def _write_nd(self, array, dtype, ndim: int) -> int:
        arr = np.ascontiguousarray(array, dtype=dtype)
        if arr.ndim != ndim:
            raise ValueError(f"expected a {ndim}-d array, got shape {arr.shape}")
        as_dtype(arr.dtype)
        self._check_writable()
        for d in arr.shape:
            if d > U32_MASK:
                raise ValueError(f"dimension {d} does not fit in {DIM_SIZE} bytes")
        self.write_raw(np.array(arr.shape, dtype="=u4"))
        return self.write_raw(arr)

    def write_checksum(self) -> None:
        self._check_writable()
        if not self._use_checksum:
            raise ValueError("writer was created with checksum=False")
        self._out += struct.pack(self._order + "I", self._checksum)
        self._checksum_written = True
        logger.debug("wrote checksum 0x%08x", self._checksum)

    def _check_writable(self) -> None:
        if not self._header_written:
            raise ValueError("write_header() must be called first")
        if self._checksum_written:
            raise ValueError("checksum already written")

    # ── Output ───────────────────────────────────────────────────────────

    def getvalue(self) -> bytes:
        return bytes(self._out)

    def save(self, out_path: str, *, atomic: bool = True) -> None:
        """Write the file (atomic: write .tmp → fsync → rename)."""
        tmp_path = out_path + ".tmp" if atomic else out_path
        try:
            with open(tmp_path, "wb") as f:
                f.write(self._out)
                if atomic:
                    f.flush()
                    os.fsync(f.fileno())
            if atomic:
                os.replace(tmp_path, out_path)
        except BaseException:
            if atomic and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
