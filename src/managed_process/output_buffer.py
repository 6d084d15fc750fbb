"""Append-only per-stream output storage."""

from __future__ import annotations

import codecs


class OutputBuffer:
    """Bytes captured from one child stream.

    The full view always starts at offset 0. A separate incremental cursor
    advances each time ``read_incremental()`` is called, so successive
    incremental reads concatenate to the full output. Text reads go through an
    incremental decoder so a multi-byte character split across two reads is
    never mangled.
    """

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._data = bytearray()
        self._cursor = 0
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")

    def __len__(self) -> int:
        return len(self._data)

    @property
    def cursor(self) -> int:
        return self._cursor

    def append(self, data: bytes) -> None:
        self._data += data

    def getvalue(self) -> bytes:
        return bytes(self._data)

    def text(self) -> str:
        return self._data.decode(self._encoding, errors="replace")

    def read_incremental_bytes(self) -> bytes:
        latest = bytes(self._data[self._cursor :])
        self._cursor = len(self._data)
        return latest

    def read_incremental(self) -> str:
        return self._decoder.decode(self.read_incremental_bytes())

    def clear(self) -> None:
        """Truncate the buffer and rewind the incremental cursor."""
        self._data.clear()
        self._cursor = 0
        self._decoder.reset()
