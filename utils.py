"""Utility helpers shared across server modules."""

import mimetypes
from collections.abc import Iterator
from pathlib import Path
from typing import BinaryIO

from config import WRITE_CHUNK_SIZE


def get_content_type(file_path: Path, head: bytes = b"") -> str:
    """Guess a content type from the file name, falling back to sniffing ``head``."""
    content_type, _encoding = mimetypes.guess_type(file_path.name)
    if content_type is not None:
        if content_type.startswith("text/"):
            return f"{content_type}; charset=utf-8"
        return content_type
    return sniff_content_type(head)


def sniff_content_type(head: bytes) -> str:
    if b"\x00" in head:
        return "application/octet-stream"
    try:
        head.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte sequence cut off by the sniff window is still text.
        if exc.start < len(head) - 3:
            return "application/octet-stream"
    return "text/plain; charset=utf-8"


def to_http_error(exc: BaseException) -> tuple[str, int]:
    """Map a filesystem or decoding error onto a generic message and status."""
    if isinstance(exc, FileNotFoundError):
        return "404 page not found", 404
    if isinstance(exc, PermissionError):
        return "403 Forbidden", 403
    return "500 Internal Server Error", 500


class FileBodyStream:
    """Iterates a readable binary object in chunks and owns closing it.

    ``closers`` are extra objects (such as a decompressor wrapping ``file_obj``)
    closed before the file itself. ``limit`` caps the number of bytes yielded.
    """

    def __init__(
        self,
        file_obj: BinaryIO,
        *,
        closers: tuple[BinaryIO, ...] = (),
        first_chunk: bytes = b"",
        limit: int | None = None,
        chunk_size: int = WRITE_CHUNK_SIZE,
    ) -> None:
        self._file_obj = file_obj
        self._closers = closers
        self._first_chunk = first_chunk
        self._remaining = limit
        self._chunk_size = chunk_size
        self.closed = False

    def __iter__(self) -> Iterator[bytes]:
        if self._first_chunk:
            yield self._first_chunk
        reader = self._closers[0] if self._closers else self._file_obj
        while not self.closed:
            size = self._chunk_size
            if self._remaining is not None:
                if self._remaining <= 0:
                    return
                size = min(size, self._remaining)
            chunk = reader.read(size)
            if not chunk:
                return
            if self._remaining is not None:
                self._remaining -= len(chunk)
            yield chunk

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            for closer in self._closers:
                closer.close()
        finally:
            self._file_obj.close()
