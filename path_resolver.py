"""Translate untrusted request paths into absolute paths under the log root."""

from __future__ import annotations

import logging
import os
import posixpath
import re

logger = logging.getLogger(__name__)

INVALID_PATH_MESSAGE = "invalid URL path"

_SEGMENT_SPLIT = re.compile(r"[/\\]+")


class InvalidRequestPath(ValueError):
    """Raised when a request path could escape the root or smuggle separators.

    The message is always the same so clients cannot tell which check failed.
    """

    def __init__(self) -> None:
        super().__init__(INVALID_PATH_MESSAGE)


def clean_path(request_path: str) -> str:
    """Lexically normalize a slash-rooted path: no ``.``, ``..`` or ``//`` left."""
    cleaned = posixpath.normpath(request_path)
    # normpath keeps exactly two leading slashes (POSIX implementation-defined).
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def contains_dot_dot(value: str) -> bool:
    if ".." not in value:
        return False
    return any(segment == ".." for segment in _SEGMENT_SPLIT.split(value))


def is_dodgy(value: str) -> bool:
    if contains_dot_dot(value) or "\x00" in value:
        return True
    return os.sep != "/" and os.sep in value


def resolve_request_path(request_path: str, root: str) -> str:
    """Return the absolute on-disk path for ``request_path`` inside ``root``.

    Raises :class:`InvalidRequestPath` for traversal, NUL bytes, or native
    separators smuggled through the URL. ``OSError`` from resolving the root is
    left to the caller.
    """
    if not request_path.startswith("/"):
        request_path = "/" + request_path

    logger.info("Serving %s", request_path)

    cleaned = clean_path(request_path)
    if is_dodgy(request_path) or is_dodgy(cleaned):
        raise InvalidRequestPath()

    relative = cleaned.lstrip("/").replace("/", os.sep)
    root_abs = os.path.abspath(root)
    resolved = os.path.abspath(os.path.join(root_abs, relative))

    if os.path.commonpath([root_abs, resolved]) != root_abs:
        raise InvalidRequestPath()
    return resolved
