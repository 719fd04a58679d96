"""Handlers serving bug-report logs, inflating gzipped logs when the client can't."""

from __future__ import annotations

import gzip
import logging
import os
import re
import stat
import zlib
from dataclasses import dataclass

from config import GZIP_SUFFIX, WRITE_CHUNK_SIZE
from handlers.static_files import serve_static
from path_resolver import InvalidRequestPath, resolve_request_path
from request import HTTPRequest
from response import HTTPResponse, error_response
from utils import FileBodyStream, to_http_error

logger = logging.getLogger(__name__)

_ENCODING_SPLIT = re.compile(r"[ \t\n,]+")


@dataclass(frozen=True, slots=True)
class LogServer:
    """Request handler serving files from ``root``."""

    root: str

    def __call__(self, request: HTTPRequest) -> HTTPResponse:
        try:
            fs_path = resolve_request_path(request.path, self.root)
        except InvalidRequestPath as exc:
            return error_response(str(exc), 400)
        except OSError as exc:
            return error_response(*to_http_error(exc))

        return serve_file(request, fs_path, request.path)


def serve_file(request: HTTPRequest, fs_path: str, url_path: str) -> HTTPResponse:
    try:
        file_stat = os.stat(fs_path)
    except OSError as exc:
        return error_response(*to_http_error(exc))

    if stat.S_ISDIR(file_stat.st_mode) or not fs_path.endswith(GZIP_SUFFIX):
        logger.info("Serving %s", fs_path)
        return serve_static(request, fs_path, url_path)

    if accepts_gzip(request):
        return serve_gzip(fs_path, file_stat.st_size)
    return serve_ungzipped(fs_path)


def accepts_gzip(request: HTTPRequest) -> bool:
    """Whether any Accept-Encoding header line names the gzip coding."""
    for header in request.get_all("accept-encoding"):
        for token in _ENCODING_SPLIT.split(header):
            coding = token.split(";", 1)[0]
            if coding == "gzip":
                return True
    return False


def serve_gzip(fs_path: str, size: int) -> HTTPResponse:
    """Send the archive bytes untouched, labelled with gzip content-encoding."""
    try:
        file_obj = open(fs_path, "rb")
    except OSError as exc:
        return error_response(*to_http_error(exc))

    return HTTPResponse(
        status_code=200,
        headers={
            "Content-Type": "text/plain; charset=utf-8",
            "Content-Encoding": "gzip",
            "Content-Length": str(size),
        },
        stream=FileBodyStream(file_obj, limit=size),
    )


def serve_ungzipped(fs_path: str) -> HTTPResponse:
    """Inflate the archive while streaming it; the decoded size is unknown."""
    try:
        file_obj = open(fs_path, "rb")
    except OSError as exc:
        return error_response(*to_http_error(exc))

    gzip_reader = gzip.GzipFile(fileobj=file_obj, mode="rb")
    try:
        if os.fstat(file_obj.fileno()).st_size == 0:
            raise gzip.BadGzipFile("empty file is not a gzip stream")
        first_chunk = gzip_reader.read(WRITE_CHUNK_SIZE)
    except (OSError, EOFError, zlib.error) as exc:
        gzip_reader.close()
        file_obj.close()
        return error_response(*to_http_error(exc))

    return HTTPResponse(
        status_code=200,
        headers={"Content-Type": "text/plain; charset=utf-8"},
        stream=FileBodyStream(file_obj, closers=(gzip_reader,), first_chunk=first_chunk),
    )
