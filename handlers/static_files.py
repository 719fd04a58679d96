"""Generic static file and directory serving."""

from __future__ import annotations

import html
import os
import posixpath
from email.utils import formatdate, parsedate_to_datetime
from pathlib import Path
from urllib.parse import quote

from config import SNIFF_LENGTH
from request import HTTPRequest
from response import HTTPResponse, error_response
from utils import FileBodyStream, get_content_type, to_http_error

INDEX_PAGE = "index.html"


def serve_static(request: HTTPRequest, fs_path: str, url_path: str) -> HTTPResponse:
    """Serve a regular file or directory the way any static file server would.

    ``url_path`` is the request path below the mount point, used for redirects;
    an empty path is the root directory. ``fs_path`` is the already validated
    absolute path on disk.
    """
    if posixpath.basename(url_path) == INDEX_PAGE:
        return _local_redirect(request, "./")

    try:
        file_stat = os.stat(fs_path)
    except OSError as exc:
        return error_response(*to_http_error(exc))

    if os.path.isdir(fs_path):
        if url_path and not url_path.endswith("/"):
            return _local_redirect(request, posixpath.basename(url_path) + "/")
        index_path = os.path.join(fs_path, INDEX_PAGE)
        if os.path.isfile(index_path):
            return _serve_regular_file(request, index_path)
        return _serve_directory_listing(request, fs_path, file_stat.st_mtime)

    return _serve_regular_file(request, fs_path)


def _local_redirect(request: HTTPRequest, location: str) -> HTTPResponse:
    query = request.raw_target.partition("?")[2]
    if query:
        location = f"{location}?{query}"
    return HTTPResponse(
        status_code=301,
        headers={"Location": quote(location, safe="/?=&;%:@+$,.~-_")},
        body=b"",
    )


def _serve_directory_listing(request: HTTPRequest, dir_path: str, mtime: float) -> HTTPResponse:
    last_modified = formatdate(mtime, usegmt=True)
    if _not_modified_since(request, mtime):
        return HTTPResponse(status_code=304, headers={"Last-Modified": last_modified})

    try:
        with os.scandir(dir_path) as entries:
            names = sorted(
                entry.name + "/" if entry.is_dir() else entry.name for entry in entries
            )
    except OSError as exc:
        return error_response(*to_http_error(exc))

    lines = ['<!doctype html>\n<meta name="viewport" content="width=device-width">\n<pre>\n']
    for name in names:
        lines.append(f'<a href="{html.escape(quote(name))}">{html.escape(name)}</a>\n')
    lines.append("</pre>\n")
    return HTTPResponse(
        status_code=200,
        headers={
            "Content-Type": "text/html; charset=utf-8",
            "Last-Modified": last_modified,
        },
        body="".join(lines),
    )


def _serve_regular_file(request: HTTPRequest, file_path: str) -> HTTPResponse:
    try:
        file_obj = open(file_path, "rb")
    except OSError as exc:
        return error_response(*to_http_error(exc))

    try:
        file_stat = os.fstat(file_obj.fileno())
        head = file_obj.read(SNIFF_LENGTH)
        file_obj.seek(0)
    except OSError as exc:
        file_obj.close()
        return error_response(*to_http_error(exc))

    size = file_stat.st_size
    etag = f'W/"{file_stat.st_mtime_ns:x}-{size:x}"'
    last_modified = formatdate(file_stat.st_mtime, usegmt=True)
    validators = {"ETag": etag, "Last-Modified": last_modified}

    if_none_match = request.headers.get("if-none-match")
    if if_none_match is not None:
        tags = {tag.strip() for tag in if_none_match.split(",")}
        if etag in tags or "*" in tags:
            file_obj.close()
            return HTTPResponse(status_code=304, headers=validators)
    elif _not_modified_since(request, file_stat.st_mtime):
        file_obj.close()
        return HTTPResponse(status_code=304, headers=validators)

    headers = {
        "Content-Type": get_content_type(Path(file_path), head),
        "Accept-Ranges": "bytes",
        **validators,
    }

    byte_range = parse_range(request.headers.get("range"), size)
    if byte_range == "unsatisfiable":
        file_obj.close()
        response = error_response("416 Requested Range Not Satisfiable", 416)
        response.headers["Content-Range"] = f"bytes */{size}"
        return response

    if byte_range is not None:
        start, end = byte_range
        length = end - start + 1
        try:
            file_obj.seek(start)
        except OSError as exc:
            file_obj.close()
            return error_response(*to_http_error(exc))
        headers["Content-Range"] = f"bytes {start}-{end}/{size}"
        headers["Content-Length"] = str(length)
        return HTTPResponse(
            status_code=206,
            headers=headers,
            stream=FileBodyStream(file_obj, limit=length),
        )

    headers["Content-Length"] = str(size)
    return HTTPResponse(
        status_code=200,
        headers=headers,
        stream=FileBodyStream(file_obj, limit=size),
    )


def _not_modified_since(request: HTTPRequest, mtime: float) -> bool:
    if_modified_since = request.headers.get("if-modified-since")
    if if_modified_since is None:
        return False
    try:
        since_ts = parsedate_to_datetime(if_modified_since).timestamp()
    except (TypeError, ValueError, OverflowError):
        return False
    return int(mtime) <= int(since_ts)


def parse_range(header: str | None, size: int) -> tuple[int, int] | str | None:
    """Parse a single ``bytes=`` range against ``size``.

    Returns ``(start, end)`` inclusive, ``"unsatisfiable"``, or ``None`` when
    the whole file should be sent (no header, malformed, or several ranges).
    """
    if not header:
        return None
    unit, _sep, ranges = header.strip().partition("=")
    if unit.strip().lower() != "bytes" or not ranges or "," in ranges:
        return None

    first, dash, last = ranges.strip().partition("-")
    if not dash:
        return None
    first, last = first.strip(), last.strip()
    try:
        if not first:
            suffix = int(last)
            if suffix <= 0 or size == 0:
                return "unsatisfiable"
            return max(0, size - suffix), size - 1
        start = int(first)
        end = int(last) if last else size - 1
    except ValueError:
        return None

    if start < 0:
        return None
    if start >= size:
        return "unsatisfiable"
    if end < start:
        return None
    return start, min(end, size - 1)
