"""Low-level socket read/write utilities."""

from __future__ import annotations

import socket
import zlib
from collections.abc import Iterator

from config import MAX_BODY_BYTES, MAX_HEADER_BYTES, READ_CHUNK_SIZE
from response import HTTPResponse, iter_chunked_encoded, prepare_response


class HTTPReadError(Exception):
    """Raised when a client request cannot be safely read from the socket."""


class MalformedRequestError(HTTPReadError):
    """Raised when socket bytes do not form a complete HTTP request."""


class HeaderTooLargeError(HTTPReadError):
    """Raised when HTTP headers exceed configured maximum size."""


class PayloadTooLargeError(HTTPReadError):
    """Raised when request body exceeds configured maximum size."""


class UnsupportedTransferError(HTTPReadError):
    """Raised when a request body uses a transfer coding the server won't decode."""


class SocketTimeoutError(HTTPReadError):
    """Raised when a client times out while sending request bytes."""


class BodyStreamError(Exception):
    """Raised when a response body source fails after the head was sent."""


def _header_value(header_bytes: bytes, wanted: str) -> str | None:
    for line in header_bytes.decode("iso-8859-1").split("\r\n")[1:]:
        if not line:
            continue
        if ":" not in line:
            raise MalformedRequestError("Malformed header while reading request")
        name, value = line.split(":", 1)
        if name.strip().lower() == wanted:
            return value.strip()
    return None


def _content_length(header_bytes: bytes) -> int:
    value = _header_value(header_bytes, "content-length")
    if value is None:
        return 0
    try:
        parsed_length = int(value)
    except ValueError as exc:
        raise MalformedRequestError("Invalid Content-Length header") from exc
    if parsed_length < 0:
        raise MalformedRequestError("Negative Content-Length header")
    return parsed_length


def read_http_request_message(
    client_socket: socket.socket,
    initial_buffer: bytes = b"",
) -> tuple[bytes, bytes]:
    """Read one request and return (request_head, leftover_bytes).

    Any request body is read off the socket and discarded; logs are read-only.
    """
    buffer = bytearray(initial_buffer)

    while True:
        header_end_index = buffer.find(b"\r\n\r\n")
        if header_end_index != -1:
            break
        if len(buffer) > MAX_HEADER_BYTES:
            raise HeaderTooLargeError("Headers exceeded MAX_HEADER_BYTES")
        chunk = _recv(client_socket)
        if not chunk:
            if not buffer.strip():
                return b"", b""
            raise MalformedRequestError("Connection closed before request completed")
        buffer.extend(chunk)

    body_start = header_end_index + 4
    if body_start > MAX_HEADER_BYTES:
        raise HeaderTooLargeError("Headers exceeded MAX_HEADER_BYTES")

    head = bytes(buffer[:body_start])
    if _header_value(head, "transfer-encoding") is not None:
        raise UnsupportedTransferError("Request bodies with Transfer-Encoding are not supported")

    body_length = _content_length(head)
    if body_length > MAX_BODY_BYTES:
        raise PayloadTooLargeError("Body exceeded MAX_BODY_BYTES")

    while len(buffer) < body_start + body_length:
        chunk = _recv(client_socket)
        if not chunk:
            raise MalformedRequestError("Connection closed before request body completed")
        buffer.extend(chunk)

    return head, bytes(buffer[body_start + body_length :])


def _recv(client_socket: socket.socket) -> bytes:
    try:
        return client_socket.recv(READ_CHUNK_SIZE)
    except socket.timeout as exc:
        raise SocketTimeoutError("Timed out waiting for request bytes") from exc


def write_http_response_message(
    client_socket: socket.socket,
    response: HTTPResponse,
    *,
    allow_chunked: bool = True,
) -> int:
    """Write a response, streaming its body, and always release its resources.

    Socket errors (client went away) propagate as ``OSError``; failures of the
    body source after the head was sent propagate as :class:`BodyStreamError`.
    """
    try:
        prepared = prepare_response(response, allow_chunked=allow_chunked)
        client_socket.sendall(prepared.head)
        bytes_sent = len(prepared.head)

        if prepared.body is not None:
            if prepared.body:
                client_socket.sendall(prepared.body)
                bytes_sent += len(prepared.body)
            return bytes_sent

        if prepared.stream is not None:
            chunks = prepared.stream
            if prepared.chunked:
                chunks = iter_chunked_encoded(prepared.stream)
            for chunk in _guarded(chunks):
                client_socket.sendall(chunk)
                bytes_sent += len(chunk)
        return bytes_sent
    finally:
        response.close()


def _guarded(chunks: Iterator[bytes]) -> Iterator[bytes]:
    iterator = iter(chunks)
    while True:
        try:
            chunk = next(iterator)
        except StopIteration:
            return
        except (OSError, EOFError, zlib.error) as exc:
            raise BodyStreamError("Response body source failed mid-stream") from exc
        yield chunk
