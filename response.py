"""HTTP response model and serializer."""

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from email.utils import formatdate

from config import SERVER_NAME

REASON_PHRASES: dict[int, str] = {
    200: "OK",
    206: "Partial Content",
    301: "Moved Permanently",
    304: "Not Modified",
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    408: "Request Timeout",
    413: "Payload Too Large",
    414: "URI Too Long",
    416: "Range Not Satisfiable",
    431: "Request Header Fields Too Large",
    500: "Internal Server Error",
    501: "Not Implemented",
    503: "Service Unavailable",
    505: "HTTP Version Not Supported",
}


@dataclass(slots=True)
class PreparedResponse:
    head: bytes
    body: bytes | None = None
    stream: Iterator[bytes] | None = None
    chunked: bool = False


@dataclass(slots=True)
class HTTPResponse:
    """A response with either an in-memory body or a body stream.

    A stream whose headers carry ``Content-Length`` is written as-is; any other
    stream is chunk-encoded (or close-delimited when chunking is unavailable).
    Streams exposing ``close()`` are closed by :meth:`close` once the response
    has been written or abandoned.
    """

    status_code: int
    reason_phrase: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    body: bytes | str = b""
    stream: Iterable[bytes] | None = None
    should_close: bool = False
    content_length_override: int | None = None

    def __post_init__(self) -> None:
        if isinstance(self.body, str):
            self.body = self.body.encode("utf-8")
        if self.stream is not None and self.body:
            raise ValueError("Response cannot set both body and stream")

    @property
    def has_known_length(self) -> bool:
        return self.stream is None or "Content-Length" in self.headers

    def close(self) -> None:
        close_stream = getattr(self.stream, "close", None)
        if close_stream is not None:
            close_stream()

    def to_bytes(self) -> bytes:
        """Serialize the response into HTTP/1.1 wire format bytes."""
        try:
            prepared = prepare_response(self)
            payload = bytearray(prepared.head)
            if prepared.body is not None:
                payload.extend(prepared.body)
            elif prepared.chunked:
                for encoded_chunk in iter_chunked_encoded(prepared.stream):
                    payload.extend(encoded_chunk)
            elif prepared.stream is not None:
                for chunk in prepared.stream:
                    payload.extend(chunk)
            return bytes(payload)
        finally:
            self.close()


def error_response(message: str, status_code: int) -> HTTPResponse:
    """Build a plain-text error reply carrying only a generic message."""
    return HTTPResponse(
        status_code=status_code,
        headers={
            "Content-Type": "text/plain; charset=utf-8",
            "X-Content-Type-Options": "nosniff",
        },
        body=f"{message}\n",
    )


def prepare_response(response: HTTPResponse, *, allow_chunked: bool = True) -> PreparedResponse:
    reason = response.reason_phrase or REASON_PHRASES.get(response.status_code, "Unknown")
    normalized_headers = dict(response.headers)
    normalized_headers.setdefault(
        "Date",
        formatdate(timeval=None, localtime=False, usegmt=True),
    )
    normalized_headers.setdefault("Server", SERVER_NAME)
    normalized_headers.setdefault("Content-Type", "text/plain; charset=utf-8")

    body: bytes | None = None
    stream: Iterator[bytes] | None = None
    chunked = False
    if response.stream is not None:
        stream = iter(response.stream)
        if "Content-Length" not in normalized_headers and allow_chunked:
            normalized_headers["Transfer-Encoding"] = "chunked"
            chunked = True
    else:
        body = response.body
        content_length = response.content_length_override
        if content_length is None and "Transfer-Encoding" not in normalized_headers:
            content_length = len(body)
        if content_length is not None:
            normalized_headers["Content-Length"] = str(content_length)

    header_lines = [f"HTTP/1.1 {response.status_code} {reason}"]
    header_lines.extend(f"{key}: {value}" for key, value in normalized_headers.items())
    head = "\r\n".join(header_lines).encode("iso-8859-1") + b"\r\n\r\n"
    return PreparedResponse(head=head, body=body, stream=stream, chunked=chunked)


def iter_chunked_encoded(chunks: Iterable[bytes]) -> Iterator[bytes]:
    for chunk in chunks:
        if not chunk:
            continue
        yield f"{len(chunk):X}\r\n".encode("ascii")
        yield chunk
        yield b"\r\n"
    yield b"0\r\n\r\n"
