"""HTTP request model and parser."""

from dataclasses import dataclass, field
from urllib.parse import parse_qs, unquote, urlsplit

from config import MAX_TARGET_LENGTH

ALLOWED_HTTP_VERSIONS = {"HTTP/1.1", "HTTP/1.0"}
KNOWN_METHODS = {
    "GET",
    "HEAD",
    "POST",
    "PUT",
    "DELETE",
    "OPTIONS",
    "PATCH",
    "TRACE",
    "CONNECT",
}


class HTTPRequestParseError(ValueError):
    """Request parse error carrying an HTTP status code."""

    def __init__(self, message: str, *, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass(slots=True)
class HTTPRequest:
    method: str
    path: str
    http_version: str
    raw_target: str = "/"
    headers: dict[str, str] = field(default_factory=dict)
    header_lines: list[tuple[str, str]] = field(default_factory=list)
    query_params: dict[str, list[str]] = field(default_factory=dict)
    keep_alive: bool = False

    @classmethod
    def from_bytes(cls, raw: bytes) -> "HTTPRequest":
        """Parse a raw request head (request line and headers) into a request object."""
        header_bytes = raw.split(b"\r\n\r\n", 1)[0]
        lines = header_bytes.decode("iso-8859-1").split("\r\n")
        if not lines or not lines[0]:
            raise HTTPRequestParseError("Missing request line")

        first_line_parts = lines[0].split(" ")
        if len(first_line_parts) != 3:
            raise HTTPRequestParseError("Invalid request line")

        method, target, http_version = first_line_parts
        if not method or not target or not http_version:
            raise HTTPRequestParseError("Request line contains empty tokens")

        normalized_method = method.upper()
        if normalized_method not in KNOWN_METHODS:
            raise HTTPRequestParseError("Method not implemented", status_code=501)

        if http_version not in ALLOWED_HTTP_VERSIONS:
            raise HTTPRequestParseError("Unsupported HTTP version", status_code=505)

        if len(target) > MAX_TARGET_LENGTH:
            raise HTTPRequestParseError("Request target too long", status_code=414)

        raw_path, query = _split_target(target)
        try:
            path = unquote(raw_path, errors="strict")
        except UnicodeDecodeError as exc:
            raise HTTPRequestParseError("Invalid percent-encoding in path") from exc

        header_lines: list[tuple[str, str]] = []
        headers: dict[str, str] = {}
        for line in lines[1:]:
            if not line:
                continue
            if ":" not in line:
                raise HTTPRequestParseError("Malformed header line")
            name, value = line.split(":", 1)
            header_name = name.strip().lower()
            if not header_name:
                raise HTTPRequestParseError("Header name cannot be empty")
            header_value = value.strip()
            header_lines.append((header_name, header_value))
            if header_name in headers:
                headers[header_name] = f"{headers[header_name]}, {header_value}"
            else:
                headers[header_name] = header_value

        if http_version == "HTTP/1.1" and "host" not in headers:
            raise HTTPRequestParseError("Host header required for HTTP/1.1")

        return cls(
            method=normalized_method,
            path=path,
            raw_target=target,
            http_version=http_version,
            headers=headers,
            header_lines=header_lines,
            query_params=parse_qs(query, keep_blank_values=True),
            keep_alive=_is_keep_alive(http_version, headers.get("connection", "")),
        )

    def get_all(self, name: str) -> list[str]:
        """Return every value sent for a header, one entry per header line."""
        header_name = name.lower()
        return [value for key, value in self.header_lines if key == header_name]


def _split_target(target: str) -> tuple[str, str]:
    # Origin-form is split by hand so a leading "//" is not read as an authority.
    if target.startswith("/"):
        raw_path, _sep, query = target.partition("?")
        return raw_path, query

    if target == "*":
        return "*", ""

    parsed_target = urlsplit(target)
    if not parsed_target.scheme:
        raise HTTPRequestParseError("Invalid request target")
    return parsed_target.path or "/", parsed_target.query


def _is_keep_alive(http_version: str, connection_header: str) -> bool:
    token = connection_header.lower()
    if http_version == "HTTP/1.1":
        return "close" not in token
    if http_version == "HTTP/1.0":
        return "keep-alive" in token
    return False
