"""Socket-level integration tests for the log server."""

import gzip
import socket
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

import pytest

from server import HTTPServer

LOG_TEXT = b"E/AndroidRuntime: FATAL EXCEPTION: main\n" * 3000


@pytest.fixture
def log_root(tmp_path: Path) -> Path:
    root = tmp_path / "bugs"
    (root / "2024-01-01" / "120000").mkdir(parents=True)
    (root / "2024-01-01" / "120000" / "logs-0000.log.gz").write_bytes(gzip.compress(LOG_TEXT))
    (root / "2024-01-01" / "120000" / "details.log").write_bytes(b"app: riot-web\n")
    (root / "2024-01-01" / "120000" / "corrupt.log.gz").write_bytes(b"not an archive")
    (tmp_path / "outside.txt").write_bytes(b"should never be served")
    return root


@pytest.fixture
def server(log_root: Path):
    http_server = HTTPServer(port=0, root=str(log_root))
    thread = threading.Thread(target=http_server.start, daemon=True)
    thread.start()

    deadline = time.time() + 3
    while http_server.port == 0 and time.time() < deadline:
        time.sleep(0.01)

    if http_server.port == 0:
        raise RuntimeError("Server did not bind to a port")

    yield http_server

    http_server.stop()
    thread.join(timeout=2.0)


def _request(server: HTTPServer, target: str, *extra_headers: str, method: str = "GET") -> bytes:
    lines = [f"{method} {target} HTTP/1.1", "Host: localhost", "Connection: close", *extra_headers]
    payload = ("\r\n".join(lines) + "\r\n\r\n").encode("iso-8859-1")
    with socket.create_connection((server.host, server.port), timeout=2.0) as client:
        client.sendall(payload)
        chunks = []
        while True:
            chunk = client.recv(65536)
            if not chunk:
                break
            chunks.append(chunk)
    return b"".join(chunks)


def _parse(raw_response: bytes) -> tuple[int, dict[str, str], bytes]:
    head, body = raw_response.split(b"\r\n\r\n", 1)
    lines = head.decode("iso-8859-1").split("\r\n")
    status_code = int(lines[0].split(" ")[1])
    headers: dict[str, str] = {}
    for line in lines[1:]:
        key, value = line.split(": ", 1)
        headers[key.lower()] = value
    if headers.get("transfer-encoding") == "chunked":
        body = _decode_chunked(body)
    return status_code, headers, body


def _decode_chunked(body: bytes) -> bytes:
    decoded = bytearray()
    position = 0
    while True:
        line_end = body.index(b"\r\n", position)
        size = int(body[position:line_end], 16)
        position = line_end + 2
        if size == 0:
            return bytes(decoded)
        decoded.extend(body[position : position + size])
        position += size + 2


ARCHIVE = "/api/listing/2024-01-01/120000/logs-0000.log.gz"


def test_gzip_client_gets_archive_bytes(server: HTTPServer, log_root: Path) -> None:
    on_disk = (log_root / "2024-01-01" / "120000" / "logs-0000.log.gz").read_bytes()

    status, headers, body = _parse(_request(server, ARCHIVE, "Accept-Encoding: gzip, deflate"))

    assert status == 200
    assert headers["content-encoding"] == "gzip"
    assert headers["content-length"] == str(len(on_disk))
    assert headers["content-type"] == "text/plain; charset=utf-8"
    assert body == on_disk


def test_weighted_gzip_header_gets_archive_bytes(server: HTTPServer) -> None:
    status, headers, _body = _parse(
        _request(server, ARCHIVE, "Accept-Encoding: deflate, gzip;q=0.5")
    )

    assert status == 200
    assert headers["content-encoding"] == "gzip"


def test_plain_client_gets_decompressed_chunks(server: HTTPServer) -> None:
    status, headers, body = _parse(_request(server, ARCHIVE, "Accept-Encoding: identity"))

    assert status == 200
    assert "content-encoding" not in headers
    assert "content-length" not in headers
    assert headers["transfer-encoding"] == "chunked"
    assert body == LOG_TEXT


def test_http10_client_gets_close_delimited_body(server: HTTPServer) -> None:
    with socket.create_connection((server.host, server.port), timeout=2.0) as client:
        client.sendall(f"GET {ARCHIVE} HTTP/1.0\r\n\r\n".encode("ascii"))
        raw = b""
        while chunk := client.recv(65536):
            raw += chunk

    head, body = raw.split(b"\r\n\r\n", 1)
    assert head.startswith(b"HTTP/1.1 200 OK")
    assert b"Transfer-Encoding" not in head
    assert body == LOG_TEXT


def test_plain_file_is_served_generically(server: HTTPServer) -> None:
    status, headers, body = _parse(
        _request(server, "/api/listing/2024-01-01/120000/details.log")
    )

    assert status == 200
    assert headers["content-length"] == "14"
    assert body == b"app: riot-web\n"


@pytest.mark.parametrize(
    "target",
    [
        "/api/listing/../../outside.txt",
        "/api/listing/../outside.txt",
        "/api/listing/%2e%2e/outside.txt",
        "/api/listing/2024-01-01/%2E%2E/%2E%2E/outside.txt",
        "/api/listing/..%5coutside.txt",
        "/api/listing/2024-01-01/details.log%00.gz",
    ],
)
def test_traversal_is_rejected(server: HTTPServer, target: str) -> None:
    status, _headers, body = _parse(_request(server, target))

    assert status == 400
    assert body == b"invalid URL path\n"


def test_missing_file_is_404(server: HTTPServer) -> None:
    status, _headers, body = _parse(_request(server, "/api/listing/2024-01-01/nope.log.gz"))

    assert status == 404
    assert body == b"404 page not found\n"


def test_corrupt_archive_is_500(server: HTTPServer) -> None:
    status, _headers, body = _parse(
        _request(server, "/api/listing/2024-01-01/120000/corrupt.log.gz")
    )

    assert status == 500
    assert body == b"500 Internal Server Error\n"


def test_paths_outside_mount_are_404(server: HTTPServer) -> None:
    status, _headers, _body = _parse(_request(server, "/outside.txt"))

    assert status == 404


def test_mount_point_without_slash_redirects(server: HTTPServer) -> None:
    status, headers, _body = _parse(_request(server, "/api/listing"))

    assert status == 301
    assert headers["location"] == "/api/listing/"


def test_directory_listing(server: HTTPServer) -> None:
    status, headers, body = _parse(_request(server, "/api/listing/2024-01-01/120000/"))

    assert status == 200
    assert headers["content-type"] == "text/html; charset=utf-8"
    assert b'<a href="logs-0000.log.gz">logs-0000.log.gz</a>' in body


def test_head_on_archive_has_length_but_no_body(server: HTTPServer, log_root: Path) -> None:
    size = (log_root / "2024-01-01" / "120000" / "logs-0000.log.gz").stat().st_size

    raw = _request(server, ARCHIVE, "Accept-Encoding: gzip", method="HEAD")
    status, headers, body = _parse(raw)

    assert status == 200
    assert headers["content-length"] == str(size)
    assert headers["content-encoding"] == "gzip"
    assert body == b""


def test_head_on_decompressed_archive_is_chunked_without_body(server: HTTPServer) -> None:
    raw = _request(server, ARCHIVE, method="HEAD")
    head, _sep, body = raw.partition(b"\r\n\r\n")

    assert head.startswith(b"HTTP/1.1 200 OK")
    assert b"Transfer-Encoding: chunked" in head
    assert b"Content-Length" not in head
    assert body == b""


def test_http10_head_on_decompressed_archive_is_not_chunked(server: HTTPServer) -> None:
    with socket.create_connection((server.host, server.port), timeout=2.0) as client:
        client.sendall(f"HEAD {ARCHIVE} HTTP/1.0\r\n\r\n".encode("ascii"))
        raw = b""
        while chunk := client.recv(65536):
            raw += chunk

    head, _sep, body = raw.partition(b"\r\n\r\n")
    assert head.startswith(b"HTTP/1.1 200 OK")
    assert b"Transfer-Encoding" not in head
    assert b"Content-Length" not in head
    assert b"Connection: close" in head
    assert body == b""


def test_stop_from_another_thread_shuts_down_cleanly(log_root: Path) -> None:
    http_server = HTTPServer(port=0, root=str(log_root))
    thread = threading.Thread(target=http_server.start, daemon=True)
    thread.start()
    deadline = time.time() + 3
    while http_server.port == 0 and time.time() < deadline:
        time.sleep(0.01)

    http_server.stop()
    http_server.stop()
    thread.join(timeout=3.0)

    assert not thread.is_alive()
    assert http_server._pool is None


def test_unsupported_method_returns_405(server: HTTPServer) -> None:
    status, headers, _body = _parse(_request(server, ARCHIVE, method="DELETE"))

    assert status == 405
    assert headers["allow"] == "GET, HEAD"


def test_malformed_request_returns_400(server: HTTPServer) -> None:
    with socket.create_connection((server.host, server.port), timeout=2.0) as client:
        client.sendall(b"BROKEN\r\n\r\n")
        response = client.recv(8192)

    assert response.startswith(b"HTTP/1.1 400 Bad Request")


def test_keep_alive_serves_two_requests(server: HTTPServer) -> None:
    target = "/api/listing/2024-01-01/120000/details.log"
    payload = (
        f"GET {target} HTTP/1.1\r\nHost: localhost\r\n\r\n"
        f"GET {target} HTTP/1.1\r\nHost: localhost\r\nConnection: close\r\n\r\n"
    ).encode("ascii")
    with socket.create_connection((server.host, server.port), timeout=2.0) as client:
        client.sendall(payload)
        raw = b""
        while chunk := client.recv(65536):
            raw += chunk

    assert raw.count(b"HTTP/1.1 200 OK") == 2
    assert raw.count(b"app: riot-web\n") == 2


def test_client_abort_does_not_break_server(server: HTTPServer) -> None:
    with socket.create_connection((server.host, server.port), timeout=2.0) as client:
        client.sendall(f"GET {ARCHIVE} HTTP/1.1\r\nHost: localhost\r\n\r\n".encode("ascii"))
        client.recv(128)

    status, _headers, body = _parse(_request(server, ARCHIVE))

    assert status == 200
    assert body == LOG_TEXT


def test_concurrent_requests(server: HTTPServer) -> None:
    with ThreadPoolExecutor(max_workers=20) as executor:
        futures = [executor.submit(_request, server, ARCHIVE) for _ in range(20)]
        responses = [_parse(future.result()) for future in futures]

    assert len(responses) == 20
    assert all(status == 200 and body == LOG_TEXT for status, _headers, body in responses)
