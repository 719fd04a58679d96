"""Log server entry point and connection lifecycle orchestration."""

from __future__ import annotations

import argparse
import json
import logging
import os
import socket
import time

from config import (
    HOST,
    KEEPALIVE_TIMEOUT_SECS,
    LOG_FORMAT,
    MAX_KEEPALIVE_REQUESTS,
    MOUNT_PREFIX,
    PORT,
    REQUEST_QUEUE_SIZE,
    ROOT_DIR,
    SOCKET_TIMEOUT_SECS,
    WORKER_COUNT,
)
from handlers.log_handlers import LogServer
from request import HTTPRequest, HTTPRequestParseError
from response import REASON_PHRASES, HTTPResponse, error_response
from socket_handler import (
    BodyStreamError,
    HeaderTooLargeError,
    HTTPReadError,
    MalformedRequestError,
    PayloadTooLargeError,
    SocketTimeoutError,
    UnsupportedTransferError,
    read_http_request_message,
    write_http_response_message,
)
from thread_pool import WorkerPool

logger = logging.getLogger(__name__)

READ_ERROR_STATUS: dict[type[HTTPReadError], int] = {
    PayloadTooLargeError: 413,
    HeaderTooLargeError: 431,
    SocketTimeoutError: 408,
    UnsupportedTransferError: 501,
    MalformedRequestError: 400,
}
ALLOWED_METHODS = "GET, HEAD"


class HTTPServer:
    def __init__(
        self,
        host: str = HOST,
        port: int = PORT,
        root: str = ROOT_DIR,
        mount_prefix: str = MOUNT_PREFIX,
        worker_count: int = WORKER_COUNT,
        request_queue_size: int = REQUEST_QUEUE_SIZE,
        *,
        keepalive_timeout_secs: int = KEEPALIVE_TIMEOUT_SECS,
        log_format: str = LOG_FORMAT,
    ) -> None:
        if not mount_prefix.startswith("/") or not mount_prefix.endswith("/"):
            raise ValueError("mount_prefix must start and end with '/'")
        self.host = host
        self.port = port
        self.mount_prefix = mount_prefix
        self.handler = LogServer(root=os.path.abspath(root))
        self.worker_count = worker_count
        self.request_queue_size = request_queue_size
        self.keepalive_timeout_secs = keepalive_timeout_secs
        self.log_format = log_format

        self._server_socket: socket.socket | None = None
        self._pool: WorkerPool | None = None
        self._running = False

    def start(self) -> None:
        """Listen and hand each accepted connection to the worker pool."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as server_socket:
            self._server_socket = server_socket
            server_socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            server_socket.bind((self.host, self.port))
            server_socket.listen(128)
            server_socket.settimeout(0.2)
            self.port = server_socket.getsockname()[1]
            pool = WorkerPool(
                worker_count=self.worker_count,
                queue_size=self.request_queue_size,
                handler=self._handle_client,
            )
            self._pool = pool
            pool.start()
            logger.info(
                "Serving %s on http://%s:%s%s",
                self.handler.root,
                self.host,
                self.port,
                self.mount_prefix,
            )

            self._running = True
            try:
                while self._running:
                    try:
                        client_socket, address = server_socket.accept()
                    except socket.timeout:
                        continue
                    except OSError:
                        break

                    pool = self._pool
                    if pool is None or not pool.submit(client_socket, address):
                        self._send_queue_full_response(client_socket)
            finally:
                pool, self._pool = self._pool, None
                if pool is not None:
                    pool.shutdown()

    def stop(self) -> None:
        self._running = False
        server_socket, self._server_socket = self._server_socket, None
        if server_socket is not None:
            server_socket.close()
        pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown()

    def _send_queue_full_response(self, client_socket: socket.socket) -> None:
        with client_socket:
            response = HTTPResponse(
                status_code=503,
                headers={"Connection": "close"},
                body="Service Unavailable",
            )
            try:
                write_http_response_message(client_socket, response)
            except OSError:
                return

    def _handle_client(self, client_socket: socket.socket, address: tuple[str, int]) -> None:
        with client_socket:
            client_socket.settimeout(min(SOCKET_TIMEOUT_SECS, self.keepalive_timeout_secs))
            request_count = 0
            carry = b""
            while request_count < MAX_KEEPALIVE_REQUESTS:
                started_at = time.perf_counter()
                try:
                    raw_request, carry = read_http_request_message(client_socket, carry)
                except SocketTimeoutError:
                    if request_count == 0 and not carry:
                        self._reject(client_socket, address, 408, started_at)
                    return
                except HTTPReadError as exc:
                    status_code = READ_ERROR_STATUS.get(type(exc), 400)
                    self._reject(client_socket, address, status_code, started_at)
                    return
                except OSError:
                    return

                if not raw_request:
                    return

                try:
                    request = HTTPRequest.from_bytes(raw_request)
                except HTTPRequestParseError as exc:
                    self._reject(client_socket, address, exc.status_code, started_at)
                    return

                request_count += 1
                response = self._dispatch(request)

                allow_chunked = request.http_version == "HTTP/1.1"
                should_close = (
                    not request.keep_alive
                    or request_count >= MAX_KEEPALIVE_REQUESTS
                    or (not allow_chunked and not response.has_known_length)
                )
                if should_close:
                    response.headers["Connection"] = "close"
                elif request.http_version == "HTTP/1.0":
                    response.headers["Connection"] = "keep-alive"

                try:
                    bytes_sent = write_http_response_message(
                        client_socket, response, allow_chunked=allow_chunked
                    )
                except BodyStreamError:
                    logger.warning(
                        "Aborted %s %s: body source failed after headers were sent",
                        request.method,
                        request.path,
                        exc_info=True,
                    )
                    return
                except OSError as exc:
                    logger.info(
                        "Client %s went away during %s %s: %s",
                        address[0],
                        request.method,
                        request.path,
                        exc,
                    )
                    return

                self._record_and_log(
                    address=address,
                    method=request.method,
                    path=request.path,
                    response=response,
                    payload_size=bytes_sent,
                    bytes_in=len(raw_request),
                    started_at=started_at,
                    request_id=request_count,
                )
                if should_close:
                    return

    def _reject(
        self,
        client_socket: socket.socket,
        address: tuple[str, int],
        status_code: int,
        started_at: float,
    ) -> None:
        response = error_response(REASON_PHRASES.get(status_code, "Bad Request"), status_code)
        response.headers["Connection"] = "close"
        try:
            bytes_sent = write_http_response_message(client_socket, response)
        except OSError:
            return
        self._record_and_log(
            address=address,
            method="-",
            path="-",
            response=response,
            payload_size=bytes_sent,
            bytes_in=0,
            started_at=started_at,
            request_id=0,
        )

    def _dispatch(self, request: HTTPRequest) -> HTTPResponse:
        if request.method not in {"GET", "HEAD"}:
            return HTTPResponse(
                status_code=405,
                headers={"Allow": ALLOWED_METHODS},
                body="Method Not Allowed",
            )

        if self.mount_prefix != "/" and request.path == self.mount_prefix.rstrip("/"):
            return HTTPResponse(
                status_code=301,
                headers={"Location": self.mount_prefix},
                body=b"",
            )
        if not request.path.startswith(self.mount_prefix):
            return error_response("404 page not found", 404)

        routed = self._request_with_path(request, request.path.removeprefix(self.mount_prefix))
        try:
            response = self.handler(routed)
        except Exception:
            logger.exception("Unhandled error serving %s", request.path)
            response = error_response("500 Internal Server Error", 500)

        if request.method == "HEAD":
            return self._as_head_response(
                response, allow_chunked=request.http_version == "HTTP/1.1"
            )
        return response

    def _record_and_log(
        self,
        *,
        address: tuple[str, int],
        method: str,
        path: str,
        response: HTTPResponse,
        payload_size: int,
        bytes_in: int,
        started_at: float,
        request_id: int,
    ) -> None:
        duration_ms = (time.perf_counter() - started_at) * 1000
        event = {
            "client": address[0],
            "method": method,
            "path": path,
            "status": response.status_code,
            "request_id": request_id,
            "bytes_in": bytes_in,
            "bytes_out": payload_size,
            "latency_ms": round(duration_ms, 3),
        }
        if self.log_format == "json":
            logger.info(json.dumps(event, sort_keys=True))
            return

        logger.info(
            "client=%s method=%s path=%s status=%s request_id=%s bytes_in=%s bytes_out=%s duration_ms=%.2f",
            event["client"],
            event["method"],
            event["path"],
            event["status"],
            event["request_id"],
            event["bytes_in"],
            event["bytes_out"],
            duration_ms,
        )

    def _request_with_path(self, request: HTTPRequest, path: str) -> HTTPRequest:
        return HTTPRequest(
            method=request.method,
            path=path,
            raw_target=request.raw_target,
            http_version=request.http_version,
            headers=dict(request.headers),
            header_lines=list(request.header_lines),
            query_params=dict(request.query_params),
            keep_alive=request.keep_alive,
        )

    def _as_head_response(
        self, get_response: HTTPResponse, *, allow_chunked: bool = True
    ) -> HTTPResponse:
        headers = dict(get_response.headers)
        get_response.close()
        if get_response.stream is None:
            body_bytes = get_response.body
            if isinstance(body_bytes, str):
                body_bytes = body_bytes.encode("utf-8")
            content_length: int | None = len(body_bytes)
        elif "Content-Length" in headers:
            content_length = int(headers.pop("Content-Length"))
        elif allow_chunked:
            content_length = None
            headers["Transfer-Encoding"] = "chunked"
        else:
            # Close-delimited on HTTP/1.0: no framing header at all.
            return HTTPResponse(
                status_code=get_response.status_code,
                reason_phrase=get_response.reason_phrase,
                headers=headers,
                stream=(),
            )

        return HTTPResponse(
            status_code=get_response.status_code,
            reason_phrase=get_response.reason_phrase,
            headers=headers,
            body=b"",
            content_length_override=content_length,
        )


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Serve bug-report logs over HTTP")
    parser.add_argument("--host", default=HOST)
    parser.add_argument("--port", type=int, default=PORT)
    parser.add_argument("--root", default=ROOT_DIR, help="directory to serve logs from")
    parser.add_argument("--mount-prefix", default=MOUNT_PREFIX)
    parser.add_argument("--workers", type=int, default=WORKER_COUNT)
    parser.add_argument("--keepalive-timeout", type=int, default=KEEPALIVE_TIMEOUT_SECS)
    parser.add_argument("--log-format", choices=["plain", "json"], default=LOG_FORMAT)
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    logging.basicConfig(level=logging.INFO)
    server = HTTPServer(
        host=args.host,
        port=args.port,
        root=args.root,
        mount_prefix=args.mount_prefix,
        worker_count=args.workers,
        keepalive_timeout_secs=args.keepalive_timeout,
        log_format=args.log_format,
    )
    try:
        server.start()
    except KeyboardInterrupt:
        server.stop()


if __name__ == "__main__":
    main()
