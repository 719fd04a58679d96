"""Bounded worker pool running one handler call per accepted connection."""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)

ClientAddress = tuple[str, int]
ClientJob = tuple[object, ClientAddress]
ClientHandler = Callable[[object, ClientAddress], None]


class WorkerPool:
    """Fixed set of daemon threads draining a bounded connection queue."""

    def __init__(self, worker_count: int, queue_size: int, handler: ClientHandler) -> None:
        if worker_count <= 0:
            raise ValueError("worker_count must be positive")
        if queue_size <= 0:
            raise ValueError("queue_size must be positive")

        self._handler = handler
        self._jobs: queue.Queue[ClientJob | None] = queue.Queue(maxsize=queue_size)
        self._workers: list[threading.Thread] = []
        self._worker_count = worker_count
        self._closed = threading.Event()

    @property
    def worker_count(self) -> int:
        return self._worker_count

    @property
    def threads(self) -> tuple[threading.Thread, ...]:
        return tuple(self._workers)

    def start(self) -> None:
        for index in range(self._worker_count):
            worker = threading.Thread(
                target=self._run,
                name=f"logserver-worker-{index}",
                daemon=True,
            )
            self._workers.append(worker)
            worker.start()

    def submit(self, client_socket: object, address: ClientAddress) -> bool:
        """Queue a connection; False when the pool is closed or the queue is full."""
        if self._closed.is_set():
            return False
        try:
            self._jobs.put_nowait((client_socket, address))
        except queue.Full:
            return False
        return True

    def shutdown(self, timeout: float = 1.0) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for _ in self._workers:
            try:
                self._jobs.put(None, timeout=timeout)
            except queue.Full:
                break
        for worker in self._workers:
            worker.join(timeout=timeout)

    def _run(self) -> None:
        while True:
            job = self._jobs.get()
            if job is None:
                return
            client_socket, address = job
            try:
                self._handler(client_socket, address)
            except Exception:
                logger.exception("Unhandled error serving connection from %s", address[0])
