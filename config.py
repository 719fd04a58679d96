"""Configuration constants for the log server."""

HOST: str = "127.0.0.1"
PORT: int = 9110
ROOT_DIR: str = "bugs"
MOUNT_PREFIX: str = "/api/listing/"
SERVER_NAME: str = "logserver/1.0"
GZIP_SUFFIX: str = ".gz"

READ_CHUNK_SIZE: int = 4096
WRITE_CHUNK_SIZE: int = 65_536
SNIFF_LENGTH: int = 512
SOCKET_TIMEOUT_SECS: int = 5
MAX_TARGET_LENGTH: int = 8192
MAX_HEADER_BYTES: int = 16_384
MAX_BODY_BYTES: int = 65_536

WORKER_COUNT: int = 8
REQUEST_QUEUE_SIZE: int = 64
MAX_KEEPALIVE_REQUESTS: int = 100
KEEPALIVE_TIMEOUT_SECS: int = 5
LOG_FORMAT: str = "plain"
