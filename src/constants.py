"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    USAGE_ERROR = 2


class CachePolicies(Enum):
    """Freshness policies understood by the edge cache.

    Args:
        Enum (string): Policy names accepted on the command line.
    """

    TRUST_TTL = "trust-ttl"
    REVALIDATE = "revalidate"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration constants; not intended to provide behavior.
    """

    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_LOG_LEVEL = "NPM_BUCKET_PROXY_LOG_LEVEL"
    LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]

    DEFAULT_HOST = "127.0.0.1"
    DEFAULT_PORT = 8080
    DEFAULT_REWRITES = {"/": "/root.json"}
    HEALTH_PATH = "/_proxy/health"

    REQUEST_TIMEOUT = 30  # Timeout in seconds for storage requests
    NOT_FOUND_STATUSES = [404]
    STREAM_CHUNK_SIZE = 64 * 1024
    DEFAULT_CONTENT_TYPE = "application/octet-stream"
    RETRY_AFTER_SEC = 5

    CACHE_TTL_SEC = 300
    CACHE_MAX_ENTRIES = 1000
    CACHE_MAX_BYTES = 100 * 1024 * 1024  # 100MB
    CACHE_CLEANUP_INTERVAL_SEC = 30
    CACHE_POLICIES = [policy.value for policy in CachePolicies]
