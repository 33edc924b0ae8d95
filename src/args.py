"""Argument parsing functionality for the npm bucket proxy."""

import argparse
from constants import Constants

def parse_args(argv=None):
    """Parses the arguments passed to the program."""
    parser = argparse.ArgumentParser(
        prog="npm-bucket-proxy",
        description=(
            "Serve npm registry requests from an object-storage bucket"
        ),
        add_help=True,
    )

    bucket_group = parser.add_mutually_exclusive_group()
    bucket_group.add_argument("--bucket-url",
                        dest="BUCKET_URL",
                        help="Base URL of a publicly readable bucket (S3/R2 compatible)",
                        action="store", type=str)
    bucket_group.add_argument("--bucket-dir",
                        dest="BUCKET_DIR",
                        help="Local directory mirroring the bucket, one file per key",
                        action="store", type=str)

    parser.add_argument("--host",
                        dest="PROXY_HOST",
                        help=f"Address to bind (default: {Constants.DEFAULT_HOST})",
                        action="store", type=str)
    parser.add_argument("--port",
                        dest="PROXY_PORT",
                        help=f"Port to bind (default: {Constants.DEFAULT_PORT})",
                        action="store", type=int)
    parser.add_argument("--allow-external",
                        dest="ALLOW_EXTERNAL",
                        help="Allow binding to a non-loopback address.",
                        action="store_true")
    parser.add_argument("--timeout",
                        dest="PROXY_TIMEOUT",
                        help="Storage request timeout in seconds",
                        action="store", type=int)

    parser.add_argument("--cache-ttl",
                        dest="CACHE_TTL",
                        help="Edge cache time-to-live in seconds",
                        action="store", type=int)
    parser.add_argument("--cache-max-bytes",
                        dest="CACHE_MAX_BYTES",
                        help="Edge cache size budget in bytes",
                        action="store", type=int)
    parser.add_argument("--cache-policy",
                        dest="CACHE_POLICY",
                        help="Serve cache hits for their whole TTL or revalidate them against storage",
                        action="store", type=str,
                        choices=Constants.CACHE_POLICIES)
    parser.add_argument("--not-found-status",
                        dest="NOT_FOUND_STATUSES",
                        help="Bucket status meaning 'no such key'; repeatable (default: 404)",
                        action="append", type=int)
    parser.add_argument("--no-cache",
                        dest="NO_CACHE",
                        help="Disable the edge cache.",
                        action="store_true")
    parser.add_argument("--no-rewrites",
                        dest="NO_REWRITES",
                        help="Disable virtual path rewrites (e.g. '/' -> '/root.json').",
                        action="store_true")

    parser.add_argument("--loglevel",
                        dest="LOG_LEVEL",
                        help="Set the logging level",
                        action="store",
                        type=str,
                        choices=Constants.LOG_LEVELS,
                        default='INFO')
    parser.add_argument("--logfile",
                        dest="LOG_FILE",
                        help="Log output file",
                        action="store",
                        type=str)

    # Config file (general)
    parser.add_argument("-c", "--config",
                        dest="CONFIG",
                        help="Path to configuration file (YAML, YML, or JSON)",
                        action="store",
                        type=str)

    return parser.parse_args(argv)
