"""CLI entry point for the npm bucket proxy server.

This module provides the command-line interface for starting the proxy that
serves npm registry requests out of an object-storage bucket.
"""

from __future__ import annotations

import ipaddress
import logging
import os
import sys
from typing import Any, Dict, Optional

import yaml

from args import parse_args
from common.logging_utils import configure_logging
from constants import Constants, ExitCodes

logger = logging.getLogger(__name__)


def _is_local_bind_host(host: str) -> bool:
    """Return True if host is a loopback/local bind target."""
    if not host:
        return False
    host_lower = host.strip().lower()
    if host_lower in ("localhost",):
        return True
    try:
        return ipaddress.ip_address(host_lower).is_loopback
    except ValueError:
        # Non-IP hostnames are treated as non-local unless explicitly allowed.
        return False


def _enforce_local_binding(host: str, allow_external: bool) -> None:
    """Enforce local-only binding unless explicitly allowed."""
    if _is_local_bind_host(host):
        return
    if not allow_external:
        sys.stderr.write(
            "ERROR: Non-local bindings require --allow-external.\n"
        )
        sys.exit(ExitCodes.USAGE_ERROR.value)
    logger.warning(
        "Binding proxy to non-local address (%s). Ensure network controls are in place.",
        host,
    )


def _load_config_file(config_path: Optional[str]) -> Dict[str, Any]:
    """Load proxy configuration from file.

    Args:
        config_path: Path to YAML/JSON config file.

    Returns:
        Configuration dict (the ``proxy`` section when present).
    """
    if not config_path:
        return {}

    if not os.path.isfile(config_path):
        logger.error("Config file not found: %s", config_path)
        sys.exit(ExitCodes.FILE_ERROR.value)

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        logger.error("Failed to load config: %s", e)
        sys.exit(ExitCodes.FILE_ERROR.value)

    if not isinstance(data, dict):
        return {}
    section = data.get("proxy", data)
    return section if isinstance(section, dict) else {}


def _setup_logging(args: Any) -> None:
    """Configure logging based on CLI arguments.

    Args:
        args: Parsed CLI arguments.
    """
    # Honor CLI --loglevel
    if getattr(args, "LOG_LEVEL", None):
        os.environ[Constants.ENV_LOG_LEVEL] = str(args.LOG_LEVEL).upper()

    configure_logging()

    # Add file handler if --logfile specified
    log_file = getattr(args, "LOG_FILE", None)
    if log_file:
        file_handler = logging.FileHandler(log_file)
        formatter = logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s"
        )
        file_handler.setFormatter(formatter)
        logging.getLogger().addHandler(file_handler)
        logger.info("Logging to file: %s", log_file)


def run_proxy_server(args: Any) -> None:
    """Entry point for the proxy server command.

    Args:
        args: Parsed CLI arguments namespace.
    """
    _setup_logging(args)

    # Lazy import so helpers above stay importable without aiohttp
    from npm_bucket_proxy.server import ProxyConfig, run_proxy_server_sync

    config_path = getattr(args, "CONFIG", None)
    file_config = _load_config_file(config_path)
    if file_config:
        logger.info("Loaded config from: %s", config_path)

    try:
        config = ProxyConfig.from_args(args, base=ProxyConfig.from_dict(file_config))
        storage = config.build_storage()
    except ValueError as e:
        sys.stderr.write(f"ERROR: {e}\n")
        sys.exit(ExitCodes.USAGE_ERROR.value)
    _enforce_local_binding(config.host, config.allow_external)

    # Print startup banner
    print(
        f"\n"
        f"  npm bucket proxy\n"
        f"  ================\n"
        f"  Listening: http://{config.host}:{config.port}\n"
        f"  Bucket: {config.bucket_url or config.bucket_dir}\n"
        f"  Cache: {'off' if not config.cache_enabled else config.cache_policy}\n"
        f"\n"
        f"  Configure your package manager:\n"
        f"    npm config set @jsr:registry http://{config.host}:{config.port}\n"
        f"\n"
        f"  Press Ctrl+C to stop\n"
    )

    run_proxy_server_sync(config, storage=storage)


def main(argv=None) -> None:
    """Console script entry point."""
    run_proxy_server(parse_args(argv))


if __name__ == "__main__":
    main()
