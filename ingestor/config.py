# ingestor/config.py
# Defaults for the mempool ingestor. Every value can be overridden through the
# environment variable of the same name.

from __future__ import annotations

import os
from typing import Optional

from infra.ipc import (
    CONNECTION_TIMEOUT_MS,
    DEFAULT_IPC_PATHS,
    INITIAL_BACKOFF_MS,
    MAX_BACKOFF_MS,
    MAX_RECONNECT_ATTEMPTS,
    IpcConfig,
    find_ipc_socket,
)
from mempool.publisher import DEFAULT_CHANNEL

# Empty -> first existing path from DEFAULT_IPC_PATHS.
IPC_PATH = ""

REDIS_URL = "redis://localhost:6379/0"
REDIS_CHANNEL = DEFAULT_CHANNEL

# Run artifacts (logs/run.log, snapshot) land under <RUN_LOG_DIR>/<timestamp>_<run id prefix>.
RUN_LOG_DIR = "artifacts"


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return int(default)
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def ipc_path() -> str:
    """Configured socket path, else the first well-known path that exists, else the dev default."""
    configured = _env_str("IPC_PATH", IPC_PATH)
    if configured:
        return configured
    found: Optional[str] = find_ipc_socket()
    return found or DEFAULT_IPC_PATHS[0]


def ipc_config_from_env() -> IpcConfig:
    return IpcConfig(
        socket_path=ipc_path(),
        max_reconnect_attempts=_env_int("MAX_RECONNECT_ATTEMPTS", MAX_RECONNECT_ATTEMPTS),
        initial_backoff_ms=_env_int("INITIAL_BACKOFF_MS", INITIAL_BACKOFF_MS),
        max_backoff_ms=_env_int("MAX_BACKOFF_MS", MAX_BACKOFF_MS),
        timeout_ms=_env_int("CONNECT_TIMEOUT_MS", CONNECTION_TIMEOUT_MS),
    )


def redis_url() -> str:
    return _env_str("REDIS_URL", REDIS_URL) or REDIS_URL


def redis_channel() -> str:
    return _env_str("REDIS_CHANNEL", REDIS_CHANNEL) or REDIS_CHANNEL


def run_log_dir() -> str:
    return _env_str("RUN_LOG_DIR", RUN_LOG_DIR) or RUN_LOG_DIR
