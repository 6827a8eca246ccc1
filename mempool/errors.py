from __future__ import annotations

import asyncio
import json
from typing import Optional

from redis.exceptions import RedisError
from web3.exceptions import ProviderConnectionError, Web3Exception


# ---------------------------------------------------------------------------
# IPC transport


class IpcError(Exception):
    """Base class for subscription transport failures."""


class SocketNotFound(IpcError):
    def __init__(self, path: str) -> None:
        super().__init__(f"IPC socket not found at path: {path}")
        self.path = path


class ConnectionFailed(IpcError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Connection failed: {detail}")
        self.detail = detail


class SubscriptionFailed(IpcError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Subscription failed: {detail}")
        self.detail = detail


class IpcTimeout(IpcError):
    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Connection timeout after {timeout_ms}ms")
        self.timeout_ms = int(timeout_ms)


class MaxReconnectAttemptsExceeded(IpcError):
    """Fatal for the transport session: the supervisor decides what happens next."""

    def __init__(self, max_attempts: int) -> None:
        super().__init__(f"Max reconnection attempts ({max_attempts}) exceeded")
        self.max_attempts = int(max_attempts)


class InvalidPath(IpcError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Invalid IPC path: {detail}")
        self.detail = detail


class ProviderError(IpcError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Provider error: {detail}")
        self.detail = detail


# ---------------------------------------------------------------------------
# Decoding


class DecodeError(Exception):
    """Base class for per-transaction decode failures."""


class RlpDecodeError(DecodeError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Failed to decode RLP: {detail}")
        self.detail = detail


class EmptyInput(DecodeError):
    def __init__(self) -> None:
        super().__init__("Empty input data")


class InputTooShort(DecodeError):
    def __init__(self, length: int) -> None:
        super().__init__(f"Transaction input too short for method extraction ({length} bytes)")
        self.length = int(length)


class InvalidTxType(DecodeError):
    def __init__(self, tx_type: int) -> None:
        super().__init__(f"Invalid transaction type: {tx_type}")
        self.tx_type = int(tx_type)


# ---------------------------------------------------------------------------
# Publishing


class PublishError(Exception):
    """Base class for outbound publish failures."""


class PublishConnectionError(PublishError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Redis connection error: {detail}")
        self.detail = detail


class SerializationError(PublishError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Serialization error: {detail}")
        self.detail = detail


class NotDexTransaction(PublishError):
    def __init__(self, tx_hash: Optional[str] = None) -> None:
        super().__init__("Transaction is not a DEX transaction")
        self.tx_hash = tx_hash


# ---------------------------------------------------------------------------
# Mapping from underlying library failures


def connection_error_from(exc: BaseException) -> IpcError:
    if isinstance(exc, IpcError):
        return exc
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        return ConnectionFailed(f"timed out: {exc}")
    if isinstance(exc, FileNotFoundError):
        return SocketNotFound(str(exc.filename or exc))
    if isinstance(exc, (ProviderConnectionError, ConnectionError, OSError, EOFError)):
        return ConnectionFailed(str(exc) or type(exc).__name__)
    if isinstance(exc, Web3Exception):
        return ProviderError(str(exc) or type(exc).__name__)
    return ConnectionFailed(f"{type(exc).__name__}: {exc}")


def publish_error_from(exc: BaseException) -> PublishError:
    if isinstance(exc, PublishError):
        return exc
    if isinstance(exc, (RedisError, ConnectionError, OSError, asyncio.TimeoutError)):
        return PublishConnectionError(str(exc) or type(exc).__name__)
    if isinstance(exc, (TypeError, ValueError, json.JSONDecodeError)):
        return SerializationError(str(exc))
    return PublishConnectionError(f"{type(exc).__name__}: {exc}")
