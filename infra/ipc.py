# infra/ipc.py

from __future__ import annotations

import asyncio
import enum
import logging
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional, Protocol, Sequence

from eth_utils import to_canonical_address
from web3 import AsyncIPCProvider, AsyncWeb3
from web3.exceptions import ProviderConnectionError, TransactionNotFound, Web3Exception

from infra.metrics import METRICS, Metrics
from mempool.errors import (
    IpcError,
    IpcTimeout,
    InvalidPath,
    MaxReconnectAttemptsExceeded,
    SocketNotFound,
    SubscriptionFailed,
    connection_error_from,
)
from mempool.types import PendingTransaction

# Tried in order: local dev node, foundry default, then production geth paths.
DEFAULT_IPC_PATHS = (
    "/tmp/anvil.ipc",
    "~/.foundry/anvil.ipc",
    "/var/run/geth.ipc",
    "~/.ethereum/geth.ipc",
)

MAX_RECONNECT_ATTEMPTS = 10
INITIAL_BACKOFF_MS = 100
MAX_BACKOFF_MS = 30_000
CONNECTION_TIMEOUT_MS = 5_000

# Exponent cap so the shift never grows unbounded for long outages.
_MAX_BACKOFF_EXPONENT = 10

logger = logging.getLogger("ingestor.ipc")


@dataclass(frozen=True)
class IpcConfig:
    socket_path: str = DEFAULT_IPC_PATHS[0]
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    initial_backoff_ms: int = INITIAL_BACKOFF_MS
    max_backoff_ms: int = MAX_BACKOFF_MS
    timeout_ms: int = CONNECTION_TIMEOUT_MS

    @classmethod
    def with_path(cls, socket_path: str) -> "IpcConfig":
        return cls(socket_path=str(socket_path))

    def backoff_delay(self, attempt: int) -> int:
        """Delay in ms before reconnect attempt `attempt` (0-indexed)."""
        exponent = min(max(0, int(attempt)), _MAX_BACKOFF_EXPONENT)
        return min(int(self.initial_backoff_ms) * (2 ** exponent), int(self.max_backoff_ms))


# ---------------------------------------------------------------------------
# Path resolution (pure, no connect side effects)


def expand_path(path: str) -> str:
    if path.startswith("~/"):
        return str(Path.home()) + path[1:]
    return path


def socket_exists(path: str) -> bool:
    return os.path.exists(expand_path(path))


def find_ipc_socket(candidates: Sequence[str] = DEFAULT_IPC_PATHS) -> Optional[str]:
    for path in candidates:
        if socket_exists(path):
            return expand_path(path)
    return None


def validate_ipc_path(path: str) -> bool:
    """Raise InvalidPath for an empty path; return False (and warn) when it looks unusual."""
    if not path:
        raise InvalidPath("Path cannot be empty")
    expanded = expand_path(path)
    if not expanded.endswith(".ipc") and "geth" not in expanded and "anvil" not in expanded:
        logger.warning("IPC path '%s' may not be a valid socket path", path)
        return False
    return True


# ---------------------------------------------------------------------------
# Subscription handle


class PendingStream(Protocol):
    def __aiter__(self) -> AsyncIterator[PendingTransaction]:
        ...

    async def close(self) -> None:
        ...


Connector = Callable[[str], Awaitable[PendingStream]]


def _hex(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    return str(value)


class IpcSubscription:
    """Live newPendingTransactions subscription over the node's IPC socket."""

    def __init__(self, w3: AsyncWeb3, subscription_id: Any, *, metrics: Optional[Metrics] = None) -> None:
        self._w3 = w3
        self.subscription_id = subscription_id
        self._metrics = metrics or METRICS
        self._closed = False

    @classmethod
    async def open(cls, path: str, *, metrics: Optional[Metrics] = None) -> "IpcSubscription":
        provider = AsyncIPCProvider(path)
        try:
            w3 = await AsyncWeb3(provider)
            try:
                # Full objects carry the sender; nodes that ignore the flag send bare hashes.
                subscription_id = await w3.eth.subscribe("newPendingTransactions", True)
            except Exception as exc:
                raise SubscriptionFailed(str(exc)) from exc
        except BaseException:
            # Also reached when the connect timeout cancels us mid-handshake.
            await _disconnect(provider)
            raise
        logger.info("Subscribed to newPendingTransactions (id=%s)", _hex(subscription_id))
        return cls(w3, subscription_id, metrics=metrics)

    def __aiter__(self) -> AsyncIterator[PendingTransaction]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[PendingTransaction]:
        try:
            async for response in self._w3.socket.process_subscriptions():
                pending = await self._resolve(response)
                if pending is not None:
                    yield pending
        except (IpcError, asyncio.CancelledError):
            raise
        except Exception as exc:
            raise connection_error_from(exc) from exc
        raise connection_error_from(EOFError("subscription stream ended"))

    async def _resolve(self, response: Mapping[str, Any]) -> Optional[PendingTransaction]:
        """Fetch raw bytes and sender for one notification; None when the item is skipped.

        Only transport failures escape. Anything specific to this transaction is
        counted and dropped so the subscription keeps running.
        """
        received_at_ms = int(time.time() * 1000)
        result = response.get("result")
        if isinstance(result, Mapping):
            tx_hash = _hex(result.get("hash"))
            sender = result.get("from")
        else:
            tx_hash = _hex(result)
            sender = None

        try:
            raw = await self._w3.eth.get_raw_transaction(tx_hash)
            if sender is None:
                tx = await self._w3.eth.get_transaction(tx_hash)
                sender = tx["from"]
            from_addr = to_canonical_address(sender)
        except TransactionNotFound:
            # Dropped or mined between the notification and the fetch.
            self._metrics.inc("ipc_raw_miss")
            return None
        except ProviderConnectionError:
            raise
        except (Web3Exception, ValueError, TypeError, KeyError) as exc:
            self._metrics.inc("ipc_fetch_error")
            self._metrics.inc_reason("ipc_fetch_error", type(exc).__name__)
            logger.warning("skipping pending tx %s: %s", tx_hash, exc)
            return None

        return PendingTransaction(
            raw=bytes(raw),
            from_addr=from_addr,
            tx_hash=tx_hash,
            received_at_ms=received_at_ms,
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._w3.eth.unsubscribe(self.subscription_id)
        except Exception as exc:
            logger.debug("unsubscribe failed: %s", exc)
        await _disconnect(self._w3.provider)


async def _disconnect(provider: Any) -> None:
    try:
        await provider.disconnect()
    except Exception as exc:
        logger.debug("provider disconnect failed: %s", exc)


# ---------------------------------------------------------------------------
# Connection manager


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


class IpcConnection:
    """Owns the subscription handle and its reconnect/backoff lifecycle."""

    def __init__(self, config: Optional[IpcConfig] = None, *, connector: Optional[Connector] = None) -> None:
        self.config = config or IpcConfig()
        self.state = ConnectionState.DISCONNECTED
        self._reconnect_attempts = 0
        self._connector: Connector = connector or IpcSubscription.open
        self._handle: Optional[PendingStream] = None

    @classmethod
    def with_default_config(cls) -> "IpcConnection":
        return cls(IpcConfig())

    @classmethod
    def with_path(cls, socket_path: str) -> "IpcConnection":
        return cls(IpcConfig.with_path(socket_path))

    @property
    def socket_path(self) -> str:
        return self.config.socket_path

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def handle(self) -> Optional[PendingStream]:
        return self._handle

    def socket_exists(self) -> bool:
        return socket_exists(self.config.socket_path)

    def reset_reconnect_counter(self) -> None:
        self._reconnect_attempts = 0

    def next_backoff_delay(self) -> int:
        return self.config.backoff_delay(self._reconnect_attempts)

    def reset(self) -> None:
        """Leave FAILED so a supervisor can try again."""
        self._reconnect_attempts = 0
        if self.state is ConnectionState.FAILED:
            self.state = ConnectionState.DISCONNECTED

    async def connect(self) -> PendingStream:
        validate_ipc_path(self.config.socket_path)
        path = expand_path(self.config.socket_path)
        reconnecting = self.state is ConnectionState.RECONNECTING

        if not os.path.exists(path):
            if not reconnecting:
                self.state = ConnectionState.DISCONNECTED
            raise SocketNotFound(path)

        if not reconnecting:
            self.state = ConnectionState.CONNECTING
        logger.info("Connecting to IPC socket at %s", path)

        try:
            handle = await asyncio.wait_for(self._connector(path), timeout=self.config.timeout_ms / 1000.0)
        except asyncio.TimeoutError as exc:
            if not reconnecting:
                self.state = ConnectionState.DISCONNECTED
            raise IpcTimeout(self.config.timeout_ms) from exc
        except IpcError:
            if not reconnecting:
                self.state = ConnectionState.DISCONNECTED
            raise
        except Exception as exc:
            if not reconnecting:
                self.state = ConnectionState.DISCONNECTED
            raise connection_error_from(exc) from exc

        await self._drop_handle()
        self._handle = handle
        self.state = ConnectionState.CONNECTED
        self.reset_reconnect_counter()
        logger.info("Successfully connected to IPC socket")
        return handle

    async def reconnect(self) -> PendingStream:
        max_attempts = int(self.config.max_reconnect_attempts)
        if self.state is ConnectionState.FAILED:
            raise MaxReconnectAttemptsExceeded(max_attempts)

        await self._drop_handle()
        self.state = ConnectionState.RECONNECTING
        while self._reconnect_attempts < max_attempts:
            delay_ms = self.next_backoff_delay()
            logger.warning(
                "Attempting to reconnect (attempt %s/%s), waiting %sms",
                self._reconnect_attempts + 1,
                max_attempts,
                delay_ms,
            )
            await asyncio.sleep(delay_ms / 1000.0)
            self._reconnect_attempts += 1
            try:
                return await self.connect()
            except IpcError as exc:
                logger.error("Reconnection attempt %s failed: %s", self._reconnect_attempts, exc)

        self.state = ConnectionState.FAILED
        raise MaxReconnectAttemptsExceeded(max_attempts)

    async def close(self) -> None:
        await self._drop_handle()
        if self.state is not ConnectionState.FAILED:
            self.state = ConnectionState.DISCONNECTED

    async def _drop_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        try:
            await handle.close()
        except Exception as exc:
            logger.debug("closing stale IPC handle failed: %s", exc)
