from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, AsyncIterable, AsyncIterator, Awaitable, Dict, Optional

from infra.ipc import IpcConnection, PendingStream
from infra.metrics import METRICS, Metrics
from mempool.decoder import decode_transaction
from mempool.errors import DecodeError, IpcError, MaxReconnectAttemptsExceeded, PublishError
from mempool.publisher import Publisher, format_transaction
from mempool.types import PendingTransaction


logger = logging.getLogger("ingestor.pipeline")

_STOPPED = object()


async def _anext(iterator: AsyncIterator[PendingTransaction]) -> PendingTransaction:
    return await iterator.__anext__()


@dataclass
class PipelineStats:
    processed: int = 0
    filtered: int = 0
    published: int = 0
    errors: int = 0


class IngestPipeline:
    """Reads pending transactions one at a time and forwards DEX calls to the publisher.

    Per transaction: decode -> selector filter -> format -> publish. Decode
    failures and publish failures are counted and never stop the stream; only
    reconnect exhaustion ends `run()`.
    """

    def __init__(
        self,
        connection: IpcConnection,
        publisher: Publisher,
        *,
        metrics: Optional[Metrics] = None,
    ) -> None:
        self.connection = connection
        self.publisher = publisher
        self.metrics = metrics or METRICS
        self.stats = PipelineStats()
        self._stop = asyncio.Event()
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    async def process_one(self, pending: PendingTransaction) -> Optional[int]:
        """Return the receiver count when published, None when dropped.

        A PublishError is counted and then re-raised for this transaction only.
        """
        start = time.perf_counter()
        self.stats.processed += 1
        self.metrics.inc("tx_processed")

        try:
            with self.metrics.timer_ms("decode_ms"):
                tx = decode_transaction(pending.raw, pending.from_addr)
        except DecodeError as exc:
            self.stats.errors += 1
            self.metrics.inc("decode_errors")
            self.metrics.inc_reason("decode_error", type(exc).__name__)
            logger.debug("dropping undecodable tx %s: %s", pending.tx_hash, exc)
            return None

        message = format_transaction(tx)
        if message is None:
            return None
        self.stats.filtered += 1
        self.metrics.inc_reason("dex_method", message.method)

        try:
            with self.metrics.timer_ms("publish_ms"):
                receivers = await self.publisher.publish_message(message)
        except PublishError as exc:
            self.stats.errors += 1
            self.metrics.inc("publish_errors")
            self.metrics.inc_reason("publish_error", type(exc).__name__)
            logger.warning("publish failed for %s: %s", message.hash, exc)
            raise

        self.stats.published += 1
        self.metrics.inc("tx_published")
        self.metrics.observe("total_ms", (time.perf_counter() - start) * 1000.0)
        if pending.received_at_ms > 0:
            # Notification to publish, including the raw fetch done by the transport.
            self.metrics.observe("ingress_ms", max(0, int(time.time() * 1000) - pending.received_at_ms))
        return receivers

    async def process_stream(self, stream: AsyncIterable[PendingTransaction]) -> int:
        """Drain `stream` in order until it ends or stop() is called. Returns messages published."""
        published = 0
        iterator = stream.__aiter__()
        while not self._stop.is_set():
            pending = await self._next_or_stop(iterator)
            if pending is None:
                break
            try:
                if await self.process_one(pending) is not None:
                    published += 1
            except PublishError:
                continue
        return published

    async def run(self) -> None:
        """Consume until stop(); raises MaxReconnectAttemptsExceeded when the transport is gone for good."""
        self._running = True
        try:
            stream: Optional[PendingStream] = None
            try:
                stream = await self.connection.connect()
            except IpcError as exc:
                logger.error("initial IPC connect failed: %s", exc)

            while not self._stop.is_set():
                if stream is None:
                    stream = await self._race_stop(self.connection.reconnect())
                    if stream is _STOPPED:
                        break
                try:
                    await self.process_stream(stream)
                except MaxReconnectAttemptsExceeded:
                    raise
                except IpcError as exc:
                    logger.warning("IPC transport lost: %s", exc)
                else:
                    if self._stop.is_set():
                        break
                    logger.warning("IPC subscription ended")
                self.metrics.inc("ipc_disconnects")
                stream = None
        finally:
            self._running = False
            await self.connection.close()

    def stop(self) -> None:
        self._stop.set()

    async def _race_stop(self, awaitable: Awaitable[Any]) -> Any:
        """Await `awaitable` unless stop() fires first; then cancel it and return _STOPPED."""
        task = asyncio.ensure_future(awaitable)
        stop_task = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            # Runs on our own cancellation too: nothing may outlive this call.
            leftovers = [t for t in (task, stop_task) if not t.done()]
            for t in leftovers:
                t.cancel()
            if leftovers:
                await asyncio.gather(*leftovers, return_exceptions=True)
        if task.cancelled():
            return _STOPPED
        return task.result()

    async def _next_or_stop(self, iterator: AsyncIterator[PendingTransaction]) -> Optional[PendingTransaction]:
        try:
            pending = await self._race_stop(_anext(iterator))
        except StopAsyncIteration:
            return None
        if pending is _STOPPED:
            return None
        return pending

    def snapshot(self) -> Dict[str, Any]:
        return {
            "stats": asdict(self.stats),
            "connection_state": self.connection.state.value,
            "reconnect_attempts": self.connection.reconnect_attempts,
            "channel": self.publisher.channel,
            "metrics": self.metrics.snapshot(),
        }
