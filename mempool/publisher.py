from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import redis.asyncio as redis

from mempool.errors import NotDexTransaction, SerializationError, publish_error_from
from mempool.types import DecodedTransaction


DEFAULT_CHANNEL = "mempool_alpha"

# Wire key -> attribute name. The wire format carries exactly these keys.
WIRE_FIELDS: Dict[str, str] = {
    "hash": "hash",
    "from": "from_addr",
    "to": "to",
    "method": "method",
    "methodId": "method_id",
    "value": "value",
    "gasPrice": "gas_price",
    "timestamp": "timestamp",
}

logger = logging.getLogger("ingestor.publisher")


def current_timestamp_millis() -> int:
    return int(time.time() * 1000)


def format_hash(tx_hash: bytes) -> str:
    return "0x" + bytes(tx_hash).hex()


def format_address(address: bytes) -> str:
    return "0x" + bytes(address).hex()


def format_value(value: int) -> str:
    return str(int(value))


@dataclass(frozen=True)
class TransactionMessage:
    """Canonical record consumed by the gateway."""

    hash: str
    from_addr: str
    to: str
    method: str
    method_id: str
    value: str
    gas_price: str
    timestamp: int

    def to_dict(self) -> Dict[str, Any]:
        return {key: getattr(self, attr) for key, attr in WIRE_FIELDS.items()}

    def to_json(self) -> str:
        try:
            return json.dumps(self.to_dict(), separators=(",", ":"))
        except (TypeError, ValueError) as exc:
            raise SerializationError(str(exc)) from exc

    @classmethod
    def from_json(cls, payload: str) -> "TransactionMessage":
        try:
            raw = json.loads(payload)
        except ValueError as exc:
            raise SerializationError(str(exc)) from exc
        if not isinstance(raw, dict):
            raise SerializationError("message is not a JSON object")
        missing = [k for k in WIRE_FIELDS if k not in raw]
        extra = [k for k in raw if k not in WIRE_FIELDS]
        if missing or extra:
            raise SerializationError(f"bad message keys: missing={missing} extra={extra}")
        timestamp = raw["timestamp"]
        if not isinstance(timestamp, int) or isinstance(timestamp, bool) or timestamp < 0:
            raise SerializationError(f"timestamp must be an unsigned integer, got {timestamp!r}")
        fields = {}
        for key, attr in WIRE_FIELDS.items():
            if key == "timestamp":
                continue
            if not isinstance(raw[key], str):
                raise SerializationError(f"{key} must be a string")
            fields[attr] = raw[key]
        return cls(timestamp=timestamp, **fields)


def format_transaction(tx: DecodedTransaction) -> Optional[TransactionMessage]:
    """Build the outbound message; None when the transaction is not a DEX call."""
    op = tx.dex_method
    if op is None:
        return None
    return TransactionMessage(
        hash=format_hash(tx.tx_hash),
        from_addr=format_address(tx.from_addr),
        to=format_address(tx.to_addr) if tx.to_addr is not None else "",
        method=op.method_name,
        method_id=op.selector_hex,
        value=format_value(tx.value),
        gas_price=format_value(tx.gas_price),
        timestamp=current_timestamp_millis(),
    )


class Publisher:
    """Owns the Redis client and publishes messages to one channel."""

    def __init__(self, client: Any, channel: str = DEFAULT_CHANNEL) -> None:
        self._client = client
        self.channel = str(channel)

    @classmethod
    async def connect(cls, url: str, channel: str = DEFAULT_CHANNEL) -> "Publisher":
        client = redis.Redis.from_url(url, decode_responses=False)
        try:
            await client.ping()
        except Exception as exc:
            await client.aclose()
            raise publish_error_from(exc) from exc
        logger.info("Redis connected: %s channel=%s", url, channel)
        return cls(client, channel)

    async def publish(self, tx: DecodedTransaction) -> int:
        message = format_transaction(tx)
        if message is None:
            raise NotDexTransaction(format_hash(tx.tx_hash))
        return await self.publish_message(message)

    async def publish_message(self, message: TransactionMessage) -> int:
        payload = message.to_json()
        try:
            receivers = await self._client.publish(self.channel, payload)
        except Exception as exc:
            raise publish_error_from(exc) from exc
        return int(receivers)

    async def close(self) -> None:
        if self._client is None:
            return
        client, self._client = self._client, None
        try:
            await client.aclose()
        except Exception as exc:
            logger.warning("Redis close failed: %s", exc)
