from __future__ import annotations

from typing import List, Optional, Tuple, Union

import rlp
from eth_utils import big_endian_to_int, decode_hex, keccak
from rlp.exceptions import RLPException

from mempool.errors import EmptyInput, InputTooShort, InvalidTxType, RlpDecodeError
from mempool.selectors import extract_method_selector, filter_calldata
from mempool.types import DecodedTransaction


TX_TYPE_LEGACY = 0x00
TX_TYPE_ACCESS_LIST = 0x01
TX_TYPE_FEE_MARKET = 0x02
TX_TYPE_BLOB = 0x03

# Field positions per envelope kind.
# (item count, nonce, price, gas, to, value, data)
_LAYOUTS = {
    TX_TYPE_LEGACY: (9, 0, 1, 2, 3, 4, 5),
    TX_TYPE_ACCESS_LIST: (11, 1, 2, 3, 4, 5, 6),
    TX_TYPE_FEE_MARKET: (12, 1, 3, 4, 5, 6, 7),
    TX_TYPE_BLOB: (14, 1, 3, 4, 5, 6, 7),
}

MAX_U64_BYTES = 8
MAX_U128_BYTES = 16
MAX_U256_BYTES = 32
ADDRESS_SIZE = 20

RlpItem = Union[bytes, List["RlpItem"]]


def hex_to_bytes(hex_str: str) -> bytes:
    """Parse hex with or without a 0x prefix."""
    try:
        return decode_hex(hex_str)
    except ValueError as exc:
        raise RlpDecodeError(str(exc)) from exc


def require_method_selector(data: bytes) -> bytes:
    selector = extract_method_selector(data)
    if selector is None:
        raise InputTooShort(len(data))
    return selector


def _rlp_decode(payload: bytes) -> RlpItem:
    try:
        return rlp.decode(payload)
    except RLPException as exc:
        raise RlpDecodeError(str(exc)) from exc


def _as_bytes(item: RlpItem, field: str) -> bytes:
    if not isinstance(item, bytes):
        raise RlpDecodeError(f"{field}: expected a string item, got a list")
    return item


def _as_uint(item: RlpItem, field: str, max_bytes: int) -> int:
    raw = _as_bytes(item, field)
    if len(raw) > max_bytes:
        raise RlpDecodeError(f"{field}: {len(raw)} bytes exceeds {max_bytes * 8}-bit width")
    if raw[:1] == b"\x00":
        raise RlpDecodeError(f"{field}: leading zero in integer")
    return big_endian_to_int(raw)


def _as_recipient(item: RlpItem, *, required: bool) -> Optional[bytes]:
    raw = _as_bytes(item, "to")
    if not raw:
        if required:
            raise RlpDecodeError("to: recipient is mandatory for blob transactions")
        return None
    if len(raw) != ADDRESS_SIZE:
        raise RlpDecodeError(f"to: expected {ADDRESS_SIZE} bytes, got {len(raw)}")
    return raw


def _split_envelope(raw: bytes) -> Tuple[int, List[RlpItem], bytes]:
    """Return (tx type, field list, hash preimage)."""
    first = raw[0]
    if first >= 0xC0:
        fields = _rlp_decode(raw)
        if not isinstance(fields, list):
            raise RlpDecodeError("legacy envelope is not a list")
        return TX_TYPE_LEGACY, fields, raw
    if first >= 0x80:
        raise RlpDecodeError("envelope is an RLP string, expected a list or typed payload")
    if first not in (TX_TYPE_ACCESS_LIST, TX_TYPE_FEE_MARKET, TX_TYPE_BLOB):
        raise InvalidTxType(first)
    if len(raw) < 2:
        raise RlpDecodeError("typed envelope has no payload")

    fields = _rlp_decode(raw[1:])
    if not isinstance(fields, list):
        raise RlpDecodeError("typed payload is not a list")
    if first == TX_TYPE_BLOB and fields and isinstance(fields[0], list):
        # Network form: [body, (version,) blobs, commitments, proofs]; hash covers the body only.
        body = fields[0]
        return first, body, bytes([first]) + rlp.encode(body)
    return first, fields, raw


def decode_transaction(raw: bytes, from_addr: bytes) -> DecodedTransaction:
    """Decode a raw envelope (legacy, 2930, 1559 or 4844) into a DecodedTransaction.

    The sender is supplied by the transport; no signature recovery happens here.
    """
    if not raw:
        raise EmptyInput()
    raw = bytes(raw)

    tx_type, fields, preimage = _split_envelope(raw)
    count, i_nonce, i_price, i_gas, i_to, i_value, i_data = _LAYOUTS[tx_type]
    if len(fields) != count:
        raise RlpDecodeError(f"type {tx_type} envelope has {len(fields)} fields, expected {count}")

    data = _as_bytes(fields[i_data], "data")
    return DecodedTransaction(
        tx_hash=keccak(preimage),
        from_addr=bytes(from_addr),
        to_addr=_as_recipient(fields[i_to], required=tx_type == TX_TYPE_BLOB),
        value=_as_uint(fields[i_value], "value", MAX_U256_BYTES),
        gas_price=_as_uint(fields[i_price], "gas_price", MAX_U128_BYTES),
        input=data,
        method_selector=extract_method_selector(data),
        dex_method=filter_calldata(data),
        nonce=_as_uint(fields[i_nonce], "nonce", MAX_U64_BYTES),
        gas_limit=_as_uint(fields[i_gas], "gas_limit", MAX_U64_BYTES),
        tx_type=tx_type,
    )
