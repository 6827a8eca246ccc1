from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from mempool.selectors import DexOperation


@dataclass(frozen=True)
class PendingTransaction:
    """One item read off the subscription: raw envelope plus the node-reported sender."""

    raw: bytes
    from_addr: bytes
    tx_hash: Optional[str]
    received_at_ms: int


@dataclass(frozen=True)
class DecodedTransaction:
    tx_hash: bytes
    from_addr: bytes
    to_addr: Optional[bytes]
    value: int
    gas_price: int
    input: bytes
    method_selector: Optional[bytes]
    dex_method: Optional[DexOperation]
    nonce: int
    gas_limit: int
    tx_type: int = 0

    @property
    def is_dex_transaction(self) -> bool:
        return self.dex_method is not None

    @property
    def method_selector_hex(self) -> Optional[str]:
        if self.method_selector is None:
            return None
        return "0x" + self.method_selector.hex()
