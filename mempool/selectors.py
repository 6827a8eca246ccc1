from __future__ import annotations

from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from eth_utils import keccak


SELECTOR_SIZE = 4


def selector_of(signature: str) -> bytes:
    return keccak(text=signature)[:SELECTOR_SIZE]


class DexOperation(Enum):
    """Uniswap V2-style router calls forwarded downstream.

    Each member carries (method name, selector hex, canonical signature).
    """

    ADD_LIQUIDITY_ETH = (
        "addLiquidityETH",
        "0xf305d719",
        "addLiquidityETH(address,uint256,uint256,uint256,address,uint256)",
    )
    ADD_LIQUIDITY = (
        "addLiquidity",
        "0xe8e33700",
        "addLiquidity(address,address,uint256,uint256,uint256,uint256,address,uint256)",
    )
    SWAP_EXACT_ETH_FOR_TOKENS = (
        "swapExactETHForTokens",
        "0x7ff36ab5",
        "swapExactETHForTokens(uint256,address[],address,uint256)",
    )
    SWAP_EXACT_TOKENS_FOR_TOKENS = (
        "swapExactTokensForTokens",
        "0x38ed1739",
        "swapExactTokensForTokens(uint256,uint256,address[],address,uint256)",
    )
    SWAP_TOKENS_FOR_EXACT_TOKENS = (
        "swapTokensForExactTokens",
        "0x8803dbee",
        "swapTokensForExactTokens(uint256,uint256,address[],address,uint256)",
    )
    SWAP_EXACT_TOKENS_FOR_ETH = (
        "swapExactTokensForETH",
        "0x18cbafe5",
        "swapExactTokensForETH(uint256,uint256,address[],address,uint256)",
    )

    def __init__(self, method_name: str, selector_hex: str, signature: str) -> None:
        self.method_name = method_name
        self.selector_hex = selector_hex
        self.signature = signature
        self.selector = bytes.fromhex(selector_hex[2:])


# Built once at import, read-only afterwards.
DEX_SELECTORS: Mapping[bytes, DexOperation] = MappingProxyType({op.selector: op for op in DexOperation})


def extract_method_selector(data: bytes) -> Optional[bytes]:
    """First 4 bytes of calldata, or None when there are fewer than 4."""
    if len(data) < SELECTOR_SIZE:
        return None
    return bytes(data[:SELECTOR_SIZE])


def is_dex_selector(selector: bytes) -> bool:
    return bytes(selector) in DEX_SELECTORS


def lookup_selector(selector: bytes) -> Optional[DexOperation]:
    return DEX_SELECTORS.get(bytes(selector))


def method_name_for(selector: bytes) -> Optional[str]:
    op = lookup_selector(selector)
    return op.method_name if op else None


def filter_calldata(data: bytes) -> Optional[DexOperation]:
    """Classify a transaction payload; None for short input or unknown selectors."""
    selector = extract_method_selector(data)
    if selector is None:
        return None
    return lookup_selector(selector)
