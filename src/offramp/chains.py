"""Chain configuration for the off-ramp networks.

Only Base is supported today. Token metadata is kept here so that assets
are resolved once at scan time instead of being re-read on every call.
"""

from dataclasses import dataclass, field
from typing import Optional


@dataclass(frozen=True)
class TokenConfig:
    """A fungible token known on a chain."""

    symbol: str
    address: str
    decimals: int


@dataclass
class ChainConfig:
    """Configuration for an EVM chain."""

    name: str
    symbol: str
    chain_id: int
    explorer_url: str
    settlement_token: TokenConfig
    swap_spender: str  # default allowance target when a quote omits one
    tokens: list[TokenConfig] = field(default_factory=list)
    native_decimals: int = 18

    def get_token(self, symbol_or_address: str) -> Optional[TokenConfig]:
        """Look up a token by symbol or contract address."""
        needle = symbol_or_address.lower()
        for token in self.tokens:
            if token.symbol.lower() == needle or token.address.lower() == needle:
                return token
        return None


# ======================
# Base
# ======================

USDC_BASE = TokenConfig("USDC", "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913", 6)
SEND_BASE = TokenConfig("SEND", "0xEab49138BA2Ea6dd776220fE26b7b8E446638956", 18)

# 0x Exchange Proxy on Base
ZEROX_EXCHANGE_PROXY = "0xDef1C0ded9bec7F1a1670819833240f027b25EfF"

BASE_TOKENS = [
    USDC_BASE,
    SEND_BASE,
    TokenConfig("DAI", "0x50c5725949A6F0c72E6C4a641F24049A917DB0Cb", 18),
    TokenConfig("USDbC", "0xd9aAEc86B65D86f6A7B5B1b0c42FFA531710b6CA", 6),
    TokenConfig("WETH", "0x4200000000000000000000000000000000000006", 18),
    TokenConfig("cbETH", "0x2Ae3F1Ec7F1F5012CFEab0185bfc7aa3cf0DEc22", 18),
    TokenConfig("AERO", "0x940181a94A35A4569E4529A3CDfB74e38FD98631", 18),
    TokenConfig("DEGEN", "0x4ed4E862860beD51a9570b96d89aF5E1B0Efefed", 18),
    TokenConfig("BRETT", "0x532f27101965dd16442E59d40670FaF5eBB142E4", 18),
]

CHAINS: dict[str, ChainConfig] = {
    "base": ChainConfig(
        name="Base",
        symbol="ETH",
        chain_id=8453,
        explorer_url="https://basescan.org",
        settlement_token=USDC_BASE,
        swap_spender=ZEROX_EXCHANGE_PROXY,
        tokens=BASE_TOKENS,
    ),
}

SUPPORTED_NETWORKS = tuple(CHAINS.keys())


def get_chain(network: str) -> ChainConfig:
    """Get configuration for a supported network.

    Raises:
        ValueError: If the network is not supported
    """
    chain = CHAINS.get(network.lower())
    if chain is None:
        raise ValueError(
            f"Unsupported network '{network}'. Supported: {', '.join(SUPPORTED_NETWORKS)}"
        )
    return chain


def get_explorer_tx_url(network: str, tx_hash: str) -> str:
    """Get block explorer URL for a transaction."""
    return f"{get_chain(network).explorer_url}/tx/{tx_hash}"
