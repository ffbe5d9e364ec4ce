"""Network capability registry.

Static facts about the networks deals can be settled on: EVM compatibility,
chain id, native asset and the well-known tokens that bridges carry.

Supports 8 networks:
- EVM: ethereum, polygon, bsc, arbitrum, optimism, avalanche
- Non-EVM: solana, bitcoin

Assets are referenced by symbol. ``None`` means the network's native asset.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

NATIVE_TOKEN_ADDRESS = "0x0000000000000000000000000000000000000000"
EVM_ADDRESS_RE = re.compile(r"^0x[a-fA-F0-9]{40}$")


@dataclass(frozen=True)
class NetworkConfig:
    """Configuration for a settlement network."""

    name: str
    display_name: str
    is_evm: bool
    native_asset: str

    chain_id: Optional[int] = None  # EVM chains only
    wrapped_native: Optional[str] = None
    # symbol -> contract address
    tokens: dict[str, str] = field(default_factory=dict)

    def supports_asset(self, asset: Optional[str]) -> bool:
        """Check whether the asset exists on this network."""
        if asset is None:
            return True
        symbol = asset.upper()
        return symbol == self.native_asset or symbol in self.tokens

    def token_address(self, asset: Optional[str]) -> str:
        """Contract address used by aggregators (zero address for native)."""
        if asset is None or asset.upper() == self.native_asset:
            return NATIVE_TOKEN_ADDRESS
        return self.tokens.get(asset.upper(), NATIVE_TOKEN_ADDRESS)


# ======================
# Network Configurations
# ======================

NETWORKS: dict[str, NetworkConfig] = {
    "ethereum": NetworkConfig(
        name="ethereum",
        display_name="Ethereum",
        is_evm=True,
        native_asset="ETH",
        chain_id=1,
        wrapped_native="0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",  # WETH
        tokens={
            "WETH": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
            "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
            "USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
        },
    ),
    "polygon": NetworkConfig(
        name="polygon",
        display_name="Polygon",
        is_evm=True,
        native_asset="MATIC",
        chain_id=137,
        wrapped_native="0x0d500B1d8E8eF31E21C99d1Db9A6444d3ADf1270",  # WMATIC
        tokens={
            "WETH": "0x7ceB23fD6bC0adD59E62ac25578270cFf1b9f619",
            "USDC": "0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
            "USDT": "0xc2132D05D31c914a87C6611C10748AEb04B58e8F",
        },
    ),
    "bsc": NetworkConfig(
        name="bsc",
        display_name="BNB Smart Chain",
        is_evm=True,
        native_asset="BNB",
        chain_id=56,
        wrapped_native="0xbb4CdB9CBd36B01bD1cBaEBF2De08d9173bc095c",  # WBNB
        tokens={
            "USDC": "0x8AC76a51cc950d9822D68b83fE1Ad97B32Cd580d",
            "USDT": "0x55d398326f99059fF775485246999027B3197955",
        },
    ),
    "arbitrum": NetworkConfig(
        name="arbitrum",
        display_name="Arbitrum One",
        is_evm=True,
        native_asset="ETH",
        chain_id=42161,
        wrapped_native="0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",  # WETH
        tokens={
            "WETH": "0x82aF49447D8a07e3bd95BD0d56f35241523fBab1",
            "USDC": "0xFF970A61A04b1cA14834A43f5dE4533eBDDB5CC8",
            "USDT": "0xFd086bC7CD5C481DCC9C85ebE478A1C0b69FCbb9",
        },
    ),
    "optimism": NetworkConfig(
        name="optimism",
        display_name="Optimism",
        is_evm=True,
        native_asset="ETH",
        chain_id=10,
        wrapped_native="0x4200000000000000000000000000000000000006",  # WETH
        tokens={
            "WETH": "0x4200000000000000000000000000000000000006",
            "USDC": "0x7F5c764cBc14f9669B88837ca1490cCa17c31607",
            "USDT": "0x94b008aA00579c1307B0EF2c499aD98a8ce58e58",
        },
    ),
    "avalanche": NetworkConfig(
        name="avalanche",
        display_name="Avalanche C-Chain",
        is_evm=True,
        native_asset="AVAX",
        chain_id=43114,
        wrapped_native="0xB31f66AA3C1e785363F0875A1B74E27b85FD66c7",  # WAVAX
        tokens={
            "USDC": "0xA7D7079b0FEaD91F3e65f86E8915Cb59c1a4C664",
            "USDT": "0x9702230A8Ea53601f5cD2dc00fDBc13d4dF4A8c7",
        },
    ),
    "solana": NetworkConfig(
        name="solana",
        display_name="Solana",
        is_evm=False,
        native_asset="SOL",
    ),
    "bitcoin": NetworkConfig(
        name="bitcoin",
        display_name="Bitcoin",
        is_evm=False,
        native_asset="BTC",
    ),
}

# Aliases accepted from callers
NETWORK_ALIASES: dict[str, str] = {
    "eth": "ethereum",
    "matic": "polygon",
    "pol": "polygon",
    "bnb": "bsc",
    "arb": "arbitrum",
    "op": "optimism",
    "avax": "avalanche",
    "sol": "solana",
    "btc": "bitcoin",
}


class TransactionType(str, Enum):
    """How value moves from the buyer's network to the seller's."""

    SAME_CHAIN = "same_chain"
    SAME_CHAIN_SWAP = "same_chain_swap"
    CROSS_CHAIN_BRIDGE = "cross_chain_bridge"
    CROSS_CHAIN_SWAP_BRIDGE = "cross_chain_swap_bridge"

    @property
    def is_cross_chain(self) -> bool:
        return self in (TransactionType.CROSS_CHAIN_BRIDGE, TransactionType.CROSS_CHAIN_SWAP_BRIDGE)


def normalize_network(network: str) -> str:
    """Normalize a network name or alias to its registry key."""
    key = network.strip().lower()
    return NETWORK_ALIASES.get(key, key)


def get_network(network: str) -> Optional[NetworkConfig]:
    """Get configuration for a network (None if unsupported)."""
    return NETWORKS.get(normalize_network(network))


def require_network(network: str) -> NetworkConfig:
    """Get configuration for a network, raising ValueError if unsupported."""
    config = get_network(network)
    if config is None:
        raise ValueError(f"Unsupported network: {network}")
    return config


def get_supported_networks() -> list[str]:
    """List of supported network keys."""
    return list(NETWORKS.keys())


def get_network_by_chain_id(chain_id: int) -> Optional[NetworkConfig]:
    """Reverse lookup of an EVM network by chain id."""
    for config in NETWORKS.values():
        if config.chain_id == chain_id:
            return config
    return None


def are_evm_compatible(source: str, destination: str) -> bool:
    """Check if both networks are EVM chains."""
    src = get_network(source)
    dst = get_network(destination)
    if src is None or dst is None:
        return False
    return src.is_evm and dst.is_evm


def is_valid_address(network: str, address: str) -> bool:
    """Basic address format check.

    Only EVM addresses are validated strictly; other networks are left to
    the routing provider.
    """
    config = get_network(network)
    if config is None or not address:
        return False
    if config.is_evm:
        return bool(EVM_ADDRESS_RE.match(address))
    return len(address) >= 10


def validate_token_for_network(network: str, asset: Optional[str]) -> bool:
    """Check that the asset can be held on the network (False if unsupported)."""
    config = get_network(network)
    return config is not None and config.supports_asset(asset)


def resolve_asset(network: str, asset: Optional[str]) -> str:
    """Resolve an asset reference to a concrete symbol on the network."""
    config = require_network(network)
    return config.native_asset if asset is None else asset.upper()


def escrow_asset_for(asset: Optional[str], source: str, destination: str) -> Optional[str]:
    """Asset the escrowed funds are held in on the destination network.

    The same symbol is kept when the destination carries it, otherwise the
    destination's native asset is used (requiring a swap on the way).
    Returns None when that is the destination's native asset.
    """
    dst = require_network(destination)
    symbol = resolve_asset(source, asset)
    if symbol == dst.native_asset:
        return None
    if dst.supports_asset(symbol):
        return symbol
    return None


def classify(
    buyer_network: str,
    seller_network: str,
    asset: Optional[str],
    payout_asset: Optional[str] = None,
) -> TransactionType:
    """Classify how a deal's value has to move.

    This is the single place the same-chain / cross-chain decision is made.

    Args:
        buyer_network: Network the buyer pays from
        seller_network: Network the seller is paid on
        asset: Asset the buyer pays with (None = native)
        payout_asset: Asset the seller wants (None = whatever is escrowed)

    Returns:
        TransactionType
    """
    buyer = require_network(buyer_network)
    seller = require_network(seller_network)
    paid_symbol = resolve_asset(buyer.name, asset)

    if buyer.name == seller.name:
        if payout_asset is not None and payout_asset.upper() != paid_symbol:
            return TransactionType.SAME_CHAIN_SWAP
        return TransactionType.SAME_CHAIN

    escrowed = escrow_asset_for(asset, buyer.name, seller.name)
    escrowed_symbol = resolve_asset(seller.name, escrowed)
    needs_swap = escrowed_symbol != paid_symbol
    if payout_asset is not None and payout_asset.upper() != escrowed_symbol:
        needs_swap = True

    if needs_swap:
        return TransactionType.CROSS_CHAIN_SWAP_BRIDGE
    return TransactionType.CROSS_CHAIN_BRIDGE
