"""
EVM Chain Registry

Single source of truth for the chains the engine can settle on: USDC
contract and EIP-712 domain per chain, CAIP-2 network string, slugs and
aliases used by legacy challenges, and RPC endpoints for balance reads.
Also hosts the integer/decimal conversion helpers used for display.
"""

import re
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field

from ...engine.exceptions import ConfigurationError


class EvmAssetConfig(BaseModel):
    """Token asset configuration."""
    symbol: str
    address: str = Field(..., description="Token contract address")
    name: str = Field(..., description="EIP-712 domain name of the token")
    decimals: int = Field(..., description="Token decimals")
    version: str = Field(..., description="EIP-712 domain version")


class EvmChainConfig(BaseModel):
    """EVM blockchain network configuration."""
    caip2: str
    chain_id: int
    slug: str = Field(..., description="Legacy x402 network name")
    name: str = Field(..., description="Human-readable network name")
    aliases: List[str] = Field(default_factory=list, description="Additional accepted network names")
    is_testnet: bool = False
    rpc_url: Optional[str] = Field(..., description="JSON-RPC endpoint URL template")
    public_rpc_url: str = Field(..., description="Public RPC endpoint (fallback when no infra key)")
    explorer_url: str = Field(..., description="Block explorer URL")
    usdc: EvmAssetConfig

    @property
    def network_identifiers(self) -> List[str]:
        """Every network string a challenge may use for this chain."""
        return [self.caip2, self.slug, *self.aliases]


def _usdc(address: str, name: str = "USD Coin") -> Dict:
    return {"symbol": "USDC", "address": address, "name": name, "decimals": 6, "version": "2"}


# Raw chain configuration data.
# ``rpc_url`` carries a {RPC_KEYS} placeholder and is used when an infra key is
# configured; otherwise ``public_rpc_url`` is used.
_EVM_CHAINS_DATA: Dict[int, Dict] = {
    1: {
        "slug": "ethereum",
        "name": "Ethereum",
        "aliases": ["eth", "mainnet", "eth-mainnet"],
        "rpc_url": "https://eth-mainnet.g.alchemy.com/v2/{RPC_KEYS}",
        "public_rpc_url": "https://ethereum-rpc.publicnode.com",
        "explorer_url": "https://etherscan.io",
        "usdc": _usdc("0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"),
    },
    11155111: {
        "slug": "sepolia",
        "name": "Sepolia",
        "aliases": ["eth-sepolia"],
        "is_testnet": True,
        "rpc_url": "https://eth-sepolia.g.alchemy.com/v2/{RPC_KEYS}",
        "public_rpc_url": "https://ethereum-sepolia-rpc.publicnode.com",
        "explorer_url": "https://sepolia.etherscan.io",
        "usdc": _usdc("0x1c7D4B196Cb0C7B01d743Fbc6116a902379C7238", name="USDC"),
    },
    8453: {
        "slug": "base",
        "name": "Base",
        "rpc_url": "https://base-mainnet.g.alchemy.com/v2/{RPC_KEYS}",
        "public_rpc_url": "https://mainnet.base.org",
        "explorer_url": "https://basescan.org",
        "usdc": _usdc("0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913"),
    },
    84532: {
        "slug": "base-sepolia",
        "name": "Base Sepolia",
        "is_testnet": True,
        "rpc_url": "https://base-sepolia.g.alchemy.com/v2/{RPC_KEYS}",
        "public_rpc_url": "https://sepolia.base.org",
        "explorer_url": "https://sepolia.basescan.org",
        "usdc": _usdc("0x036CbD53842c5426634e7929541eC2318f3dCF7e", name="USDC"),
    },
    42161: {
        "slug": "arbitrum",
        "name": "Arbitrum One",
        "aliases": ["arbitrum-one"],
        "rpc_url": "https://arb-mainnet.g.alchemy.com/v2/{RPC_KEYS}",
        "public_rpc_url": "https://arb1.arbitrum.io/rpc",
        "explorer_url": "https://arbiscan.io",
        "usdc": _usdc("0xaf88d065e77c8cC2239327C5EDb3A432268e5831"),
    },
    421614: {
        "slug": "arbitrum-sepolia",
        "name": "Arbitrum Sepolia",
        "is_testnet": True,
        "rpc_url": "https://arb-sepolia.g.alchemy.com/v2/{RPC_KEYS}",
        "public_rpc_url": "https://sepolia-rollup.arbitrum.io/rpc",
        "explorer_url": "https://sepolia.arbiscan.io",
        "usdc": _usdc("0x75faf114eafb1BDbe2F0316DF893fd58CE46AA4d"),
    },
    10: {
        "slug": "optimism",
        "name": "OP Mainnet",
        "aliases": ["op-mainnet"],
        "rpc_url": "https://opt-mainnet.g.alchemy.com/v2/{RPC_KEYS}",
        "public_rpc_url": "https://mainnet.optimism.io",
        "explorer_url": "https://optimistic.etherscan.io",
        "usdc": _usdc("0x0b2C639c533813f4Aa9D7837CAf62653d097Ff85"),
    },
    11155420: {
        "slug": "op-sepolia",
        "name": "OP Sepolia",
        "is_testnet": True,
        "rpc_url": "https://opt-sepolia.g.alchemy.com/v2/{RPC_KEYS}",
        "public_rpc_url": "https://sepolia.optimism.io",
        "explorer_url": "https://sepolia-optimism.etherscan.io",
        "usdc": _usdc("0x5fd84259d66Cd46123540766Be93DFE6D43130D7"),
    },
    137: {
        "slug": "polygon",
        "name": "Polygon PoS",
        "aliases": ["polygon-pos"],
        "rpc_url": "https://polygon-mainnet.g.alchemy.com/v2/{RPC_KEYS}",
        "public_rpc_url": "https://polygon-rpc.com",
        "explorer_url": "https://polygonscan.com",
        "usdc": _usdc("0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359"),
    },
    80002: {
        "slug": "polygon-amoy",
        "name": "Polygon Amoy",
        "is_testnet": True,
        "rpc_url": "https://polygon-amoy.g.alchemy.com/v2/{RPC_KEYS}",
        "public_rpc_url": "https://rpc-amoy.polygon.technology",
        "explorer_url": "https://amoy.polygonscan.com",
        "usdc": _usdc("0x41E94Eb019C0762f9Bfcf9Fb1E58725BfB0e7582", name="USDC"),
    },
}

EVM_CHAINS: Dict[int, EvmChainConfig] = {
    chain_id: EvmChainConfig(caip2=f"eip155:{chain_id}", chain_id=chain_id, **data)
    for chain_id, data in _EVM_CHAINS_DATA.items()
}

_CAIP2_PATTERN = re.compile(r"^eip155:(\d+)$")

# Display fallback for tokens that are not in the registry.
UNKNOWN_TOKEN_DECIMALS = 18
UNKNOWN_TOKEN_SYMBOL = "?"


def is_supported_chain(chain_id: int) -> bool:
    return chain_id in EVM_CHAINS


def get_chain_config(chain_id: int) -> EvmChainConfig:
    """
    Look up a supported chain.

    Raises:
        ConfigurationError: If the chain is not in the registry
    """
    try:
        return EVM_CHAINS[chain_id]
    except KeyError:
        raise ConfigurationError(f"Chain {chain_id} is not supported") from None


def resolve_network_to_chain_id(network: str) -> Optional[int]:
    """
    Map a challenge's network string to a supported chain id.

    Accepts CAIP-2 (``eip155:84532``), a bare numeric id, a legacy slug
    (``base-sepolia``), an alias (``eth``) or a display name
    (``OP Mainnet``), case-insensitively.

    Returns:
        int or None: The chain id, or None when the network is unknown
    """
    if not network:
        return None
    value = network.strip()
    match = _CAIP2_PATTERN.match(value.lower())
    if match:
        chain_id = int(match.group(1))
        return chain_id if chain_id in EVM_CHAINS else None
    if value.isdigit():
        chain_id = int(value)
        return chain_id if chain_id in EVM_CHAINS else None

    lowered = value.lower()
    for config in EVM_CHAINS.values():
        if lowered == config.slug or lowered == config.name.lower():
            return config.chain_id
        if any(lowered == alias.lower() for alias in config.aliases):
            return config.chain_id
    return None


def get_rpc_url(chain_id: int, rpc_key: Optional[str] = None) -> str:
    """Premium RPC URL when a key is configured, public RPC otherwise."""
    config = get_chain_config(chain_id)
    if rpc_key and config.rpc_url:
        return config.rpc_url.replace("{RPC_KEYS}", rpc_key)
    return config.public_rpc_url


def get_decimals_and_symbol(chain_id: int, asset: Optional[str]) -> Tuple[int, str]:
    """
    Decimals and symbol of a token, for display only.

    Only the registry's USDC contracts are known; anything else is shown
    with 18 decimals and symbol ``?``.
    """
    config = EVM_CHAINS.get(chain_id)
    if config and asset and config.usdc.address.lower() == asset.lower():
        return config.usdc.decimals, config.usdc.symbol
    return UNKNOWN_TOKEN_DECIMALS, UNKNOWN_TOKEN_SYMBOL


def value_to_amount(*, value: int | str | Decimal, decimals: int) -> Decimal:
    """Convert a smallest-unit integer `value` into a human-readable Decimal amount.

    Args:
        value: Smallest-unit integer value (e.g. 1230000 for 1.23 USDC).
        decimals: Token decimals (e.g. 6 for USDC).

    Returns:
        Decimal: Human-readable amount, exact.

    Raises:
        ValueError: If inputs are invalid.
    """
    if not isinstance(decimals, int) or decimals < 0:
        raise ValueError("decimals must be a non-negative int")

    try:
        dec_value = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError) as e:
        raise ValueError(f"Invalid value: {value!r}") from e

    if not dec_value.is_finite() or dec_value < 0:
        raise ValueError("value must be a non-negative finite number")

    if dec_value != dec_value.to_integral_value():
        raise ValueError("value must be an integer in smallest units")

    return dec_value.scaleb(-decimals)


def format_amount_for_display(
    amount_raw: Optional[str],
    asset: Optional[str],
    chain_id: int,
) -> Tuple[Optional[Decimal], str]:
    """
    Best-effort display amount of a raw token amount.

    Returns:
        (amount, symbol): ``amount`` is None when the raw value is missing or
        unparseable; callers decide how to render that.
    """
    decimals, symbol = get_decimals_and_symbol(chain_id, asset)
    if amount_raw is None or str(amount_raw).strip() == "":
        return None, symbol
    try:
        return value_to_amount(value=amount_raw, decimals=decimals), symbol
    except ValueError:
        return None, symbol
