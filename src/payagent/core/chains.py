"""Chain registry.

Single source of truth for supported networks, their native asset, token
contract addresses, decimal precision and RPC endpoint resolution.

Lookups never raise: unresolved input yields ``None`` (or the 18-decimal
default) and callers treat that as "unsupported".
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Mapping, Optional

from payagent.config import Config, config

DEFAULT_DECIMALS = 18


@dataclass(frozen=True)
class NetworkConfig:
    """Immutable description of one supported network."""

    canonical_name: str
    display_name: str
    chain_id: int
    is_testnet: bool
    explorer: str
    native_token: str
    tokens: Mapping[str, str]
    token_decimals: Mapping[str, int]
    # Name of the Config field holding the RPC URL, plus at most one fallback
    rpc_setting: str
    rpc_fallback_setting: Optional[str] = None
    rpc_default: Optional[str] = None
    aliases: tuple[str, ...] = field(default_factory=tuple)


def _network(**kwargs: Any) -> NetworkConfig:
    kwargs["tokens"] = MappingProxyType(dict(kwargs["tokens"]))
    kwargs["token_decimals"] = MappingProxyType(dict(kwargs["token_decimals"]))
    return NetworkConfig(**kwargs)


_STANDARD_DECIMALS = {"USDC": 6, "USDT": 6, "LCX": 18, "ETH": 18}

SUPPORTED_CHAINS: Mapping[str, NetworkConfig] = MappingProxyType(
    {
        "sepolia": _network(
            canonical_name="sepolia",
            display_name="Sepolia (ETH Testnet)",
            chain_id=11155111,
            is_testnet=True,
            explorer="https://sepolia.etherscan.io",
            native_token="ETH",
            tokens={
                "USDC": "0x3402d41aa8e34e0df605c12109de2f8f4ff33a87",
                "USDT": "0xF9E0643Ba46eeaf4e1059775567f67F5c867bbfc",
                "LCX": "0x98d99c88D31C27C5a591Fe7F023F9DB0B37E4B3b",
            },
            token_decimals=_STANDARD_DECIMALS,
            rpc_setting="sepolia_rpc_url",
            rpc_fallback_setting="eth_rpc_url",
            aliases=("sepolia", "eth-sepolia", "sepolia-testnet"),
        ),
        "ethereum": _network(
            canonical_name="ethereum",
            display_name="Ethereum Mainnet",
            chain_id=1,
            is_testnet=False,
            explorer="https://etherscan.io",
            native_token="ETH",
            tokens={
                "USDC": "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48",
                "USDT": "0xdAC17F958D2ee523a2206206994597C13D831ec7",
                "LCX": "0x037A54AaB062628C9Bbae1FDB1583c195585Fe41",
            },
            token_decimals=_STANDARD_DECIMALS,
            rpc_setting="eth_mainnet_rpc_url",
            aliases=("ethereum", "mainnet", "eth-mainnet", "eth"),
        ),
        "base": _network(
            canonical_name="base",
            display_name="Base Mainnet",
            chain_id=8453,
            is_testnet=False,
            explorer="https://basescan.org",
            native_token="ETH",
            tokens={
                "USDC": "0x833589fCD6eDb6E08f4c7C32D4f71b54bdA02913",
                "USDT": "0xfde4C96c8593536E31F229EA8f37b2ADa2699bb2",
                "LCX": "0xd7468c14ae76C3Fc308aEAdC223D5D1F71d3c171",
            },
            token_decimals=_STANDARD_DECIMALS,
            rpc_setting="base_mainnet_rpc_url",
            rpc_default="https://mainnet.base.org",
            aliases=("base", "base-mainnet"),
        ),
    }
)

# Exact alias table. Anything not listed here is unsupported.
NETWORK_ALIASES: Mapping[str, str] = MappingProxyType(
    {alias: name for name, chain in SUPPORTED_CHAINS.items() for alias in chain.aliases}
)


def resolve_network(network: Optional[str]) -> Optional[str]:
    """Resolve a network string to its canonical name, or None."""
    if not network:
        return None
    return NETWORK_ALIASES.get(network.strip().lower())


def get_network_config(network: Optional[str]) -> Optional[NetworkConfig]:
    canonical = resolve_network(network)
    if canonical is None:
        return None
    return SUPPORTED_CHAINS[canonical]


def get_rpc_url(network: Optional[str], settings: Optional[Config] = None) -> Optional[str]:
    """Resolve the RPC URL for a network.

    Order: the network's own setting, its single fallback setting, then the
    built-in default (only Base has one).
    """
    chain = get_network_config(network)
    if chain is None:
        return None
    settings = settings or config

    primary = getattr(settings, chain.rpc_setting, "") or ""
    if primary:
        return primary

    if chain.rpc_fallback_setting:
        fallback = getattr(settings, chain.rpc_fallback_setting, "") or ""
        if fallback:
            return fallback

    return chain.rpc_default


def get_token_address(network: Optional[str], symbol: Optional[str]) -> Optional[str]:
    """Contract address of ``symbol`` on ``network``; None for the native asset."""
    chain = get_network_config(network)
    if chain is None:
        return None
    symbol = (symbol or "").upper()
    if symbol == chain.native_token:
        return None
    return chain.tokens.get(symbol)


def get_token_decimals(network: Optional[str], symbol: Optional[str]) -> int:
    chain = get_network_config(network)
    if chain is None:
        return DEFAULT_DECIMALS
    return chain.token_decimals.get((symbol or "").upper(), DEFAULT_DECIMALS)


def is_native_token(symbol: Optional[str], network: Optional[str]) -> bool:
    chain = get_network_config(network)
    if chain is None:
        return False
    return (symbol or "").upper() == chain.native_token


def is_valid_network(network: Optional[str]) -> bool:
    return resolve_network(network) is not None


def get_explorer_url(network: Optional[str]) -> Optional[str]:
    chain = get_network_config(network)
    return chain.explorer if chain else None


def get_supported_networks() -> list[str]:
    return list(SUPPORTED_CHAINS)


def get_supported_network_list() -> list[dict[str, Any]]:
    """Display-friendly summary of every supported network."""
    return [
        {
            "name": chain.canonical_name,
            "displayName": chain.display_name,
            "chainId": chain.chain_id,
            "isTestnet": chain.is_testnet,
            "nativeToken": chain.native_token,
            "tokens": sorted(set(chain.tokens) | {chain.native_token}),
        }
        for chain in SUPPORTED_CHAINS.values()
    ]
