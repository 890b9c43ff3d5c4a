"""Unit tests for the chain registry."""

import pytest

from payagent.config import Config
from payagent.core.chains import (
    get_explorer_url,
    get_rpc_url,
    get_supported_network_list,
    get_supported_networks,
    get_token_address,
    get_token_decimals,
    is_native_token,
    is_valid_network,
    resolve_network,
)


@pytest.mark.unit
class TestResolveNetwork:
    @pytest.mark.parametrize(
        "alias,expected",
        [
            ("sepolia", "sepolia"),
            ("ETH-SEPOLIA", "sepolia"),
            ("  sepolia-testnet ", "sepolia"),
            ("mainnet", "ethereum"),
            ("eth", "ethereum"),
            ("Base-Mainnet", "base"),
        ],
    )
    def test_aliases(self, alias, expected):
        assert resolve_network(alias) == expected

    @pytest.mark.parametrize("name", ["", None, "polygon", "sepolia-main", "base sepolia", "bnb"])
    def test_unknown_names_do_not_resolve(self, name):
        """Near-miss names must not be guessed into a supported network."""
        assert resolve_network(name) is None
        assert is_valid_network(name) is False


@pytest.mark.unit
class TestTokens:
    def test_native_token_has_no_address(self):
        assert get_token_address("sepolia", "ETH") is None
        assert is_native_token("eth", "base") is True
        assert is_native_token("USDC", "base") is False

    def test_token_address_lookup_is_case_insensitive(self):
        assert get_token_address("sepolia", "usdc") == "0x3402d41aa8e34e0df605c12109de2f8f4ff33a87"
        assert get_token_address("unknown", "USDC") is None
        assert get_token_address("sepolia", "DOGE") is None

    def test_decimals(self):
        assert get_token_decimals("base", "USDC") == 6
        assert get_token_decimals("ethereum", "LCX") == 18
        assert get_token_decimals("sepolia", "UNKNOWN") == 18
        assert get_token_decimals("nowhere", "USDC") == 18


@pytest.mark.unit
class TestRpcResolution:
    def test_primary_setting_wins(self):
        settings = Config(sepolia_rpc_url="https://primary", eth_rpc_url="https://fallback")
        assert get_rpc_url("sepolia", settings) == "https://primary"

    def test_single_fallback(self):
        settings = Config(sepolia_rpc_url="", eth_rpc_url="https://fallback")
        assert get_rpc_url("eth-sepolia", settings) == "https://fallback"

    def test_builtin_default_for_base(self):
        settings = Config(base_mainnet_rpc_url="")
        assert get_rpc_url("base", settings) == "https://mainnet.base.org"

    def test_no_endpoint(self):
        settings = Config(eth_mainnet_rpc_url="")
        assert get_rpc_url("ethereum", settings) is None
        assert get_rpc_url("polygon", settings) is None


@pytest.mark.unit
def test_supported_network_listing():
    assert get_supported_networks() == ["sepolia", "ethereum", "base"]
    listing = {n["name"]: n for n in get_supported_network_list()}
    assert listing["base"]["chainId"] == 8453
    assert "ETH" in listing["sepolia"]["tokens"]
    assert get_explorer_url("mainnet") == "https://etherscan.io"
