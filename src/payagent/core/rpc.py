"""EVM node access through web3.py.

Only the read calls PayAgent needs: transaction receipts, transactions and
ERC-20 ``balanceOf``. Whatever goes wrong talking to the node (transport
errors, timeouts, JSON-RPC error objects, replies web3 cannot parse) surfaces
as ``RpcError``; a transaction the node does not know comes back as None.
"""

from typing import Any, Mapping, Optional, Union

from eth_utils import keccak, to_bytes
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import TransactionNotFound

from payagent.config import config
from payagent.core.chains import get_rpc_url, resolve_network
from payagent.exceptions import RpcError, UnsupportedNetworkError
from payagent.logging_utils import get_logger

logger = get_logger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0x" + keccak(text="Transfer(address,address,uint256)").hex()

ERC20_BALANCE_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]


def as_bytes(value: Union[bytes, str, None]) -> bytes:
    """Bytes from web3's HexBytes or a raw 0x-hex string."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    return to_bytes(hexstr=value or "0x")


def hex_to_int(value: Any) -> int:
    """Parse a JSON-RPC quantity (``"0x1a"``) or pass an int through."""
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def topic_to_address(topic: Union[bytes, str]) -> str:
    """Last 20 bytes of a 32-byte indexed topic, as lowercase 0x-hex."""
    return "0x" + as_bytes(topic)[-20:].hex()


class RpcClient:
    """Async read-only client bound to one node."""

    def __init__(
        self,
        url: str,
        timeout: Optional[float] = None,
        w3: Optional[AsyncWeb3] = None,
    ):
        """Initialize the client.

        Args:
            url: JSON-RPC endpoint.
            timeout: Per-call timeout in seconds. Defaults to config.rpc_timeout_seconds.
            w3: Prebuilt AsyncWeb3 (tests pass one over a scripted provider).
        """
        self.url = url
        self.timeout = timeout if timeout is not None else config.rpc_timeout_seconds
        self.w3 = w3 or AsyncWeb3(AsyncHTTPProvider(url, request_kwargs={"timeout": self.timeout}))

    @classmethod
    def for_network(cls, network: str) -> "RpcClient":
        """Build a client for a network via the chain registry.

        Raises:
            UnsupportedNetworkError: If the network does not resolve or has no endpoint.
        """
        if resolve_network(network) is None:
            raise UnsupportedNetworkError(network)
        url = get_rpc_url(network)
        if not url:
            raise UnsupportedNetworkError(network, "no RPC endpoint configured for network")
        return cls(url)

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Mapping[str, Any]]:
        try:
            return await self.w3.eth.get_transaction_receipt(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise RpcError("eth_getTransactionReceipt", str(e) or type(e).__name__) from e

    async def get_transaction(self, tx_hash: str) -> Optional[Mapping[str, Any]]:
        try:
            return await self.w3.eth.get_transaction(tx_hash)
        except TransactionNotFound:
            return None
        except Exception as e:
            raise RpcError("eth_getTransactionByHash", str(e) or type(e).__name__) from e

    async def erc20_balance_of(self, token_address: str, owner: str) -> int:
        """Raw (smallest-unit) ERC-20 balance of ``owner``."""
        try:
            token = self.w3.eth.contract(
                address=AsyncWeb3.to_checksum_address(token_address), abi=ERC20_BALANCE_ABI
            )
            balance = await token.functions.balanceOf(AsyncWeb3.to_checksum_address(owner)).call()
        except Exception as e:
            raise RpcError("eth_call", str(e) or type(e).__name__) from e
        return int(balance)
