"""On-chain payment verification.

Confirms that a claimed transaction really moved the expected amount to the
expected receiver. Native transfers are checked against the transaction's
``value``; token transfers against the ``Transfer`` event emitted by the
expected token contract (logs from any other contract are ignored).

Expected outcomes (missing, reverted, mismatched) come back as a
``VerificationResult``; only configuration problems raise.
"""

from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping, Optional

from eth_abi import decode
from eth_abi.exceptions import DecodingError

from payagent.core.chains import get_token_decimals, is_native_token, resolve_network
from payagent.core.rpc import TRANSFER_TOPIC, RpcClient, as_bytes, hex_to_int, topic_to_address
from payagent.exceptions import RpcError, UnsupportedNetworkError, UnsupportedTokenError
from payagent.logging_utils import get_logger
from payagent.models import VerificationFailure, VerificationResult

logger = get_logger(__name__)

TRANSFER_TOPIC_BYTES = as_bytes(TRANSFER_TOPIC)


def to_decimal_units(raw: int, decimals: int) -> Decimal:
    return Decimal(raw).scaleb(-decimals)


def parse_transfer_log(log: Mapping[str, Any]) -> Optional[tuple[str, str, int]]:
    """(sender, receiver, raw value) of an ERC-20 Transfer log, or None if it is not one.

    Accepts both web3-formatted logs (HexBytes topics and data) and raw JSON-RPC hex.
    """
    topics = log.get("topics") or []
    try:
        if len(topics) < 3 or as_bytes(topics[0]) != TRANSFER_TOPIC_BYTES:
            return None
        (value,) = decode(["uint256"], as_bytes(log.get("data")))
    except (DecodingError, ValueError, TypeError):
        return None
    return topic_to_address(topics[1]), topic_to_address(topics[2]), value


def amount_satisfies(observed: Decimal, expected: Decimal, decimals: int) -> bool:
    """``observed >= expected`` with half a smallest unit of slack.

    The slack absorbs decimal-string rounding in ``expected``; a shortfall of
    one whole unit still fails.
    """
    slack = Decimal(1).scaleb(-decimals) / 2
    return observed >= expected - slack


class TransactionVerifier:
    """Verifies claimed payments against chain state."""

    def __init__(self, rpc_factory: Callable[[str], RpcClient] = RpcClient.for_network):
        self.rpc_factory = rpc_factory

    async def verify(
        self,
        tx_hash: str,
        expected_amount: Any,
        expected_token_address: Optional[str],
        expected_receiver: str,
        token_symbol: str = "USDC",
        network: str = "sepolia",
    ) -> VerificationResult:
        """Verify a transaction.

        Args:
            tx_hash: Claimed transaction hash.
            expected_amount: Minimum amount in token units (decimal or string).
            expected_token_address: Token contract; ignored for the native asset.
            expected_receiver: Address that must receive the funds.
            token_symbol: Payment token symbol.
            network: Network name or alias.

        Returns:
            VerificationResult describing the outcome.

        Raises:
            UnsupportedNetworkError: Network unknown or without an RPC endpoint.
            UnsupportedTokenError: Contract token without a contract address.
        """
        canonical = resolve_network(network)
        if canonical is None:
            raise UnsupportedNetworkError(network)

        native = is_native_token(token_symbol, canonical)
        if not native and not expected_token_address:
            raise UnsupportedTokenError(token_symbol, canonical)

        try:
            expected = Decimal(str(expected_amount))
        except InvalidOperation as e:
            raise ValueError(f"Invalid expected amount: {expected_amount!r}") from e

        rpc = self.rpc_factory(canonical)

        try:
            receipt = await rpc.get_transaction_receipt(tx_hash)
            if not receipt:
                return self._fail(tx_hash, VerificationFailure.NOT_FOUND, "Transaction not found")

            if hex_to_int(receipt.get("status")) != 1:
                return self._fail(tx_hash, VerificationFailure.FAILED, "Transaction failed")

            if native:
                return await self._verify_native(
                    rpc, tx_hash, receipt, expected, expected_receiver,
                    get_token_decimals(canonical, token_symbol),
                )

            return self._verify_contract(
                tx_hash, receipt, expected, expected_token_address, expected_receiver,
                get_token_decimals(canonical, token_symbol),
            )
        except RpcError as e:
            logger.warning(f"RPC failure while verifying {tx_hash} on {canonical}: {e}")
            return self._fail(tx_hash, VerificationFailure.RPC_ERROR, str(e))

    async def _verify_native(
        self,
        rpc: RpcClient,
        tx_hash: str,
        receipt: Mapping[str, Any],
        expected: Decimal,
        expected_receiver: str,
        decimals: int,
    ) -> VerificationResult:
        tx = await rpc.get_transaction(tx_hash)
        if not tx:
            return self._fail(tx_hash, VerificationFailure.NOT_FOUND, "Transaction not found")

        observed = to_decimal_units(hex_to_int(tx.get("value")), decimals)
        receiver = (tx.get("to") or "").lower()
        sender = (tx.get("from") or "").lower() or None

        return self._compare(
            tx_hash, receipt, expected, expected_receiver, observed, receiver, sender, decimals, "native"
        )

    def _verify_contract(
        self,
        tx_hash: str,
        receipt: Mapping[str, Any],
        expected: Decimal,
        token_address: str,
        expected_receiver: str,
        decimals: int,
    ) -> VerificationResult:
        token_lower = token_address.lower()
        token_logs = [
            log for log in receipt.get("logs") or []
            if (log.get("address") or "").lower() == token_lower
        ]

        transfer = next(filter(None, (parse_transfer_log(log) for log in token_logs)), None)
        if transfer is None:
            return self._fail(
                tx_hash,
                VerificationFailure.NO_MATCHING_TRANSFER,
                "No transfer event found for this token contract",
            )

        sender, receiver, raw_value = transfer
        observed = to_decimal_units(raw_value, decimals)

        return self._compare(
            tx_hash, receipt, expected, expected_receiver, observed, receiver, sender, decimals, "contract"
        )

    def _compare(
        self,
        tx_hash: str,
        receipt: Mapping[str, Any],
        expected: Decimal,
        expected_receiver: str,
        observed: Decimal,
        receiver: str,
        sender: Optional[str],
        decimals: int,
        token_type: str,
    ) -> VerificationResult:
        amount_valid = amount_satisfies(observed, expected, decimals)
        receiver_valid = bool(receiver) and receiver == (expected_receiver or "").lower()

        if not amount_valid or not receiver_valid:
            logger.info(
                f"Verification mismatch for {tx_hash}: expected {expected} to {expected_receiver}, "
                f"got {observed} to {receiver}"
            )
            return VerificationResult(
                valid=False,
                tx_hash=tx_hash,
                error=VerificationFailure.MISMATCH,
                message="Amount or receiver mismatch",
                details={
                    "expected": {"amount": str(expected), "receiver": expected_receiver},
                    "actual": {"amount": str(observed), "receiver": receiver},
                },
            )

        return VerificationResult(
            valid=True,
            tx_hash=tx_hash,
            amount=str(observed),
            receiver=receiver,
            sender=sender,
            block_number=hex_to_int(receipt.get("blockNumber")),
            token_type=token_type,
        )

    def _fail(self, tx_hash: str, reason: VerificationFailure, message: str) -> VerificationResult:
        return VerificationResult(valid=False, tx_hash=tx_hash, error=reason, message=message)
