"""Payment request lifecycle.

A request is created ``PENDING`` and moves exactly once, to ``PAID`` (after
on-chain verification) or ``EXPIRED`` (on demand, or when a payment or
instructions lookup arrives after ``expires_at``). Every transition is an
update-if-status, so concurrent verifications of the same request settle it
at most once, and a transaction hash can settle at most one request.
"""

import secrets
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from payagent.config import config
from payagent.core.chains import get_token_address, is_native_token, resolve_network
from payagent.core.fees import FeeEngine
from payagent.core.prices import Clock, SystemClock
from payagent.core.verification import TransactionVerifier
from payagent.core.webhooks import WebhookDispatcher, webhook_dispatcher
from payagent.database import Database, db
from payagent.exceptions import (
    AlreadySettledError,
    NotFoundError,
    PayAgentError,
    RequestExpiredError,
    UnsupportedNetworkError,
    UnsupportedTokenError,
)
from payagent.logging_utils import get_logger
from payagent.models import (
    EVENT_PAYMENT_CREATED,
    EVENT_PAYMENT_EXPIRED,
    EVENT_PAYMENT_PAID,
    FeeConfig,
    FeeLedgerEntry,
    FeeQuote,
    PaymentInstructions,
    PaymentRequest,
    PaymentTransfer,
    SettlementOutcome,
)

logger = get_logger(__name__)


def generate_request_id() -> str:
    return "REQ-" + secrets.token_hex(4).upper()


class SettlementService:
    """Creates payment requests and settles them against chain state."""

    def __init__(
        self,
        database: Optional[Database] = None,
        verifier: Optional[TransactionVerifier] = None,
        fee_engine: Optional[FeeEngine] = None,
        dispatcher: Optional[WebhookDispatcher] = None,
        clock: Optional[Clock] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self.database = database or db
        self.verifier = verifier or TransactionVerifier()
        self.fee_engine = fee_engine or FeeEngine()
        self.dispatcher = dispatcher or webhook_dispatcher
        self.clock = clock or SystemClock()
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else config.payment_request_ttl_seconds

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock.now(), tz=timezone.utc)

    async def create_request(
        self,
        creator_party_id: Optional[str],
        amount: Decimal,
        receiver: str,
        token: str = "USDC",
        network: str = "sepolia",
        description: Optional[str] = None,
        expires_in_seconds: Optional[int] = None,
    ) -> PaymentRequest:
        """Create a PENDING payment request.

        ``expires_in_seconds`` overrides the configured lifetime; a lifetime
        of 0 means the request never expires on its own.

        Raises:
            UnsupportedNetworkError: Network does not resolve.
            UnsupportedTokenError: Token has no contract on the network.
        """
        canonical = resolve_network(network)
        if canonical is None:
            raise UnsupportedNetworkError(network)

        token = token.upper()
        if not is_native_token(token, canonical) and get_token_address(canonical, token) is None:
            raise UnsupportedTokenError(token, canonical)

        now = self._now()
        ttl = expires_in_seconds if expires_in_seconds is not None else self.ttl_seconds
        request = PaymentRequest(
            id=generate_request_id(),
            creator_party_id=creator_party_id,
            amount=amount,
            token=token,
            network=canonical,
            receiver=receiver,
            description=description,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl) if ttl else None,
        )
        await self.database.create_payment_request(request)
        self.dispatcher.dispatch(EVENT_PAYMENT_CREATED, request)
        return request

    async def get_request(self, request_id: str) -> PaymentRequest:
        request = await self.database.get_payment_request(request_id)
        if request is None:
            raise NotFoundError(f"Payment request {request_id} not found")
        return request

    async def _require_payable(self, request_id: str) -> PaymentRequest:
        """Pending, unexpired request. A request found past its expiry is marked EXPIRED.

        Raises:
            NotFoundError: Unknown request.
            AlreadySettledError: Request is not pending.
            RequestExpiredError: Request passed ``expires_at``.
        """
        request = await self.get_request(request_id)
        if request.status != "PENDING":
            raise AlreadySettledError(request_id, request.status)

        if request.is_expired(self._now()):
            if await self.database.mark_payment_expired_if_pending(request_id):
                logger.info(f"Payment request {request_id} expired at {request.expires_at.isoformat()}")
                self.dispatcher.dispatch(EVENT_PAYMENT_EXPIRED, request.model_copy(update={"status": "EXPIRED"}))
            raise RequestExpiredError(request_id, request.expires_at)

        return request

    async def payment_instructions(
        self, request_id: str, payer_wallet: Optional[str] = None
    ) -> PaymentInstructions:
        """Transfers a payer has to broadcast to settle a request.

        Always the payment to the receiver, then the platform share to the
        treasury and the creator reward to the receiver, both in the quoted
        fee token. Zero-amount transfers are left out.

        Raises:
            NotFoundError: Unknown request.
            AlreadySettledError: Request is not pending.
            RequestExpiredError: Request passed ``expires_at``.
        """
        request = await self._require_payable(request_id)
        fee = await self.fee_engine.compute_fee(payer_wallet, request.network, request.token)
        fee_config = await self.fee_engine.config_provider.get()

        fee_token_address = get_token_address(request.network, fee.fee_token)
        transfers = [
            PaymentTransfer(
                description="Payment to creator",
                token=request.token,
                token_address=get_token_address(request.network, request.token),
                amount=request.amount,
                to=request.receiver,
            ),
            PaymentTransfer(
                description="Platform fee",
                token=fee.fee_token,
                token_address=fee_token_address,
                amount=fee.platform_share,
                to=fee_config.treasury_wallet,
            ),
            PaymentTransfer(
                description="Creator reward",
                token=fee.fee_token,
                token_address=fee_token_address,
                amount=fee.creator_reward,
                to=request.receiver,
            ),
        ]

        return PaymentInstructions(
            request=request,
            fee=fee,
            transfers=[t for t in transfers if t.amount > 0],
            total_payer_owes=request.amount + fee.fee_total if fee.deducted_from_payment else None,
        )

    async def verify_and_settle(
        self,
        request_id: str,
        tx_hash: str,
        payer_party_id: Optional[str] = None,
        payer_wallet: Optional[str] = None,
        fee_tx_hash: Optional[str] = None,
        creator_reward_tx_hash: Optional[str] = None,
    ) -> SettlementOutcome:
        """Verify ``tx_hash`` against a request and settle it.

        Args:
            request_id: Payment request to settle.
            tx_hash: Transaction claimed to pay it.
            payer_party_id: Authenticated payer, if any.
            payer_wallet: Fallback wallet for the fee quote when the
                transaction sender is not known.
            fee_tx_hash: Platform fee transfer. The ledger row is only
                COLLECTED once this transfer is verified on-chain.
            creator_reward_tx_hash: Creator reward transfer, recorded as given.

        Returns:
            SettlementOutcome. ``verification.valid`` is False when the
            transaction does not satisfy the request; nothing is written then.

        Raises:
            NotFoundError: Unknown request.
            AlreadySettledError: Request is not pending (checked before any RPC call).
            RequestExpiredError: Request passed ``expires_at`` (checked before any RPC call).
            TransactionAlreadyUsedError: ``tx_hash`` already settled another request.
        """
        request = await self._require_payable(request_id)

        verification = await self.verifier.verify(
            tx_hash,
            request.amount,
            get_token_address(request.network, request.token),
            request.receiver,
            token_symbol=request.token,
            network=request.network,
        )
        if not verification.valid:
            logger.info(f"Payment {request_id} not settled: {verification.error.value} ({verification.message})")
            return SettlementOutcome(request=request, verification=verification)

        fee: Optional[FeeQuote] = None
        try:
            fee = await self.fee_engine.compute_fee(
                verification.sender or payer_wallet, request.network, request.token
            )
        except PayAgentError as e:
            # Settles without a fee quote
            logger.error(f"Fee computation failed for {request_id}: {e}", exc_info=True)

        if not await self.database.mark_payment_paid_if_pending(
            request_id, tx_hash, payer_party_id, self._now()
        ):
            current = await self.get_request(request_id)
            raise AlreadySettledError(request_id, current.status)

        if fee is not None:
            await self._record_fee(request, fee, tx_hash, payer_party_id, fee_tx_hash, creator_reward_tx_hash)

        paid = await self.get_request(request_id)
        logger.info(f"Payment {request_id} settled by {tx_hash}")
        self.dispatcher.dispatch(EVENT_PAYMENT_PAID, paid, fee)
        return SettlementOutcome(request=paid, verification=verification, fee=fee)

    async def _fee_transfer_verified(
        self, request: PaymentRequest, fee: FeeQuote, fee_config: FeeConfig, fee_tx_hash: Optional[str]
    ) -> bool:
        """True when ``fee_tx_hash`` moved the platform share to the treasury."""
        if not fee_tx_hash:
            return False
        if fee.platform_share <= 0:
            return True

        try:
            result = await self.verifier.verify(
                fee_tx_hash,
                fee.platform_share,
                get_token_address(request.network, fee.fee_token),
                fee_config.treasury_wallet,
                token_symbol=fee.fee_token,
                network=request.network,
            )
        except PayAgentError as e:
            logger.warning(f"Fee transfer {fee_tx_hash} for {request.id} could not be checked: {e}")
            return False

        if not result.valid:
            logger.warning(
                f"Fee transfer {fee_tx_hash} for {request.id} not accepted: "
                f"{result.error.value} ({result.message})"
            )
        return result.valid

    async def _record_fee(
        self,
        request: PaymentRequest,
        fee: FeeQuote,
        tx_hash: str,
        payer_party_id: Optional[str],
        fee_tx_hash: Optional[str],
        creator_reward_tx_hash: Optional[str],
    ) -> None:
        fee_config = await self.fee_engine.config_provider.get()
        collected = await self._fee_transfer_verified(request, fee, fee_config, fee_tx_hash)
        entry = FeeLedgerEntry(
            id="FEE-" + uuid.uuid4().hex[:12].upper(),
            payment_request_id=request.id,
            payer_party_id=payer_party_id,
            creator_party_id=request.creator_party_id,
            fee_token=fee.fee_token,
            fee_total=fee.fee_total,
            platform_share=fee.platform_share,
            creator_reward=fee.creator_reward,
            source_price=fee.source_price,
            payer_incentive_balance=fee.payer_incentive_balance,
            deducted_from_payment=fee.deducted_from_payment,
            payment_amount=request.amount,
            payment_token=request.token,
            treasury_wallet=fee_config.treasury_wallet,
            payment_tx_hash=tx_hash,
            platform_fee_tx_hash=fee_tx_hash,
            creator_reward_tx_hash=creator_reward_tx_hash,
            status="COLLECTED" if collected else "PENDING",
            created_at=self._now(),
        )
        await self.database.create_fee_entry(entry)

    async def expire_request(self, request_id: str) -> PaymentRequest:
        """PENDING -> EXPIRED.

        Raises:
            NotFoundError: Unknown request.
            AlreadySettledError: Request is not pending.
        """
        request = await self.get_request(request_id)
        if not await self.database.mark_payment_expired_if_pending(request_id):
            current = await self.get_request(request_id)
            raise AlreadySettledError(request_id, current.status)

        expired = request.model_copy(update={"status": "EXPIRED"})
        self.dispatcher.dispatch(EVENT_PAYMENT_EXPIRED, expired)
        return expired
