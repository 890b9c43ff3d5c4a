"""Unit tests for payment request settlement (idempotency and anti-replay)."""

import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from payagent.core.settlement import SettlementService
from payagent.exceptions import (
    AlreadySettledError,
    NotFoundError,
    RequestExpiredError,
    TransactionAlreadyUsedError,
    UnsupportedNetworkError,
    UnsupportedTokenError,
)
from payagent.models import FeeConfig, FeeQuote, VerificationFailure, VerificationResult

RECEIVER = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"
TX = "0x" + "ab" * 32
OTHER_TX = "0x" + "cd" * 32
FEE_TX = "0x" + "ef" * 32
USDC_SEPOLIA = "0x3402d41aa8e34e0df605c12109de2f8f4ff33a87"
LCX_SEPOLIA = "0x98d99c88D31C27C5a591Fe7F023F9DB0B37E4B3b"
TREASURY = "0x7777777777777777777777777777777777777777"
PAYER = "0x1111111111111111111111111111111111111111"
TTL = 3600


def valid_result(tx_hash=TX, sender=None):
    return VerificationResult(
        valid=True, tx_hash=tx_hash, amount="10", receiver=RECEIVER.lower(), sender=sender, block_number=1
    )


def fee_quote():
    return FeeQuote(
        network="sepolia",
        payment_token="USDC",
        fee_token="USDC",
        fee_total=Decimal("0.6"),
        platform_share=Decimal("0.3"),
        creator_reward=Decimal("0.3"),
        source_price=Decimal("0.15"),
        deducted_from_payment=True,
    )


@pytest.fixture
def verifier():
    mock = MagicMock()
    mock.verify = AsyncMock(side_effect=lambda tx_hash, *args, **kwargs: valid_result(tx_hash))
    return mock


@pytest.fixture
def fee_engine():
    mock = MagicMock()
    mock.compute_fee = AsyncMock(return_value=fee_quote())
    mock.config_provider.get = AsyncMock(
        return_value=FeeConfig(
            incentive_token="LCX",
            flat_fee_amount=Decimal("4"),
            platform_share=Decimal("2"),
            creator_reward=Decimal("2"),
            treasury_wallet=TREASURY,
        )
    )
    return mock


@pytest.fixture
def dispatcher():
    return MagicMock()


@pytest.fixture
def service(test_db, verifier, fee_engine, dispatcher, clock):
    return SettlementService(
        database=test_db,
        verifier=verifier,
        fee_engine=fee_engine,
        dispatcher=dispatcher,
        clock=clock,
        ttl_seconds=TTL,
    )


def dispatched_events(dispatcher):
    return [c.args[0] for c in dispatcher.dispatch.call_args_list]


@pytest.mark.unit
class TestCreateRequest:
    @pytest.mark.asyncio
    async def test_create_normalizes_and_dispatches(self, service, dispatcher):
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER, "usdc", "eth-sepolia")

        assert request.id.startswith("REQ-")
        assert request.status == "PENDING"
        assert request.network == "sepolia"
        assert request.token == "USDC"
        assert dispatched_events(dispatcher) == ["payment.created"]

    @pytest.mark.asyncio
    async def test_unsupported_network_or_token(self, service):
        with pytest.raises(UnsupportedNetworkError):
            await service.create_request("creator-1", Decimal("1"), RECEIVER, "USDC", "polygon")
        with pytest.raises(UnsupportedTokenError):
            await service.create_request("creator-1", Decimal("1"), RECEIVER, "DOGE", "sepolia")


@pytest.mark.unit
class TestVerifyAndSettle:
    @pytest.mark.asyncio
    async def test_settles_records_fee_and_dispatches(self, service, test_db, dispatcher, verifier):
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)

        outcome = await service.verify_and_settle(
            request.id, TX, payer_party_id="payer-1", payer_wallet=PAYER
        )

        assert outcome.verification.valid is True
        assert outcome.request.status == "PAID"
        assert outcome.request.tx_hash == TX
        assert outcome.request.payer_party_id == "payer-1"

        args = verifier.verify.await_args
        assert args.args[1] == Decimal("10")
        assert args.args[2] == USDC_SEPOLIA
        assert args.kwargs == {"token_symbol": "USDC", "network": "sepolia"}

        entry = await test_db.get_fee_entry_for_request(request.id)
        assert entry.fee_total == Decimal("0.6")
        assert entry.platform_share + entry.creator_reward == entry.fee_total
        assert entry.treasury_wallet == TREASURY
        # No fee transfer submitted yet
        assert entry.status == "PENDING"
        assert entry.platform_fee_tx_hash is None

        assert dispatched_events(dispatcher) == ["payment.created", "payment.paid"]
        paid_call = dispatcher.dispatch.call_args_list[-1]
        assert paid_call.args[1].status == "PAID"
        assert paid_call.args[2].fee_total == Decimal("0.6")

    @pytest.mark.asyncio
    async def test_second_verification_rejected_before_rpc(self, service, verifier):
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        await service.verify_and_settle(request.id, TX)

        with pytest.raises(AlreadySettledError):
            await service.verify_and_settle(request.id, TX)
        assert verifier.verify.await_count == 1

    @pytest.mark.asyncio
    async def test_invalid_transaction_changes_nothing(self, service, test_db, verifier, dispatcher):
        verifier.verify = AsyncMock(
            return_value=VerificationResult(
                valid=False, tx_hash=TX, error=VerificationFailure.MISMATCH, message="Amount or receiver mismatch"
            )
        )
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)

        outcome = await service.verify_and_settle(request.id, TX)

        assert outcome.verification.valid is False
        assert (await test_db.get_payment_request(request.id)).status == "PENDING"
        assert await test_db.get_fee_entry_for_request(request.id) is None
        assert dispatched_events(dispatcher) == ["payment.created"]

    @pytest.mark.asyncio
    async def test_transaction_cannot_pay_two_requests(self, service):
        first = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        second = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        await service.verify_and_settle(first.id, TX)

        with pytest.raises(TransactionAlreadyUsedError):
            await service.verify_and_settle(second.id, TX)

        assert (await service.get_request(second.id)).status == "PENDING"
        await service.verify_and_settle(second.id, OTHER_TX)

    @pytest.mark.asyncio
    async def test_concurrent_verifications_settle_once(self, service, test_db, dispatcher):
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)

        results = await asyncio.gather(
            service.verify_and_settle(request.id, TX),
            service.verify_and_settle(request.id, TX),
            return_exceptions=True,
        )

        settled = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, AlreadySettledError)]
        assert len(settled) == 1
        assert len(rejected) == 1
        assert dispatched_events(dispatcher).count("payment.paid") == 1

    @pytest.mark.asyncio
    async def test_fee_failure_does_not_block_settlement(self, service, fee_engine, test_db):
        fee_engine.compute_fee = AsyncMock(side_effect=UnsupportedNetworkError("sepolia"))
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)

        outcome = await service.verify_and_settle(request.id, TX)

        assert outcome.request.status == "PAID"
        assert outcome.fee is None
        assert await test_db.get_fee_entry_for_request(request.id) is None

    @pytest.mark.asyncio
    async def test_unknown_request(self, service):
        with pytest.raises(NotFoundError):
            await service.verify_and_settle("REQ-MISSING", TX)

    @pytest.mark.asyncio
    async def test_verified_fee_transfer_marks_fee_collected(self, service, test_db, verifier):
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)

        await service.verify_and_settle(request.id, TX, fee_tx_hash=FEE_TX)

        assert verifier.verify.await_count == 2
        fee_check = verifier.verify.await_args
        assert fee_check.args == (FEE_TX, Decimal("0.3"), USDC_SEPOLIA, TREASURY)
        assert fee_check.kwargs == {"token_symbol": "USDC", "network": "sepolia"}

        entry = await test_db.get_fee_entry_for_request(request.id)
        assert entry.status == "COLLECTED"
        assert entry.platform_fee_tx_hash == FEE_TX

    @pytest.mark.asyncio
    async def test_unverified_fee_transfer_leaves_fee_pending(self, service, test_db, verifier):
        def verify(tx_hash, *args, **kwargs):
            if tx_hash == FEE_TX:
                return VerificationResult(
                    valid=False,
                    tx_hash=tx_hash,
                    error=VerificationFailure.MISMATCH,
                    message="Amount or receiver mismatch",
                )
            return valid_result(tx_hash)

        verifier.verify = AsyncMock(side_effect=verify)
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)

        outcome = await service.verify_and_settle(request.id, TX, fee_tx_hash=FEE_TX)

        assert outcome.request.status == "PAID"
        entry = await test_db.get_fee_entry_for_request(request.id)
        assert entry.status == "PENDING"
        assert entry.platform_fee_tx_hash == FEE_TX

    @pytest.mark.asyncio
    async def test_fee_quote_uses_on_chain_sender(self, service, verifier, fee_engine):
        sender = "0x2222222222222222222222222222222222222222"
        verifier.verify = AsyncMock(return_value=valid_result(TX, sender=sender))
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)

        await service.verify_and_settle(request.id, TX, payer_wallet=PAYER)

        fee_engine.compute_fee.assert_awaited_once_with(sender, "sepolia", "USDC")


@pytest.mark.unit
class TestExpireRequest:
    @pytest.mark.asyncio
    async def test_expire_pending(self, service, dispatcher):
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        expired = await service.expire_request(request.id)

        assert expired.status == "EXPIRED"
        assert dispatched_events(dispatcher)[-1] == "payment.expired"

    @pytest.mark.asyncio
    async def test_paid_request_cannot_expire_or_settle_after_expiry(self, service):
        paid = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        await service.verify_and_settle(paid.id, TX)
        with pytest.raises(AlreadySettledError):
            await service.expire_request(paid.id)

        expired = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        await service.expire_request(expired.id)
        with pytest.raises(AlreadySettledError):
            await service.verify_and_settle(expired.id, OTHER_TX)


@pytest.mark.unit
class TestRequestExpiry:
    @pytest.mark.asyncio
    async def test_expiry_follows_ttl_and_is_stored(self, service, test_db):
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        short = await service.create_request("creator-1", Decimal("10"), RECEIVER, expires_in_seconds=60)

        assert request.expires_at == request.created_at + timedelta(seconds=TTL)
        assert short.expires_at == short.created_at + timedelta(seconds=60)
        assert (await test_db.get_payment_request(request.id)).expires_at == request.expires_at

    @pytest.mark.asyncio
    async def test_zero_ttl_never_expires(self, test_db, verifier, fee_engine, dispatcher, clock):
        service = SettlementService(
            database=test_db,
            verifier=verifier,
            fee_engine=fee_engine,
            dispatcher=dispatcher,
            clock=clock,
            ttl_seconds=0,
        )
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        clock.advance(365 * 24 * 3600)

        assert request.expires_at is None
        assert (await service.verify_and_settle(request.id, TX)).request.status == "PAID"

    @pytest.mark.asyncio
    async def test_expired_request_rejected_before_rpc(self, service, verifier, dispatcher, clock):
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        clock.advance(TTL)

        with pytest.raises(RequestExpiredError):
            await service.verify_and_settle(request.id, TX)

        assert verifier.verify.await_count == 0
        assert (await service.get_request(request.id)).status == "EXPIRED"
        assert dispatched_events(dispatcher) == ["payment.created", "payment.expired"]

        # Already marked, so a retry is an ordinary settled-state rejection
        with pytest.raises(AlreadySettledError):
            await service.verify_and_settle(request.id, TX)

    @pytest.mark.asyncio
    async def test_payable_just_before_expiry(self, service, clock):
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        clock.advance(TTL - 1)

        assert (await service.verify_and_settle(request.id, TX)).request.status == "PAID"


@pytest.mark.unit
class TestPaymentInstructions:
    @pytest.mark.asyncio
    async def test_fee_in_payment_token(self, service, fee_engine):
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)

        instructions = await service.payment_instructions(request.id, payer_wallet=PAYER)

        fee_engine.compute_fee.assert_awaited_once_with(PAYER, "sepolia", "USDC")
        assert [(t.description, t.token, t.token_address, t.amount, t.to) for t in instructions.transfers] == [
            ("Payment to creator", "USDC", USDC_SEPOLIA, Decimal("10"), RECEIVER),
            ("Platform fee", "USDC", USDC_SEPOLIA, Decimal("0.3"), TREASURY),
            ("Creator reward", "USDC", USDC_SEPOLIA, Decimal("0.3"), RECEIVER),
        ]
        assert instructions.total_payer_owes == Decimal("10.6")
        assert instructions.request.id == request.id

    @pytest.mark.asyncio
    async def test_fee_in_incentive_token(self, service, fee_engine):
        fee_engine.compute_fee = AsyncMock(
            return_value=FeeQuote(
                network="sepolia",
                payment_token="USDC",
                fee_token="LCX",
                fee_total=Decimal("4"),
                platform_share=Decimal("2"),
                creator_reward=Decimal("2"),
                payer_incentive_balance=Decimal("10"),
                deducted_from_payment=False,
            )
        )
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)

        instructions = await service.payment_instructions(request.id, payer_wallet=PAYER)

        platform, reward = instructions.transfers[1:]
        assert (platform.token, platform.token_address, platform.amount, platform.to) == (
            "LCX", LCX_SEPOLIA, Decimal("2"), TREASURY
        )
        assert (reward.token, reward.amount, reward.to) == ("LCX", Decimal("2"), RECEIVER)
        assert instructions.total_payer_owes is None

    @pytest.mark.asyncio
    async def test_zero_share_is_left_out(self, service, fee_engine):
        fee_engine.compute_fee = AsyncMock(
            return_value=fee_quote().model_copy(
                update={"platform_share": Decimal("0.6"), "creator_reward": Decimal("0")}
            )
        )
        request = await service.create_request("creator-1", Decimal("10"), RECEIVER)

        instructions = await service.payment_instructions(request.id)

        assert [t.description for t in instructions.transfers] == ["Payment to creator", "Platform fee"]

    @pytest.mark.asyncio
    async def test_only_for_payable_requests(self, service, clock):
        paid = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        await service.verify_and_settle(paid.id, TX)
        with pytest.raises(AlreadySettledError):
            await service.payment_instructions(paid.id)

        stale = await service.create_request("creator-1", Decimal("10"), RECEIVER)
        clock.advance(TTL)
        with pytest.raises(RequestExpiredError):
            await service.payment_instructions(stale.id)
