"""Unit tests for webhook subscriptions and delivery."""

import hashlib
import hmac
import json
from datetime import datetime, timezone
from decimal import Decimal

import httpx
import pytest

from payagent.core.webhooks import SubscriptionManager, WebhookDispatcher, encode_payload
from payagent.exceptions import ConfigurationError, NotFoundError, UnsafeUrlError
from payagent.models import EVENT_PAYMENT_PAID, FeeQuote, PaymentRequest
from payagent_sdk.utils import verify_webhook_signature

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


async def allow_all(url):
    return None


async def reject_all(url):
    raise UnsafeUrlError("private address")


@pytest.fixture
def subscriptions(test_db, cipher):
    return SubscriptionManager(database=test_db, cipher=cipher, url_checker=allow_all)


class Recorder:
    """MockTransport handler returning scripted status codes."""

    def __init__(self, *statuses):
        self.statuses = list(statuses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        if isinstance(status, Exception):
            raise status
        return httpx.Response(status)


def make_dispatcher(test_db, cipher, clock, handler, sleeps=None, retry_delays=(30, 300, 1800)):
    async def fake_sleep(seconds):
        if sleeps is not None:
            sleeps.append(seconds)

    return WebhookDispatcher(
        database=test_db,
        cipher=cipher,
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        sleep=fake_sleep,
        retry_delays=list(retry_delays),
        max_failures=5,
        url_checker=allow_all,
        clock=clock,
    )


def payment(**overrides):
    fields = dict(
        id="REQ-1",
        creator_party_id="creator-1",
        payer_party_id="payer-1",
        amount=Decimal("10"),
        token="USDC",
        network="sepolia",
        receiver="0xabc",
        status="PAID",
        tx_hash="0x" + "ab" * 32,
    )
    fields.update(overrides)
    return PaymentRequest(**fields)


@pytest.mark.unit
class TestSubscriptionManager:
    @pytest.mark.asyncio
    async def test_register_returns_secret_once(self, subscriptions, test_db, cipher):
        subscription, secret = await subscriptions.register("creator-1", "https://hooks.example.com/pay")

        assert subscription.id.startswith("wh_") and len(subscription.id) == 27
        assert secret.startswith("whsec_") and len(secret) == 70
        assert subscription.events == ["payment.paid", "payment.created"]
        assert "secret_encrypted" not in subscription.public_view()

        stored = await test_db.get_subscription(subscription.id)
        assert secret not in stored.secret_encrypted
        assert cipher.decrypt(stored.secret_encrypted) == secret

    @pytest.mark.asyncio
    async def test_unsafe_url_rejected(self, test_db, cipher):
        manager = SubscriptionManager(database=test_db, cipher=cipher, url_checker=reject_all)
        with pytest.raises(UnsafeUrlError):
            await manager.register("creator-1", "https://10.0.0.1/hook")
        assert await test_db.list_subscriptions("creator-1") == []

    @pytest.mark.asyncio
    async def test_unknown_event_rejected(self, subscriptions):
        with pytest.raises(ConfigurationError):
            await subscriptions.register("creator-1", "https://hooks.example.com", ["payment.refunded"])

    @pytest.mark.asyncio
    async def test_update_and_delete_are_owner_scoped(self, subscriptions):
        subscription, _ = await subscriptions.register("creator-1", "https://hooks.example.com")

        with pytest.raises(NotFoundError):
            await subscriptions.update("someone-else", subscription.id, active=False)
        with pytest.raises(NotFoundError):
            await subscriptions.delete("someone-else", subscription.id)

        updated = await subscriptions.update(
            "creator-1", subscription.id, events=["payment.expired"], active=False
        )
        assert updated.events == ["payment.expired"]
        assert updated.active is False

        await subscriptions.delete("creator-1", subscription.id)
        assert await subscriptions.list_for_owner("creator-1") == []


@pytest.mark.unit
class TestFailureBookkeeping:
    @pytest.mark.asyncio
    async def test_success_resets_streak(self, subscriptions, test_db):
        subscription, _ = await subscriptions.register("creator-1", "https://hooks.example.com")
        for _ in range(4):
            await test_db.mark_subscription_failure(subscription.id, NOW, 5)
        current = await test_db.mark_subscription_success(subscription.id, NOW)

        assert current.failure_count == 0
        assert current.active is True
        assert current.last_success_at == NOW

    @pytest.mark.asyncio
    async def test_fifth_failure_deactivates(self, subscriptions, test_db):
        subscription, _ = await subscriptions.register("creator-1", "https://hooks.example.com")
        for _ in range(4):
            current = await test_db.mark_subscription_failure(subscription.id, NOW, 5)
            assert current.active is True
        current = await test_db.mark_subscription_failure(subscription.id, NOW, 5)

        assert current.failure_count == 5
        assert current.active is False

    @pytest.mark.asyncio
    async def test_reactivation_resets_streak(self, subscriptions, test_db):
        subscription, _ = await subscriptions.register("creator-1", "https://hooks.example.com")
        for _ in range(5):
            await test_db.mark_subscription_failure(subscription.id, NOW, 5)

        current = await subscriptions.update("creator-1", subscription.id, active=True)
        assert current.active is True
        assert current.failure_count == 0


@pytest.mark.unit
class TestWebhookDispatcher:
    @pytest.mark.asyncio
    async def test_delivery_is_signed(self, subscriptions, test_db, cipher, clock):
        subscription, secret = await subscriptions.register("creator-1", "https://hooks.example.com/a")
        recorder = Recorder(200)
        dispatcher = make_dispatcher(test_db, cipher, clock, recorder)

        fee = FeeQuote(
            network="sepolia",
            payment_token="USDC",
            fee_token="USDC",
            fee_total=Decimal("0.6"),
            platform_share=Decimal("0.3"),
            creator_reward=Decimal("0.3"),
            deducted_from_payment=True,
        )
        dispatcher.dispatch(EVENT_PAYMENT_PAID, payment(), fee)
        await dispatcher.drain()

        assert len(recorder.requests) == 1
        request = recorder.requests[0]
        assert request.headers["X-Event-Type"] == "payment.paid"
        assert request.headers["X-Timestamp"] == str(int(clock.now()))
        assert verify_webhook_signature(request.content, request.headers["X-Signature"], secret)

        body = json.loads(request.content)
        assert body["event"] == "payment.paid"
        assert body["payment"]["id"] == "REQ-1"
        assert body["fee"]["fee_total"] == "0.6"
        assert request.content == encode_payload(body)

        expected = hmac.new(secret.encode(), request.content, hashlib.sha256).hexdigest()
        assert request.headers["X-Signature"] == f"sha256={expected}"

        stored = await test_db.get_subscription(subscription.id)
        assert stored.failure_count == 0
        assert stored.last_success_at is not None

    @pytest.mark.asyncio
    async def test_only_matching_parties_and_events(self, subscriptions, test_db, cipher, clock):
        await subscriptions.register("creator-1", "https://hooks.example.com/creator")
        await subscriptions.register("payer-1", "https://hooks.example.com/payer", ["payment.expired"])
        await subscriptions.register("stranger", "https://hooks.example.com/stranger")
        recorder = Recorder()
        dispatcher = make_dispatcher(test_db, cipher, clock, recorder)

        dispatcher.dispatch(EVENT_PAYMENT_PAID, payment())
        await dispatcher.drain()

        assert [str(r.url) for r in recorder.requests] == ["https://hooks.example.com/creator"]

    @pytest.mark.asyncio
    async def test_retries_with_backoff_until_success(self, subscriptions, test_db, cipher, clock):
        subscription, _ = await subscriptions.register("creator-1", "https://hooks.example.com")
        sleeps = []
        recorder = Recorder(500, httpx.ConnectError("refused"), 200)
        dispatcher = make_dispatcher(test_db, cipher, clock, recorder, sleeps=sleeps)

        dispatcher.dispatch(EVENT_PAYMENT_PAID, payment())
        await dispatcher.drain()

        assert len(recorder.requests) == 3
        assert sleeps == [30, 300]
        stored = await test_db.get_subscription(subscription.id)
        assert stored.failure_count == 0
        assert stored.active is True

    @pytest.mark.asyncio
    async def test_gives_up_after_three_retries(self, subscriptions, test_db, cipher, clock):
        subscription, _ = await subscriptions.register("creator-1", "https://hooks.example.com")
        sleeps = []
        recorder = Recorder(500, 500, 500, 500, 500)
        dispatcher = make_dispatcher(test_db, cipher, clock, recorder, sleeps=sleeps)

        dispatcher.dispatch(EVENT_PAYMENT_PAID, payment())
        await dispatcher.drain()

        assert len(recorder.requests) == 4
        assert sleeps == [30, 300, 1800]
        assert (await test_db.get_subscription(subscription.id)).failure_count == 4

    @pytest.mark.asyncio
    async def test_no_retry_once_deactivated(self, subscriptions, test_db, cipher, clock):
        subscription, _ = await subscriptions.register("creator-1", "https://hooks.example.com")
        for _ in range(3):
            await test_db.mark_subscription_failure(subscription.id, NOW, 5)
        recorder = Recorder(500, 500, 500, 500)
        dispatcher = make_dispatcher(test_db, cipher, clock, recorder)

        dispatcher.dispatch(EVENT_PAYMENT_PAID, payment())
        await dispatcher.drain()

        stored = await test_db.get_subscription(subscription.id)
        assert len(recorder.requests) == 2
        assert stored.failure_count == 5
        assert stored.active is False

    @pytest.mark.asyncio
    async def test_inactive_subscriptions_receive_nothing(self, subscriptions, test_db, cipher, clock):
        subscription, _ = await subscriptions.register("creator-1", "https://hooks.example.com")
        await subscriptions.update("creator-1", subscription.id, active=False)
        recorder = Recorder()
        dispatcher = make_dispatcher(test_db, cipher, clock, recorder)

        dispatcher.dispatch(EVENT_PAYMENT_PAID, payment())
        await dispatcher.drain()

        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_dispatch_without_parties_is_a_no_op(self, test_db, cipher, clock):
        dispatcher = make_dispatcher(test_db, cipher, clock, Recorder())
        assert dispatcher.dispatch(EVENT_PAYMENT_PAID, payment(creator_party_id=None, payer_party_id=None)) is None

    @pytest.mark.asyncio
    async def test_test_event_reports_status_without_bookkeeping(self, subscriptions, test_db, cipher, clock):
        subscription, secret = await subscriptions.register("creator-1", "https://hooks.example.com")
        recorder = Recorder(418)
        dispatcher = make_dispatcher(test_db, cipher, clock, recorder)

        assert await dispatcher.send_test_event(subscription) == 418
        assert recorder.requests[0].headers["X-Event-Type"] == "payment.test"
        assert (await test_db.get_subscription(subscription.id)).failure_count == 0
