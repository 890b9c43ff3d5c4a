"""Outbound webhooks: subscription management and signed delivery.

Subscribers verify deliveries by computing HMAC-SHA256 over the raw body
with their ``whsec_…`` secret and comparing it to the ``X-Signature``
header (``sha256=<hex>``).

Delivery is fire-and-forget for the caller. Each subscription's failure
streak is tracked in the database; five consecutive failures deactivate it.
"""

import asyncio
import json
import secrets
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

import httpx

from payagent.config import config
from payagent.core.encryption import SecretCipher, secret_cipher
from payagent.core.prices import Clock, SystemClock
from payagent.core.signing import compute_signature
from payagent.core.url_safety import check_url
from payagent.database import Database, db
from payagent.exceptions import ConfigurationError, DecryptionError, NotFoundError, UnsafeUrlError
from payagent.logging_utils import get_logger
from payagent.models import (
    DEFAULT_WEBHOOK_EVENTS,
    EVENT_PAYMENT_TEST,
    SUPPORTED_WEBHOOK_EVENTS,
    FeeQuote,
    PaymentRequest,
    WebhookSubscription,
)

logger = get_logger(__name__)

USER_AGENT = "PayAgent-Webhook/1.0"

UrlChecker = Callable[[str], Awaitable[None]]


def generate_subscription_id() -> str:
    return "wh_" + secrets.token_hex(12)


def generate_webhook_secret() -> str:
    return "whsec_" + secrets.token_hex(32)


def _validate_events(events: list[str]) -> list[str]:
    if not events:
        raise ConfigurationError("At least one event type is required")
    unknown = sorted(set(events) - SUPPORTED_WEBHOOK_EVENTS)
    if unknown:
        raise ConfigurationError(f"Unsupported webhook events: {', '.join(unknown)}")
    # Preserve order, drop duplicates
    return list(dict.fromkeys(events))


class SubscriptionManager:
    """Owner-scoped CRUD for webhook subscriptions."""

    def __init__(
        self,
        database: Optional[Database] = None,
        cipher: Optional[SecretCipher] = None,
        url_checker: UrlChecker = check_url,
    ):
        self.database = database or db
        self.cipher = cipher or secret_cipher
        self.url_checker = url_checker

    async def register(
        self, owner_id: str, url: str, events: Optional[list[str]] = None
    ) -> tuple[WebhookSubscription, str]:
        """Register a webhook endpoint.

        Returns:
            The stored subscription and its raw secret. The secret is not
            retrievable afterwards.

        Raises:
            UnsafeUrlError: URL is not HTTPS or resolves to a non-public address.
            ConfigurationError: Unknown event names.
        """
        events = _validate_events(events if events is not None else list(DEFAULT_WEBHOOK_EVENTS))
        await self.url_checker(url)

        secret = generate_webhook_secret()
        subscription = WebhookSubscription(
            id=generate_subscription_id(),
            owner_id=owner_id,
            url=url,
            events=events,
            secret_encrypted=self.cipher.encrypt(secret),
        )
        await self.database.create_subscription(subscription)
        return subscription, secret

    async def list_for_owner(self, owner_id: str) -> list[WebhookSubscription]:
        return await self.database.list_subscriptions(owner_id)

    async def get(self, owner_id: str, subscription_id: str) -> WebhookSubscription:
        subscription = await self.database.get_subscription(subscription_id)
        if subscription is None or subscription.owner_id != owner_id:
            raise NotFoundError(f"Webhook {subscription_id} not found")
        return subscription

    async def update(
        self,
        owner_id: str,
        subscription_id: str,
        url: Optional[str] = None,
        events: Optional[list[str]] = None,
        active: Optional[bool] = None,
    ) -> WebhookSubscription:
        """Change url, events or active flag. Other fields are not writable."""
        updates: dict[str, Any] = {}
        if url is not None:
            await self.url_checker(url)
            updates["url"] = url
        if events is not None:
            updates["events"] = _validate_events(events)
        if active is not None:
            updates["active"] = active

        subscription = await self.database.update_subscription(subscription_id, owner_id, updates)
        if subscription is None:
            raise NotFoundError(f"Webhook {subscription_id} not found")
        return subscription

    async def delete(self, owner_id: str, subscription_id: str) -> None:
        if not await self.database.delete_subscription(subscription_id, owner_id):
            raise NotFoundError(f"Webhook {subscription_id} not found")


def payment_summary(payment: PaymentRequest) -> dict[str, Any]:
    return {
        "id": payment.id,
        "amount": str(payment.amount),
        "token": payment.token,
        "status": payment.status,
        "receiver": payment.receiver,
        "tx_hash": payment.tx_hash,
        "creator_party_id": payment.creator_party_id,
        "payer_party_id": payment.payer_party_id,
        "network": payment.network,
        "paid_at": payment.paid_at.isoformat() if payment.paid_at else None,
    }


def fee_summary(fee: FeeQuote) -> dict[str, Any]:
    return {
        "fee_token": fee.fee_token,
        "fee_total": str(fee.fee_total),
        "platform_share": str(fee.platform_share),
        "creator_reward": str(fee.creator_reward),
        "deducted_from_payment": fee.deducted_from_payment,
    }


def encode_payload(payload: dict[str, Any]) -> bytes:
    """Canonical JSON: sorted keys, no whitespace. Signed byte-for-byte."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


class WebhookDispatcher:
    """Delivers signed event payloads to subscribed endpoints."""

    def __init__(
        self,
        database: Optional[Database] = None,
        cipher: Optional[SecretCipher] = None,
        http: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        retry_delays: Optional[list[float]] = None,
        timeout: Optional[float] = None,
        max_failures: Optional[int] = None,
        url_checker: UrlChecker = check_url,
        clock: Optional[Clock] = None,
    ):
        """Initialize the dispatcher.

        Args:
            database: Subscription store.
            cipher: Decrypts subscription secrets just before signing.
            http: Optional shared AsyncClient (tests inject a MockTransport here).
            sleep: Awaitable used between retries.
            retry_delays: Seconds to wait before each retry.
            timeout: Per-delivery timeout in seconds.
            max_failures: Consecutive failures that deactivate a subscription.
            url_checker: Re-validates the target before every attempt.
            clock: Source of the delivery timestamp.
        """
        self.database = database or db
        self.cipher = cipher or secret_cipher
        self._http = http
        self.sleep = sleep
        self.retry_delays = list(retry_delays if retry_delays is not None else config.webhook_retry_delays)
        self.timeout = timeout if timeout is not None else config.webhook_timeout_seconds
        self.max_failures = max_failures if max_failures is not None else config.webhook_max_failures
        self.url_checker = url_checker
        self.clock = clock or SystemClock()
        self._tasks: set[asyncio.Task] = set()

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self.clock.now(), tz=timezone.utc)

    def build_payload(
        self, event_type: str, payment: PaymentRequest, fee: Optional[FeeQuote] = None
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "event": event_type,
            "payment": payment_summary(payment),
            "timestamp": self._now().isoformat(),
        }
        if fee is not None:
            payload["fee"] = fee_summary(fee)
        return payload

    def dispatch(
        self, event_type: str, payment: PaymentRequest, fee: Optional[FeeQuote] = None
    ) -> Optional[asyncio.Task]:
        """Schedule delivery of ``event_type`` to the parties of ``payment``.

        Returns without waiting for any delivery. Must be called from a
        running event loop.
        """
        party_ids = [p for p in dict.fromkeys([payment.creator_party_id, payment.payer_party_id]) if p]
        if not party_ids:
            return None

        payload = self.build_payload(event_type, payment, fee)
        return self._spawn(self._fan_out(event_type, party_ids, payload))

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _fan_out(self, event_type: str, party_ids: list[str], payload: dict[str, Any]) -> None:
        try:
            subscriptions = await self.database.get_subscriptions_for_event(party_ids, event_type)
        except Exception as e:
            logger.error(f"Webhook dispatch error for {event_type}: {e}", exc_info=True)
            return

        logger.info(f"Dispatching {event_type} to {len(subscriptions)} webhook(s)")
        for subscription in subscriptions:
            self._spawn(self._deliver_with_retries(subscription, payload))

    async def _deliver_with_retries(self, subscription: WebhookSubscription, payload: dict[str, Any]) -> None:
        attempt = 0
        while True:
            delivered, current = await self.deliver(subscription, payload)
            if delivered or attempt >= len(self.retry_delays):
                return
            if current is None or not current.active:
                logger.warning(f"Webhook {subscription.id} inactive; not retrying")
                return

            delay = self.retry_delays[attempt]
            attempt += 1
            logger.info(f"Retrying webhook {subscription.id} in {delay}s (attempt {attempt + 1})")
            await self.sleep(delay)
            subscription = current

    async def _post(self, url: str, body: bytes, headers: dict[str, str]) -> httpx.Response:
        if self._http is not None:
            return await self._http.post(url, content=body, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, content=body, headers=headers)

    async def _send(self, subscription: WebhookSubscription, payload: dict[str, Any]) -> int:
        await self.url_checker(subscription.url)

        secret = self.cipher.decrypt(subscription.secret_encrypted)
        body = encode_payload(payload)
        signature = compute_signature(secret, body.decode("utf-8"))

        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            "X-Event-Type": payload["event"],
            "X-Timestamp": str(int(self.clock.now())),
            "X-Signature": f"sha256={signature}",
        }
        response = await self._post(subscription.url, body, headers)
        return response.status_code

    async def deliver(
        self, subscription: WebhookSubscription, payload: dict[str, Any]
    ) -> tuple[bool, Optional[WebhookSubscription]]:
        """Make one delivery attempt and record its outcome.

        Returns:
            Whether the endpoint answered 2xx, and the subscription as stored
            after bookkeeping.
        """
        try:
            status = await self._send(subscription, payload)
            error = None if 200 <= status < 300 else f"HTTP {status}"
        except (httpx.HTTPError, UnsafeUrlError, DecryptionError) as e:
            error = f"{type(e).__name__}: {e}"

        if error is None:
            current = await self.database.mark_subscription_success(subscription.id, self._now())
            logger.info(f"Webhook {subscription.id} delivered {payload['event']}")
            return True, current

        current = await self.database.mark_subscription_failure(
            subscription.id, self._now(), self.max_failures
        )
        logger.warning(f"Webhook {subscription.id} delivery failed: {error}")
        if current is not None and not current.active:
            logger.warning(
                f"Webhook {subscription.id} deactivated after {current.failure_count} consecutive failures"
            )
        return False, current

    async def send_test_event(self, subscription: WebhookSubscription) -> int:
        """Send a ``payment.test`` event once and return the HTTP status.

        Test deliveries do not touch the failure streak.
        """
        payment = PaymentRequest(
            id="REQ-TEST",
            amount="1.00",
            token="USDC",
            receiver="0x0000000000000000000000000000000000000000",
            status="PAID",
            creator_party_id=subscription.owner_id,
        )
        return await self._send(subscription, self.build_payload(EVENT_PAYMENT_TEST, payment))

    async def drain(self) -> None:
        """Wait for every scheduled delivery, including ones scheduled meanwhile."""
        while self._tasks:
            results = await asyncio.gather(*list(self._tasks), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Webhook delivery task failed: {result}", exc_info=result)

    @property
    def pending(self) -> int:
        return len(self._tasks)


webhook_dispatcher = WebhookDispatcher()
subscription_manager = SubscriptionManager()
