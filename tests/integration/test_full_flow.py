"""End-to-end flow through the HTTP API using the SDK client.

Chain access and webhook receivers are replaced with in-process fakes; the
database, signing, settlement and dispatch code are real.
"""

import json
from decimal import Decimal

import httpx
import pytest

from payagent.core.credentials import CredentialManager
from payagent.core.fees import FeeConfigProvider, FeeEngine
from payagent.core.prices import PriceOracle, TtlCache
from payagent.core.rpc import TRANSFER_TOPIC
from payagent.core.server import Services, create_app
from payagent.core.settlement import SettlementService
from payagent.core.signing import RequestAuthenticator
from payagent.core.verification import TransactionVerifier
from payagent.core.webhooks import SubscriptionManager, WebhookDispatcher
from payagent_sdk.client import PayAgentClient
from payagent_sdk.utils import verify_webhook_signature

USDC = "0x3402d41aa8e34e0df605c12109de2f8f4ff33a87"
RECEIVER = "0xAbCdEf0123456789aBcDeF0123456789AbCdEf01"
PAYER_WALLET = "0x1111111111111111111111111111111111111111"
GOOD_TX = "0x" + "11" * 32
SHORT_TX = "0x" + "22" * 32
FEE_TX = "0x" + "33" * 32
TREASURY = "0x7777777777777777777777777777777777777777"


def usdc_receipt(value, to=RECEIVER):
    return {
        "status": "0x1",
        "blockNumber": "0x2a",
        "logs": [
            {
                "address": USDC,
                "topics": [TRANSFER_TOPIC, "0x" + "0" * 24 + PAYER_WALLET[2:], "0x" + "0" * 24 + to[2:].lower()],
                "data": "0x" + value.to_bytes(32, "big").hex(),
            }
        ],
    }


class FakeChain:
    """Stands in for RpcClient on every network."""

    receipts = {
        GOOD_TX: usdc_receipt(10_000_000),
        SHORT_TX: usdc_receipt(9_999_999),
        FEE_TX: usdc_receipt(300_000, to=TREASURY),
    }

    async def get_transaction_receipt(self, tx_hash):
        return self.receipts.get(tx_hash)

    async def get_transaction(self, tx_hash):
        return None

    async def erc20_balance_of(self, token_address, owner):
        return 0


class WebhookReceiver:
    def __init__(self):
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        return httpx.Response(200)


async def allow_all(url):
    return None


@pytest.fixture
def receiver():
    return WebhookReceiver()


@pytest.fixture
def services(test_db, cipher, receiver, clock):
    chain = FakeChain()
    prices = httpx.MockTransport(lambda request: httpx.Response(200, json={"lcx": {"usd": 0.15}, "ethereum": {"usd": 3000}}))
    oracle = PriceOracle(api_url="https://prices.test", cache=TtlCache(300), http=httpx.AsyncClient(transport=prices))
    fees = FeeEngine(config_provider=FeeConfigProvider(database=test_db), oracle=oracle, rpc_factory=lambda n: chain)
    dispatcher = WebhookDispatcher(
        database=test_db,
        cipher=cipher,
        http=httpx.AsyncClient(transport=httpx.MockTransport(receiver)),
        url_checker=allow_all,
    )
    return Services(
        database=test_db,
        oracle=oracle,
        fees=fees,
        settlement=SettlementService(
            database=test_db,
            verifier=TransactionVerifier(rpc_factory=lambda n: chain),
            fee_engine=fees,
            dispatcher=dispatcher,
            clock=clock,
        ),
        authenticator=RequestAuthenticator(database=test_db, cipher=cipher),
        credentials=CredentialManager(database=test_db, cipher=cipher),
        subscriptions=SubscriptionManager(database=test_db, cipher=cipher, url_checker=allow_all),
        dispatcher=dispatcher,
    )


@pytest.fixture
def app(services):
    return create_app(services)


async def sdk_client(app, services, party_id):
    issued = await services.credentials.issue(party_id)
    client = PayAgentClient(base_url="http://payagent.test", api_key_id=issued.api_key_id, api_secret=issued.api_secret)
    client._http = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://payagent.test")
    return client


@pytest.mark.integration
@pytest.mark.asyncio
async def test_request_verify_and_webhook_flow(app, services, receiver):
    creator = await sdk_client(app, services, "creator-1")
    payer = await sdk_client(app, services, "payer-1")

    registered = await creator.webhooks.register("https://hooks.example.com/payagent")
    request = await creator.payments.create("10", RECEIVER, token="USDC", network="sepolia")
    assert request["status"] == "PENDING"

    result = await payer.payments.verify(request["id"], GOOD_TX, payer_wallet=PAYER_WALLET)

    assert result.success is True
    assert result.request["status"] == "PAID"
    assert result.request["payer_party_id"] == "payer-1"
    assert result.verification["block_number"] == 42
    assert Decimal(result.fee["fee_total"]) == Decimal("0.6")
    assert result.fee["deducted_from_payment"] is True

    replay = await payer.payments.verify(request["id"], GOOD_TX)
    assert replay.success is False
    assert "already PAID" in replay.error

    await services.dispatcher.drain()
    events = [r.headers["X-Event-Type"] for r in receiver.requests]
    assert sorted(events) == ["payment.created", "payment.paid"]
    for delivered in receiver.requests:
        assert verify_webhook_signature(delivered.content, delivered.headers["X-Signature"], registered.secret)
    paid = next(r for r in receiver.requests if r.headers["X-Event-Type"] == "payment.paid")
    assert json.loads(paid.content)["payment"]["tx_hash"] == GOOD_TX

    entry = await services.database.get_fee_entry_for_request(request["id"])
    assert entry.payment_tx_hash == GOOD_TX

    await creator.close()
    await payer.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_short_payment_is_rejected(app, services):
    creator = await sdk_client(app, services, "creator-1")
    request = await creator.payments.create("10", RECEIVER)

    result = await creator.payments.verify(request["id"], SHORT_TX)

    assert result.success is False
    assert result.reason == "amount_or_receiver_mismatch"
    assert (await creator.payments.get(request["id"]))["status"] == "PENDING"
    await creator.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_authentication_is_enforced(app, services):
    creator = await sdk_client(app, services, "creator-1")
    transport = httpx.ASGITransport(app=app)

    async with httpx.AsyncClient(transport=transport, base_url="http://payagent.test") as http:
        unsigned = await http.post("/api/requests", json={"amount": "1", "receiver": RECEIVER})
        assert unsigned.status_code == 401

        body = json.dumps({"amount": "1", "receiver": RECEIVER}).encode()
        headers = creator.signed_headers("POST", "/api/requests", body)
        tampered = await http.post(
            "/api/requests", content=body.replace(b'"1"', b'"100"'), headers=headers
        )
        assert tampered.status_code == 401

        signed = await http.post("/api/requests", content=body, headers=headers)
        assert signed.status_code == 201
        assert signed.headers["X-Correlation-Id"]

    await creator.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_rotation_keeps_old_key_working(app, services):
    client = await sdk_client(app, services, "creator-1")
    old_key, old_secret = client.api_key_id, client.api_secret

    await client.rotate_credentials()
    assert client.api_key_id != old_key
    assert await client.webhooks.list_all() == []

    client.api_key_id, client.api_secret = old_key, old_secret
    assert await client.webhooks.list_all() == []
    await client.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_public_lookups_and_error_mapping(app, services):
    client = await sdk_client(app, services, "creator-1")

    networks = await client.networks()
    assert {n["name"] for n in networks} == {"sepolia", "ethereum", "base"}

    quote = await client.quote_fee(network="base", token="ETH", wallet=PAYER_WALLET)
    assert Decimal(quote["fee_total"]) == Decimal("0.0002")

    response = await client.send("GET", "/api/fees/quote", params={"network": "polygon"}, signed=False)
    assert response.status_code == 400

    response = await client.send("POST", "/api/requests/REQ-NOPE/expire")
    assert response.status_code == 404

    response = await client.send(
        "POST", "/api/webhooks", payload={"url": "https://hooks.example.com", "events": ["payment.refunded"]}
    )
    assert response.status_code == 400
    await client.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_instructions_then_pay_with_fee_transfer(app, services):
    creator = await sdk_client(app, services, "creator-1")
    payer = await sdk_client(app, services, "payer-1")
    request = await creator.payments.create("10", RECEIVER)

    instructions = await payer.payments.instructions(request["id"], payer_wallet=PAYER_WALLET)

    assert instructions["fee"]["deducted_from_payment"] is True
    assert Decimal(instructions["total_payer_owes"]) == Decimal("10.6")
    assert [(t["description"], t["to"], Decimal(t["amount"])) for t in instructions["transfers"]] == [
        ("Payment to creator", RECEIVER, Decimal("10")),
        ("Platform fee", TREASURY, Decimal("0.3")),
        ("Creator reward", RECEIVER, Decimal("0.3")),
    ]

    result = await payer.payments.verify(request["id"], GOOD_TX, fee_tx_hash=FEE_TX)
    assert result.success is True

    entry = await services.database.get_fee_entry_for_request(request["id"])
    assert entry.status == "COLLECTED"
    assert entry.platform_fee_tx_hash == FEE_TX

    await creator.close()
    await payer.close()


@pytest.mark.integration
@pytest.mark.asyncio
async def test_expired_request_cannot_be_paid(app, services, clock):
    creator = await sdk_client(app, services, "creator-1")
    request = await creator.payments.create("10", RECEIVER, expires_in_seconds=60)
    assert request["expires_at"] is not None

    clock.advance(60)
    response = await creator.send(
        "POST", "/api/verify", payload={"request_id": request["id"], "tx_hash": GOOD_TX}, signed=False
    )
    assert response.status_code == 410

    response = await creator.send("GET", f"/api/requests/{request['id']}/instructions", signed=False)
    assert response.status_code == 409
    assert (await creator.payments.get(request["id"]))["status"] == "EXPIRED"
    await creator.close()
