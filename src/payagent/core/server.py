"""PayAgent API service.

FastAPI application exposing:
- Chain registry, price and fee quote lookups
- Payment request creation, payment instructions, expiry and on-chain verification
- Webhook subscription management
- API credential rotation

Authenticated routes expect the HMAC headers ``x-api-key-id``,
``x-timestamp`` and ``x-signature`` (see ``payagent.core.signing``).
"""

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse

from payagent.config import config, validate_config_for_service
from payagent.core.chains import get_supported_network_list
from payagent.core.credentials import CredentialManager
from payagent.core.fees import FeeEngine
from payagent.core.prices import PriceOracle, price_oracle
from payagent.core.settlement import SettlementService
from payagent.core.signing import RequestAuthenticator
from payagent.core.webhooks import (
    SubscriptionManager,
    WebhookDispatcher,
    subscription_manager,
    webhook_dispatcher,
)
from payagent.database import Database, db
from payagent.exceptions import (
    AlreadySettledError,
    AuthenticationError,
    ConfigurationError,
    NotFoundError,
    PayAgentError,
    RequestExpiredError,
    RpcError,
    TransactionAlreadyUsedError,
    UnsafeUrlError,
)
from payagent.logging_utils import CorrelationIdContext, get_logger, setup_logging
from payagent.models import (
    AuthCredential,
    CreatePaymentRequestBody,
    VerifyPaymentBody,
    WebhookCreateBody,
    WebhookUpdateBody,
)

logger = get_logger(__name__)

STATUS_BY_ERROR = [
    (AuthenticationError, 401),
    (NotFoundError, 404),
    (AlreadySettledError, 409),
    (RequestExpiredError, 410),
    (TransactionAlreadyUsedError, 409),
    (ConfigurationError, 400),
    (UnsafeUrlError, 400),
    (RpcError, 502),
]


@dataclass
class Services:
    """Collaborators the routes are wired to."""

    database: Database
    oracle: PriceOracle
    fees: FeeEngine
    settlement: SettlementService
    authenticator: RequestAuthenticator
    credentials: CredentialManager
    subscriptions: SubscriptionManager
    dispatcher: WebhookDispatcher


def default_services() -> Services:
    fees = FeeEngine(oracle=price_oracle)
    return Services(
        database=db,
        oracle=price_oracle,
        fees=fees,
        settlement=SettlementService(database=db, fee_engine=fees, dispatcher=webhook_dispatcher),
        authenticator=RequestAuthenticator(database=db),
        credentials=CredentialManager(database=db),
        subscriptions=subscription_manager,
        dispatcher=webhook_dispatcher,
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


async def _authenticate(
    request: Request,
    services: Services,
    key_id: Optional[str],
    timestamp: Optional[str],
    signature: Optional[str],
) -> AuthCredential:
    body = await request.body()
    return await services.authenticator.authenticate(
        key_id, timestamp, signature, request.method, request.url.path, body
    )


async def require_party(
    request: Request,
    services: Services = Depends(get_services),
    x_api_key_id: Optional[str] = Header(None, alias="x-api-key-id"),
    x_timestamp: Optional[str] = Header(None, alias="x-timestamp"),
    x_signature: Optional[str] = Header(None, alias="x-signature"),
) -> AuthCredential:
    """Authenticated caller; any auth failure is a 401."""
    return await _authenticate(request, services, x_api_key_id, x_timestamp, x_signature)


async def optional_party(
    request: Request,
    services: Services = Depends(get_services),
    x_api_key_id: Optional[str] = Header(None, alias="x-api-key-id"),
    x_timestamp: Optional[str] = Header(None, alias="x-timestamp"),
    x_signature: Optional[str] = Header(None, alias="x-signature"),
) -> Optional[AuthCredential]:
    """Caller if credentials were sent. Sent-but-invalid credentials are still a 401."""
    if not (x_api_key_id or x_timestamp or x_signature):
        return None
    return await _authenticate(request, services, x_api_key_id, x_timestamp, x_signature)


def create_app(services: Optional[Services] = None) -> FastAPI:
    """Build the API application.

    Args:
        services: Collaborators to wire in. Defaults to the process-wide instances.
    """
    app = FastAPI(
        title="PayAgent",
        description="Payment verification, fees and webhooks for agent payments",
    )
    app.state.services = services or default_services()

    @app.on_event("startup")
    async def startup():
        """Initialize database on startup."""
        logger.info("Initializing PayAgent service...")
        await app.state.services.database.initialize()
        logger.info("PayAgent service initialized")

    @app.on_event("shutdown")
    async def shutdown():
        """Let in-flight webhook deliveries finish."""
        dispatcher = app.state.services.dispatcher
        if dispatcher.pending:
            logger.info(f"Waiting for {dispatcher.pending} webhook deliveries")
        await dispatcher.drain()

    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next):
        with CorrelationIdContext(request.headers.get("x-correlation-id")) as correlation_id:
            response = await call_next(request)
            response.headers["X-Correlation-Id"] = correlation_id
            return response

    @app.exception_handler(PayAgentError)
    async def payagent_error_handler(request: Request, exc: PayAgentError):
        for error_type, status_code in STATUS_BY_ERROR:
            if isinstance(exc, error_type):
                break
        else:
            status_code = 500

        if status_code >= 500:
            logger.error(f"{request.method} {request.url.path} failed: {exc}", exc_info=exc)
        else:
            logger.info(f"{request.method} {request.url.path} rejected ({status_code}): {exc}")
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "ok", "service": "payagent"}

    @app.get("/api/networks")
    async def list_networks() -> dict:
        return {"networks": get_supported_network_list()}

    @app.get("/api/prices")
    async def get_prices(services: Services = Depends(get_services)) -> dict:
        """Incentive-token and native-asset prices plus cache diagnostics."""
        fee_config = await services.fees.config_provider.get()
        symbols = dict.fromkeys([fee_config.incentive_token, "ETH"])
        prices = {symbol: str(await services.oracle.price_usd(symbol)) for symbol in symbols}
        return {"prices_usd": prices, "cache": services.oracle.cache_info()}

    @app.get("/api/fees/quote")
    async def quote_fee(
        network: str = "sepolia",
        token: str = "USDC",
        wallet: Optional[str] = None,
        services: Services = Depends(get_services),
    ) -> dict:
        quote = await services.fees.compute_fee(wallet, network, token)
        return quote.model_dump(mode="json")

    @app.post("/api/requests", status_code=201)
    async def create_payment_request(
        body: CreatePaymentRequestBody,
        party: AuthCredential = Depends(require_party),
        services: Services = Depends(get_services),
    ) -> dict:
        payment = await services.settlement.create_request(
            party.party_id,
            body.amount,
            body.receiver,
            token=body.token,
            network=body.network,
            description=body.description,
            expires_in_seconds=body.expires_in_seconds,
        )
        return {"request": payment.model_dump(mode="json")}

    @app.get("/api/requests/{request_id}")
    async def get_payment_request(request_id: str, services: Services = Depends(get_services)) -> dict:
        payment = await services.settlement.get_request(request_id)
        return {"request": payment.model_dump(mode="json")}

    @app.get("/api/requests/{request_id}/instructions")
    async def get_payment_instructions(
        request_id: str,
        wallet: Optional[str] = None,
        services: Services = Depends(get_services),
    ) -> dict:
        """Transfers to broadcast for a pending request, with the fee quote for ``wallet``."""
        instructions = await services.settlement.payment_instructions(request_id, payer_wallet=wallet)
        return instructions.model_dump(mode="json")

    @app.post("/api/requests/{request_id}/expire")
    async def expire_payment_request(
        request_id: str,
        party: AuthCredential = Depends(require_party),
        services: Services = Depends(get_services),
    ) -> dict:
        payment = await services.settlement.get_request(request_id)
        if payment.creator_party_id != party.party_id:
            raise NotFoundError(f"Payment request {request_id} not found")
        expired = await services.settlement.expire_request(request_id)
        return {"request": expired.model_dump(mode="json")}

    @app.post("/api/verify")
    async def verify_payment(
        body: VerifyPaymentBody,
        party: Optional[AuthCredential] = Depends(optional_party),
        services: Services = Depends(get_services),
    ) -> dict:
        """Verify a transaction against a payment request and settle it.

        Returns:
            The settled request, verification details and the fee quote.
        """
        logger.info(f"Verification request for {body.request_id}: {body.tx_hash}")

        outcome = await services.settlement.verify_and_settle(
            body.request_id,
            body.tx_hash,
            payer_party_id=party.party_id if party else None,
            payer_wallet=body.payer_wallet,
            fee_tx_hash=body.fee_tx_hash,
            creator_reward_tx_hash=body.creator_reward_tx_hash,
        )

        if not outcome.verification.valid:
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "Payment verification failed",
                    "reason": outcome.verification.error.value,
                    "message": outcome.verification.message,
                    "details": outcome.verification.details,
                },
            )

        return {
            "success": True,
            "request": outcome.request.model_dump(mode="json"),
            "verification": outcome.verification.model_dump(mode="json"),
            "fee": outcome.fee.model_dump(mode="json") if outcome.fee else None,
        }

    @app.get("/api/webhooks")
    async def list_webhooks(
        party: AuthCredential = Depends(require_party),
        services: Services = Depends(get_services),
    ) -> dict:
        subscriptions = await services.subscriptions.list_for_owner(party.party_id)
        return {"webhooks": [s.public_view() for s in subscriptions]}

    @app.post("/api/webhooks", status_code=201)
    async def register_webhook(
        body: WebhookCreateBody,
        party: AuthCredential = Depends(require_party),
        services: Services = Depends(get_services),
    ) -> dict:
        subscription, secret = await services.subscriptions.register(
            party.party_id, body.url, body.events
        )
        # The raw secret is only ever returned here
        return {"webhook": subscription.public_view(), "secret": secret}

    @app.patch("/api/webhooks/{webhook_id}")
    async def update_webhook(
        webhook_id: str,
        body: WebhookUpdateBody,
        party: AuthCredential = Depends(require_party),
        services: Services = Depends(get_services),
    ) -> dict:
        subscription = await services.subscriptions.update(
            party.party_id, webhook_id, url=body.url, events=body.events, active=body.active
        )
        return {"webhook": subscription.public_view()}

    @app.delete("/api/webhooks/{webhook_id}")
    async def delete_webhook(
        webhook_id: str,
        party: AuthCredential = Depends(require_party),
        services: Services = Depends(get_services),
    ) -> dict:
        await services.subscriptions.delete(party.party_id, webhook_id)
        return {"success": True}

    @app.post("/api/webhooks/{webhook_id}/test")
    async def test_webhook(
        webhook_id: str,
        party: AuthCredential = Depends(require_party),
        services: Services = Depends(get_services),
    ) -> dict:
        subscription = await services.subscriptions.get(party.party_id, webhook_id)
        try:
            status_code = await services.dispatcher.send_test_event(subscription)
        except httpx.HTTPError as e:
            logger.warning(f"Test delivery to {webhook_id} failed: {e}")
            raise HTTPException(status_code=502, detail=f"Test delivery failed: {e}")
        return {"success": True, "response_status": status_code}

    @app.post("/api/credentials/rotate")
    async def rotate_credentials(
        party: AuthCredential = Depends(require_party),
        services: Services = Depends(get_services),
    ) -> dict:
        issued = await services.credentials.rotate(party.party_id)
        return {
            "credential": issued.model_dump(mode="json"),
            "previous_key_valid_for_seconds": services.credentials.grace_seconds,
        }

    return app


app = create_app()


def main() -> None:
    import uvicorn

    validate_config_for_service("api")
    setup_logging(config.log_level, config.log_format)

    logger.info(f"Starting PayAgent service on {config.host}:{config.port}")
    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )


if __name__ == "__main__":
    main()
