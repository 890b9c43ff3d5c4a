"""Payment request functionality for the PayAgent SDK."""

import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Optional, Union

from .types import VerificationResponse

if TYPE_CHECKING:
    from .client import PayAgentClient

logger = logging.getLogger(__name__)


class PaymentsClient:
    """Creates, inspects, expires and verifies payment requests."""

    def __init__(self, client: "PayAgentClient"):
        self.client = client

    async def create(
        self,
        amount: Union[str, Decimal],
        receiver: str,
        token: str = "USDC",
        network: str = "sepolia",
        description: Optional[str] = None,
        expires_in_seconds: Optional[int] = None,
    ) -> dict[str, Any]:
        payload = {
            "amount": str(amount),
            "receiver": receiver,
            "token": token,
            "network": network,
            "description": description,
            "expires_in_seconds": expires_in_seconds,
        }
        data = await self.client.call("POST", "/api/requests", payload=payload)
        return data["request"]

    async def get(self, request_id: str) -> dict[str, Any]:
        data = await self.client.call("GET", f"/api/requests/{request_id}", signed=False)
        return data["request"]

    async def instructions(self, request_id: str, payer_wallet: Optional[str] = None) -> dict[str, Any]:
        """Transfers to broadcast for a request, with the fee quote for ``payer_wallet``."""
        params = {"wallet": payer_wallet} if payer_wallet else None
        return await self.client.call(
            "GET", f"/api/requests/{request_id}/instructions", params=params, signed=False
        )

    async def expire(self, request_id: str) -> dict[str, Any]:
        data = await self.client.call("POST", f"/api/requests/{request_id}/expire")
        return data["request"]

    async def verify(
        self,
        request_id: str,
        tx_hash: str,
        payer_wallet: Optional[str] = None,
        fee_tx_hash: Optional[str] = None,
        creator_reward_tx_hash: Optional[str] = None,
    ) -> VerificationResponse:
        """Submit a transaction hash for a payment request.

        Signed when the client has credentials, so the payer is recorded.

        Returns:
            VerificationResponse. A failed verification is not an exception;
            ``success`` is False and ``reason`` says why.
        """
        payload = {
            "request_id": request_id,
            "tx_hash": tx_hash,
            "payer_wallet": payer_wallet,
            "fee_tx_hash": fee_tx_hash,
            "creator_reward_tx_hash": creator_reward_tx_hash,
        }
        signed = bool(self.client.api_key_id and self.client.api_secret)
        response = await self.client.send("POST", "/api/verify", payload=payload, signed=signed)

        if response.status_code == 200:
            return VerificationResponse(**response.json())

        try:
            detail = response.json().get("detail")
        except ValueError:
            detail = response.text

        logger.warning(f"Verification of {request_id} failed: {response.status_code} - {detail}")
        if isinstance(detail, dict):
            return VerificationResponse(
                success=False,
                error=detail.get("error"),
                reason=detail.get("reason"),
                details=detail.get("details"),
            )
        return VerificationResponse(success=False, error=str(detail))
