"""Core PayAgent Client."""

import json
import logging
import time
from typing import Any, Optional

import httpx

from .payments import PaymentsClient
from .types import PayAgentAPIError
from .utils import sign_request
from .webhooks import WebhooksClient

logger = logging.getLogger(__name__)


class PayAgentClient:
    """Main entry point for the PayAgent SDK."""

    def __init__(
        self,
        base_url: str = "http://localhost:4020",
        api_key_id: Optional[str] = None,
        api_secret: Optional[str] = None,
        timeout: float = 30.0,
    ):
        """Initialize PayAgent Client.

        Args:
            base_url: The URL of the PayAgent service.
            api_key_id: Public key id (``pk_live_…``) for signed requests.
            api_secret: Signing secret (``sk_live_…``) for signed requests.
            timeout: HTTP timeout in seconds.
        """
        self.base_url = base_url.rstrip("/")
        self.api_key_id = api_key_id
        self.api_secret = api_secret

        # Initialize async HTTP client
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)

    async def close(self):
        """Close the underlying HTTP client."""
        await self._http.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    def signed_headers(self, method: str, path: str, body: bytes) -> dict[str, str]:
        if not self.api_key_id or not self.api_secret:
            raise ValueError("api_key_id and api_secret are required for authenticated calls")

        timestamp = str(int(time.time()))
        return {
            "x-api-key-id": self.api_key_id,
            "x-timestamp": timestamp,
            "x-signature": sign_request(self.api_secret, timestamp, method, path, body),
        }

    async def send(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
        signed: bool = True,
    ) -> httpx.Response:
        """Send a request, signing it when ``signed`` is set.

        The body is serialized here so the signed bytes are the sent bytes.
        """
        body = json.dumps(payload).encode("utf-8") if payload is not None else b""
        headers = {"Content-Type": "application/json"} if payload is not None else {}
        if signed:
            headers.update(self.signed_headers(method, path, body))

        return await self._http.request(method, path, content=body, params=params, headers=headers)

    async def call(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        """Like ``send`` but returns the JSON body and raises on non-2xx."""
        response = await self.send(method, path, **kwargs)
        if not 200 <= response.status_code < 300:
            try:
                detail = response.json().get("detail")
            except ValueError:
                detail = response.text
            logger.error(f"{method} {path} failed: {response.status_code} - {detail}")
            raise PayAgentAPIError(response.status_code, detail)
        return response.json()

    async def networks(self) -> list[dict[str, Any]]:
        data = await self.call("GET", "/api/networks", signed=False)
        return data["networks"]

    async def quote_fee(
        self, network: str = "sepolia", token: str = "USDC", wallet: Optional[str] = None
    ) -> dict[str, Any]:
        params = {"network": network, "token": token}
        if wallet:
            params["wallet"] = wallet
        return await self.call("GET", "/api/fees/quote", params=params, signed=False)

    async def rotate_credentials(self) -> dict[str, Any]:
        """Rotate this client's credentials and switch to the new ones."""
        data = await self.call("POST", "/api/credentials/rotate")
        credential = data["credential"]
        self.api_key_id = credential["api_key_id"]
        self.api_secret = credential["api_secret"]
        logger.info(f"Rotated API credentials, new key {self.api_key_id}")
        return credential

    @property
    def payments(self) -> PaymentsClient:
        """Access payment request functionality."""
        return PaymentsClient(self)

    @property
    def webhooks(self) -> WebhooksClient:
        """Access webhook subscription functionality."""
        return WebhooksClient(self)
