"""Response types for the PayAgent SDK."""

from typing import Any, Optional

from pydantic import BaseModel


class PayAgentAPIError(Exception):
    """Non-2xx response from the PayAgent API."""

    def __init__(self, status_code: int, detail: Any):
        self.status_code = status_code
        self.detail = detail
        super().__init__(f"PayAgent API error {status_code}: {detail}")


class VerificationResponse(BaseModel):
    """Outcome of ``PaymentsClient.verify``."""

    success: bool
    request: Optional[dict[str, Any]] = None
    verification: Optional[dict[str, Any]] = None
    fee: Optional[dict[str, Any]] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    details: Optional[dict[str, Any]] = None


class RegisteredWebhook(BaseModel):
    """A new subscription and its signing secret (shown only once)."""

    webhook: dict[str, Any]
    secret: str
