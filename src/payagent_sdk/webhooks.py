"""Webhook subscription functionality for the PayAgent SDK."""

from typing import TYPE_CHECKING, Any, Optional

from .types import RegisteredWebhook

if TYPE_CHECKING:
    from .client import PayAgentClient


class WebhooksClient:
    """Manages the caller's webhook subscriptions."""

    def __init__(self, client: "PayAgentClient"):
        self.client = client

    async def list_all(self) -> list[dict[str, Any]]:
        data = await self.client.call("GET", "/api/webhooks")
        return data["webhooks"]

    async def register(self, url: str, events: Optional[list[str]] = None) -> RegisteredWebhook:
        """Register an endpoint. Store the returned secret: it is not shown again."""
        payload: dict[str, Any] = {"url": url}
        if events is not None:
            payload["events"] = events
        data = await self.client.call("POST", "/api/webhooks", payload=payload)
        return RegisteredWebhook(**data)

    async def update(
        self,
        webhook_id: str,
        url: Optional[str] = None,
        events: Optional[list[str]] = None,
        active: Optional[bool] = None,
    ) -> dict[str, Any]:
        payload = {
            key: value
            for key, value in {"url": url, "events": events, "active": active}.items()
            if value is not None
        }
        data = await self.client.call("PATCH", f"/api/webhooks/{webhook_id}", payload=payload)
        return data["webhook"]

    async def delete(self, webhook_id: str) -> None:
        await self.client.call("DELETE", f"/api/webhooks/{webhook_id}")

    async def send_test(self, webhook_id: str) -> int:
        data = await self.client.call("POST", f"/api/webhooks/{webhook_id}/test")
        return data["response_status"]
