"""Billing ledger client (Autumn-compatible REST API).

The ledger keys customers by our user id, so creating a customer that
already exists answers 409 and is reported as ``ExternalConflict``.
"""

from typing import Any

import httpx
import structlog

from reconciler.core.config import get_settings
from reconciler.core.exceptions import (
    CustomerNotFound,
    ExternalConflict,
    ReconcilerError,
    TransientExternalFailure,
)

logger = structlog.get_logger(__name__)


class LedgerError(ReconcilerError):
    """Non-retryable error returned by the billing ledger."""

    def __init__(self, status: int, message: str, body: dict | None = None):
        self.status = status
        self.body = body or {}
        super().__init__(f"ledger error ({status}): {message}")


class LedgerClient:
    """Async client for the billing ledger API."""

    def __init__(
        self,
        base_url: str | None = None,
        secret_key: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = get_settings()
        self.base_url = (base_url or settings.ledger_api_url).rstrip("/")
        self.secret_key = secret_key if secret_key is not None else settings.ledger_secret_key
        self.timeout = settings.external_timeout_seconds
        self._transport = transport

    async def _request(self, method: str, path: str, body: dict | None = None) -> Any:
        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Content-Type": "application/json",
        }
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.request(method, f"{self.base_url}{path}", headers=headers, json=body)
        except httpx.TransportError as exc:
            logger.warning("ledger_unreachable", method=method, path=path, error=str(exc))
            raise TransientExternalFailure("ledger", f"{method} {path}: {exc}") from exc

        if response.is_success:
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

        try:
            error_body = response.json()
        except ValueError:
            error_body = {}
        message = error_body.get("message") or error_body.get("error") or f"HTTP {response.status_code}"

        if response.status_code >= 500:
            raise TransientExternalFailure("ledger", f"{method} {path}: {message}")
        if response.status_code == 409:
            raise ExternalConflict(message, error_body)
        if response.status_code == 404 or error_body.get("code") == "customer_not_found":
            raise CustomerNotFound(message)
        raise LedgerError(response.status_code, message, error_body)

    # Customers

    async def get_customer(self, external_id: str) -> dict | None:
        try:
            return await self._request("GET", f"/customers/{external_id}")
        except CustomerNotFound:
            return None

    async def create_customer(
        self,
        external_id: str,
        email: str | None,
        name: str | None = None,
    ) -> dict:
        body: dict[str, Any] = {"id": external_id, "metadata": {"user_id": external_id}}
        if email:
            body["email"] = email
        if name:
            body["name"] = name
        return await self._request("POST", "/customers", body)

    # Billing actions

    async def create_portal(self, customer_id: str) -> dict:
        return await self._request("POST", f"/customers/{customer_id}/portal", {})

    async def track_usage(self, customer_id: str, event_name: str, metadata: dict | None = None) -> dict | None:
        body: dict[str, Any] = {"customer_id": customer_id, "event_name": event_name}
        if metadata:
            body["metadata"] = metadata
        return await self._request("POST", "/events", body)

    async def create_checkout(
        self,
        customer_id: str,
        product_id: str,
        success_url: str,
        metadata: dict | None = None,
    ) -> dict:
        body: dict[str, Any] = {
            "customer_id": customer_id,
            "product_id": product_id,
            "success_url": success_url,
        }
        if metadata:
            body["metadata"] = metadata
        return await self._request("POST", "/checkout", body)
