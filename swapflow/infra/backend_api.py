"""
Async HTTP client for the backend of record.

Covers session document CRUD (keyed by order id) and the synchronous
registration calls (customer register, subscription purchase, manual
payment confirmation, vehicle assignment). Credentials are passed in explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from swapflow.core.errors import SwapflowError


class BackendApiError(SwapflowError):
    """Non-2xx response from the backend."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: Any = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class BackendUnavailableError(BackendApiError):
    """Network failure talking to the backend."""
    pass


@dataclass(frozen=True)
class Credentials:
    """Explicit auth context for one operator."""
    token: Optional[str] = None
    api_key: Optional[str] = None

    def headers(self) -> Dict[str, str]:
        out: Dict[str, str] = {}
        if self.token:
            out["Authorization"] = f"Bearer {self.token}"
        if self.api_key:
            out["X-API-KEY"] = self.api_key
        return out


class BackendApi:
    def __init__(
        self,
        base_url: str,
        credentials: Optional[Credentials] = None,
        timeout: float = 15.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.credentials = credentials or Credentials()
        # If a shared client is passed in, we won't close it in close(); otherwise we own the client.
        if client is not None:
            self.client = client
            self._owns_client = False
        else:
            self.client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout)
            self._owns_client = True

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    # ========== Session documents ==========

    async def create_session(self, subscription_code: str, session_type: str,
                             document: Dict[str, Any]) -> Any:
        """Create an order-backed session. Returns the backend's order id."""
        data = await self._request("POST", "/api/sessions", json={
            "subscription_code": subscription_code,
            "session_type": session_type,
            "session_data": document,
        })
        order_id = data.get("order_id") if isinstance(data, dict) else None
        if order_id is None:
            raise BackendApiError("session creation returned no order_id", body=data)
        return order_id

    async def get_session(self, order_id: Any) -> Optional[Dict[str, Any]]:
        """Fetch the session document for an order. None when the order has none."""
        try:
            data = await self._request("GET", f"/api/orders/{order_id}/session")
        except BackendApiError as e:
            if e.status_code == 404:
                return None
            raise
        session = data.get("session") if isinstance(data, dict) else None
        if not session:
            return None
        return session.get("session_data", session)

    async def put_session(self, order_id: Any, document: Dict[str, Any]) -> Dict[str, Any]:
        """Whole-document replacement. The backend rejects stale versions with 409."""
        return await self._request("PUT", f"/api/orders/{order_id}/session", json={
            "session_data": document,
            "version": document.get("version"),
        })

    async def list_sessions(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = {k: v for k, v in params.items() if v is not None and v != ""}
        return await self._request("GET", "/api/sessions", params=query)

    # ========== Registration ==========

    async def register_customer(self, name: str, email: str, phone: str, *,
                                street: str = "", city: str = "", zip_code: str = "",
                                company_id: Optional[Any] = None) -> Dict[str, Any]:
        """Returns {success, session: {token, user: {id, partner_id}}}."""
        body: Dict[str, Any] = {
            "name": name,
            "email": email,
            "phone": phone,
            "street": street,
            "city": city,
            "zip": zip_code,
        }
        if company_id is not None:
            body["company_id"] = company_id
        return await self._request("POST", "/api/auth/register", json=body)

    async def purchase_subscription(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", "/api/subscription/purchase", json=payload)

    async def confirm_payment(self, subscription_code: str, receipt: str,
                              customer_id: Optional[Any] = None) -> Dict[str, Any]:
        body: Dict[str, Any] = {"subscription_code": subscription_code, "receipt": receipt}
        if customer_id is not None:
            body["customer_id"] = str(customer_id)
        return await self._request("POST", "/api/lipay/manual-confirm", json=body)

    async def assign_vehicle(self, plan_id: str, vehicle_id: str, correlation_id: str) -> Dict[str, Any]:
        """Make the vehicle the plan's current asset. Returns {service_ids, updated_count, signals, metadata}."""
        return await self._request("POST", "/api/asset-assignment/current-asset", json={
            "plan_id": plan_id,
            "current_asset": vehicle_id,
            "correlation_id": correlation_id,
        })

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        headers = {"Content-Type": "application/json", **self.credentials.headers()}
        try:
            resp = await self.client.request(method, path, headers=headers, **kwargs)
        except httpx.TransportError as e:
            raise BackendUnavailableError(f"{method} {path} failed: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = None

        if resp.status_code >= 400:
            message = None
            if isinstance(data, dict):
                inner = data.get("data") if isinstance(data.get("data"), dict) else {}
                message = inner.get("error") or data.get("error") or data.get("message")
            raise BackendApiError(
                message or f"HTTP {resp.status_code}",
                status_code=resp.status_code,
                body=data,
            )

        # unwrap {success, data:{...}} envelopes
        if isinstance(data, dict) and isinstance(data.get("data"), dict) and "session" not in data:
            return data["data"]
        return data
