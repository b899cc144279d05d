"""Commerce platform clients: order lookup and fulfillment actions.

Read-only calls (order lookup, customer history) retry connection errors and
timeouts with exponential backoff. Fulfillment calls mutate orders and are
sent exactly once.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

import httpx

from replygate.config import CommerceConfig
from replygate.errors import CollaboratorError

logger = logging.getLogger(__name__)


@dataclass
class OrderInfo:
    order_number: str
    status: str
    total: Decimal
    currency: str = "USD"
    tracking_number: str | None = None
    tracking_url: str | None = None
    carrier: str | None = None
    estimated_delivery: str | None = None
    customer_email: str | None = None
    shipped: bool = False

    @classmethod
    def from_api(cls, order_number: str, data: dict) -> OrderInfo:
        try:
            total = Decimal(str(data.get("total", "0")))
        except InvalidOperation:
            total = Decimal("0")
        status = str(data.get("status") or "processing")
        return cls(
            order_number=str(data.get("number") or order_number),
            status=status,
            total=total,
            currency=data.get("currency") or "USD",
            tracking_number=data.get("tracking_code") or data.get("tracking_number"),
            tracking_url=data.get("tracking_url"),
            carrier=data.get("carrier"),
            estimated_delivery=data.get("estimated_delivery"),
            customer_email=data.get("customer_email"),
            shipped=bool(data.get("shipped", status.lower() in {"shipped", "completed", "delivered"})),
        )


class _HttpClient:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        max_retries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_retries = max(1, max_retries)
        self.transport = transport

    @classmethod
    def from_config(cls, config: CommerceConfig, transport: httpx.BaseTransport | None = None):
        return cls(
            base_url=config.base_url,
            api_key=config.api_key,
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
            transport=transport,
        )

    def _client(self) -> httpx.Client:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.Client(timeout=self.timeout, headers=headers, transport=self.transport)

    def _request(self, method: str, path: str, retry: bool, **kwargs) -> httpx.Response:
        """One request, or up to max_retries for read-only calls.

        Every httpx failure surfaces as CollaboratorError.
        """
        attempts = self.max_retries if retry else 1
        for attempt in range(attempts):
            try:
                with self._client() as client:
                    return client.request(method, f"{self.base_url}{path}", **kwargs)
            except httpx.TransportError as e:
                if attempt < attempts - 1:
                    time.sleep(2 ** attempt)
                    continue
                raise CollaboratorError(f"Commerce API unreachable ({method} {path}): {e}") from e
            except httpx.HTTPError as e:
                raise CollaboratorError(f"Commerce request failed ({method} {path}): {e}") from e
        raise CollaboratorError(f"Commerce request {method} {path} was not attempted")

    @staticmethod
    def _json(resp: httpx.Response) -> dict:
        try:
            return resp.json()
        except ValueError as e:
            raise CollaboratorError(f"Commerce API returned invalid JSON: {e}") from e


class CommerceClient(_HttpClient):
    """Read-only view of the merchant's store."""

    def lookup_order(self, order_id: str, account_id: str) -> OrderInfo | None:
        """Return the order, or None when the store does not know it."""
        resp = self._request("GET", f"/accounts/{account_id}/orders/{order_id}", retry=True)
        if resp.status_code == 404:
            return None
        if resp.status_code >= 400:
            raise CollaboratorError(f"Order lookup failed with HTTP {resp.status_code}")
        return OrderInfo.from_api(order_id, self._json(resp))

    def is_repeat_customer(self, email: str, account_id: str) -> bool:
        resp = self._request(
            "GET", f"/accounts/{account_id}/customers", retry=True, params={"email": email},
        )
        if resp.status_code == 404:
            return False
        if resp.status_code >= 400:
            raise CollaboratorError(f"Customer lookup failed with HTTP {resp.status_code}")
        return int(self._json(resp).get("order_count", 0)) > 1


class FulfillmentClient(_HttpClient):
    """Order-mutating calls used by the cancellation and address-change sagas."""

    def _action(self, method: str, path: str, payload: dict | None = None) -> dict:
        resp = self._request(method, path, retry=False, json=payload or {})
        if resp.status_code >= 400:
            raise CollaboratorError(f"{method} {path} failed with HTTP {resp.status_code}")
        return self._json(resp) if resp.content else {}

    def hold_shipment(self, order_id: str, account_id: str) -> dict:
        return self._action("POST", f"/accounts/{account_id}/orders/{order_id}/hold")

    def release_hold(self, order_id: str, account_id: str) -> dict:
        return self._action("POST", f"/accounts/{account_id}/orders/{order_id}/release")

    def cancel_order(self, order_id: str, account_id: str) -> dict:
        return self._action("POST", f"/accounts/{account_id}/orders/{order_id}/cancel")

    def update_address(self, order_id: str, account_id: str, address: str) -> dict:
        return self._action(
            "PUT", f"/accounts/{account_id}/orders/{order_id}/address", {"address": address},
        )
