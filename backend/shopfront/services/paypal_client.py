# Overview: PayPal REST v2 client (orders, captures, capture refunds) over httpx.

"""
Hosted-redirect gateway client

WIRE FORMAT:
- Amounts are decimal strings with exactly two fraction digits ("6.36").
- One currency for every call (PAYMENT_CURRENCY, default SGD).
- OAuth2 client-credentials token fetched per operation.

ERRORS: timeouts, transport failures and non-2xx responses raise
ExternalGatewayError carrying the status and body for operator logs.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from flask import current_app

from ..errors import ExternalGatewayError

SUCCESS_STATUSES = ("COMPLETED", "APPROVED")


@dataclass(frozen=True)
class CaptureResult:
    status: str
    order_id: str
    capture_id: str | None
    amount: str | None

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @property
    def captured(self) -> bool:
        """Money has moved: a completed order carrying a capture id."""
        return self.status == "COMPLETED" and bool(self.capture_id)


def _capture_result(data: dict, order_id: str) -> CaptureResult:
    capture = {}
    units = data.get("purchase_units") or []
    if units:
        captures = ((units[0].get("payments") or {}).get("captures")) or []
        if captures:
            capture = captures[0]

    return CaptureResult(
        status=str(data.get("status") or capture.get("status") or "").upper(),
        order_id=data.get("id") or order_id,
        capture_id=capture.get("id"),
        amount=(capture.get("amount") or {}).get("value"),
    )


class PayPalClient:
    def __init__(
        self,
        base_url: str,
        client_id: str | None,
        client_secret: str | None,
        currency: str = "SGD",
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.currency = currency
        self.timeout = timeout
        self.transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport)

    def _send(self, client: httpx.Client, method: str, path: str, operation: str, **kwargs) -> dict:
        try:
            response = client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise ExternalGatewayError(f"PayPal {operation} failed: {exc}") from exc

        if response.is_error:
            raise ExternalGatewayError(
                f"PayPal {operation} failed: {response.status_code} {response.text}",
                details={"status_code": response.status_code},
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ExternalGatewayError(f"PayPal {operation} returned invalid JSON") from exc

    def _access_token(self, client: httpx.Client) -> str:
        if not (self.client_id and self.client_secret and self.base_url):
            raise ExternalGatewayError("PayPal environment variables are not configured.")

        data = self._send(
            client,
            "POST",
            "/v1/oauth2/token",
            "token request",
            auth=(self.client_id, self.client_secret),
            data={"grant_type": "client_credentials"},
        )
        token = data.get("access_token")
        if not token:
            raise ExternalGatewayError("PayPal token response missing access_token")
        return token

    def create_order(self, amount: str) -> dict:
        """Create a CAPTURE intent. Returns the gateway order (id, status, links)."""
        with self._client() as client:
            token = self._access_token(client)
            data = self._send(
                client,
                "POST",
                "/v2/checkout/orders",
                "create order",
                headers={"Authorization": f"Bearer {token}"},
                json={
                    "intent": "CAPTURE",
                    "purchase_units": [{
                        "amount": {"currency_code": self.currency, "value": amount},
                    }],
                },
            )
        if not data.get("id"):
            raise ExternalGatewayError("PayPal create order response missing id")
        return data

    def capture_order(self, order_id: str) -> CaptureResult:
        with self._client() as client:
            token = self._access_token(client)
            data = self._send(
                client,
                "POST",
                f"/v2/checkout/orders/{order_id}/capture",
                "capture order",
                headers={"Authorization": f"Bearer {token}"},
            )
        return _capture_result(data, order_id)

    def get_order(self, order_id: str) -> CaptureResult:
        """Read an order back, e.g. after a capture call whose response was lost."""
        with self._client() as client:
            token = self._access_token(client)
            data = self._send(
                client,
                "GET",
                f"/v2/checkout/orders/{order_id}",
                "order lookup",
                headers={"Authorization": f"Bearer {token}"},
            )
        return _capture_result(data, order_id)

    def refund_capture(self, capture_id: str, amount: str | None = None, request_id: str | None = None) -> dict:
        """
        Refund a capture; amount None refunds the full captured amount.

        request_id is sent as PayPal-Request-Id: a repeat with the same id
        returns the first refund instead of creating another.
        """
        payload = {"amount": {"currency_code": self.currency, "value": amount}} if amount else {}
        headers = {}
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        with self._client() as client:
            token = self._access_token(client)
            headers["Authorization"] = f"Bearer {token}"
            return self._send(
                client,
                "POST",
                f"/v2/payments/captures/{capture_id}/refund",
                "refund",
                headers=headers,
                json=payload,
            )


def get_paypal_client() -> PayPalClient:
    """App-scoped client; tests register one with a mock transport in app.extensions."""
    client = current_app.extensions.get("paypal_client")
    if client is None:
        cfg = current_app.config
        client = PayPalClient(
            base_url=cfg["PAYPAL_API"],
            client_id=cfg["PAYPAL_CLIENT_ID"],
            client_secret=cfg["PAYPAL_CLIENT_SECRET"],
            currency=cfg["PAYMENT_CURRENCY"],
            timeout=cfg["GATEWAY_TIMEOUT_SECONDS"],
        )
        current_app.extensions["paypal_client"] = client
    return client
