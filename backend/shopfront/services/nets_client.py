# Overview: NETS QR sandbox client (code request and status query) over httpx.

"""
QR gateway client

Request:  POST /api/v1/common/payments/nets-qr/request
          {txn_id, amt_in_dollars, notify_mobile}
Query:    POST /api/v1/common/payments/nets-qr/query
          {txn_retrieval_ref, frontend_timeout_status}
Both answer with result.data carrying response_code, txn_status and, for
requests, qr_code (base64 PNG) and txn_retrieval_ref.

Auth headers: api-key, project-id.
"""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from flask import current_app

from ..errors import ExternalGatewayError


@dataclass(frozen=True)
class QrCode:
    qr_code: str
    retrieval_ref: str
    response_code: str
    txn_status: int | None
    network_status: int | None = None


class NetsClient:
    REQUEST_PATH = "/api/v1/common/payments/nets-qr/request"
    QUERY_PATH = "/api/v1/common/payments/nets-qr/query"

    def __init__(
        self,
        base_url: str,
        api_key: str | None,
        project_id: str | None,
        txn_id: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.project_id = project_id
        self.txn_id = txn_id
        self.timeout = timeout
        self.transport = transport

    def _post(self, path: str, payload: dict, operation: str) -> dict:
        headers = {
            "api-key": self.api_key or "",
            "project-id": self.project_id or "",
        }
        try:
            with httpx.Client(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
                response = client.post(path, json=payload, headers=headers)
        except httpx.HTTPError as exc:
            raise ExternalGatewayError(f"NETS {operation} failed: {exc}") from exc

        if response.is_error:
            raise ExternalGatewayError(
                f"NETS {operation} failed: {response.status_code} {response.text}",
                details={"status_code": response.status_code},
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ExternalGatewayError(f"NETS {operation} returned invalid JSON") from exc

        data = ((body or {}).get("result") or {}).get("data")
        if not isinstance(data, dict):
            raise ExternalGatewayError(f"NETS {operation} response missing result.data")
        return data

    def request_code(self, amount: str) -> QrCode:
        """
        Ask the gateway for a QR code for amount ("6.36").

        Raises ExternalGatewayError unless the gateway returned a usable code.
        """
        data = self._post(
            self.REQUEST_PATH,
            {"txn_id": self.txn_id, "amt_in_dollars": amount, "notify_mobile": 0},
            "QR request",
        )
        code = QrCode(
            qr_code=data.get("qr_code") or "",
            retrieval_ref=data.get("txn_retrieval_ref") or "",
            response_code=str(data.get("response_code") or ""),
            txn_status=_as_int(data.get("txn_status")),
            network_status=_as_int(data.get("network_status")),
        )
        if code.response_code != "00" or not code.qr_code or not code.retrieval_ref:
            message = data.get("error_message") or "Unable to generate NETS QR code."
            raise ExternalGatewayError(
                f"NETS QR request rejected: {message} (response_code={code.response_code or 'N.A.'})",
                details={"response_code": code.response_code},
            )
        return code

    def query_status(self, retrieval_ref: str) -> dict:
        """Pull fallback for the push webhook. Returns result.data as sent."""
        return self._post(
            self.QUERY_PATH,
            {"txn_retrieval_ref": retrieval_ref, "frontend_timeout_status": 0},
            "status query",
        )


def _as_int(value) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def get_nets_client() -> NetsClient:
    """App-scoped client; tests register one with a mock transport in app.extensions."""
    client = current_app.extensions.get("nets_client")
    if client is None:
        cfg = current_app.config
        client = NetsClient(
            base_url=cfg["NETS_API"],
            api_key=cfg["NETS_API_KEY"],
            project_id=cfg["NETS_PROJECT_ID"],
            txn_id=cfg["NETS_TXN_ID"],
            timeout=cfg["GATEWAY_TIMEOUT_SECONDS"],
        )
        current_app.extensions["nets_client"] = client
    return client
