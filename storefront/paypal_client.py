"""
Helper for talking to PayPal's Orders v2 REST API.

Every call first exchanges the client credentials for an OAuth2 access token.
"""
import logging
from typing import Any, Dict, Optional

import requests
from fastapi import Depends, HTTPException, status

from .config import Settings, get_settings
from .pricing import Number, round_money

logger = logging.getLogger(__name__)


class PayPalClient:
    def __init__(self, client_id: str, client_secret: str, api_url: str, timeout: int = 10) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def get_access_token(self) -> str:
        try:
            resp = requests.post(
                f"{self.api_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"PayPal is unavailable: {str(e)}",
            )

        data = _json_or_empty(resp)
        if not resp.ok or not data.get("access_token"):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=data.get("error_description") or "Error getting PayPal access token",
            )
        return data["access_token"]

    def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
        error_message: str = "PayPal request failed",
    ) -> Dict[str, Any]:
        token = self.get_access_token()
        all_headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {token}",
        }
        all_headers.update(headers or {})

        try:
            resp = requests.request(
                method,
                f"{self.api_url}{path}",
                json=json,
                headers=all_headers,
                timeout=self.timeout,
            )
        except requests.exceptions.RequestException as e:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail=f"PayPal is unavailable: {str(e)}",
            )

        data = _json_or_empty(resp)
        if not resp.ok:
            logger.warning("PayPal %s %s failed (%s): %s", method, path, resp.status_code, resp.text)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=data.get("message") or error_message,
            )
        return data

    def create_order(
        self,
        *,
        amount: Number,
        currency: str = "USD",
        reference_id: str,
        return_url: str,
        cancel_url: str,
    ) -> Dict[str, Any]:
        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": reference_id,
                    "amount": {
                        "currency_code": currency.upper(),
                        "value": f"{round_money(amount):.2f}",
                    },
                }
            ],
            "application_context": {
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        }
        # PayPal-Request-Id makes retries of the same order idempotent
        return self._request(
            "POST",
            "/v2/checkout/orders",
            json=body,
            headers={"PayPal-Request-Id": reference_id},
            error_message="Error creating PayPal order",
        )

    def get_order(self, order_id: str) -> Dict[str, Any]:
        return self._request(
            "GET", f"/v2/checkout/orders/{order_id}", error_message="Error retrieving PayPal order"
        )

    def capture_order(self, order_id: str) -> Dict[str, Any]:
        return self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            error_message="Error capturing PayPal payment",
        )

    def get_capture(self, capture_id: str) -> Dict[str, Any]:
        return self._request(
            "GET", f"/v2/payments/captures/{capture_id}", error_message="Error retrieving PayPal capture"
        )


def _json_or_empty(resp: requests.Response) -> Dict[str, Any]:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def approval_url(order: Dict[str, Any]) -> Optional[str]:
    for link in order.get("links") or []:
        if link.get("rel") == "approve":
            return link.get("href")
    return None


def first_capture(order: Dict[str, Any]) -> Dict[str, Any]:
    units = order.get("purchase_units") or [{}]
    captures = ((units[0].get("payments") or {}).get("captures")) or []
    if not captures:
        raise HTTPException(status_code=400, detail="PayPal returned no capture for this order")
    return captures[0]


def get_paypal_client(settings: Settings = Depends(get_settings)) -> PayPalClient:
    if not settings.paypal_configured:
        raise HTTPException(
            status_code=500,
            detail="PayPal is not configured. Set PAYPAL_CLIENT_ID and PAYPAL_CLIENT_SECRET.",
        )
    return PayPalClient(
        settings.paypal_client_id,
        settings.paypal_client_secret,
        settings.paypal_api_url,
    )
