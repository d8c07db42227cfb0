"""Async client for the Selcom checkout API (orders, USSD push, status poll)."""

import base64
import re
from datetime import datetime, timedelta, timezone
from time import perf_counter, time
from typing import Any

import httpx

from cvpay.common.config import settings
from cvpay.common.logging import logger
from cvpay.common.metrics import gateway_latency_seconds, gateway_requests_total
from cvpay.common.tracing import tracer
from cvpay.services.gateway.schemas import (
    OrderCreated,
    OrderStatus,
    PushAccepted,
    PushRejected,
    parse_push_response,
)
from cvpay.services.gateway.signing import compute_digest


# Gateway expects East Africa Time offsets in the Timestamp header.
EAT = timezone(timedelta(hours=3))
LOCAL_MSISDN = re.compile(r"^0\d{9}$")
INTERNATIONAL_MSISDN = re.compile(r"^255\d{9}$")

ORDER_SIGNED_FIELDS = [
    "vendor",
    "order_id",
    "buyer_email",
    "buyer_name",
    "buyer_phone",
    "amount",
    "currency",
    "webhook",
    "buyer_remarks",
    "merchant_remarks",
    "no_of_items",
]
PUSH_SIGNED_FIELDS = ["transid", "order_id", "msisdn"]
STATUS_SIGNED_FIELDS = ["order_id"]


class GatewayError(Exception):
    """Gateway unreachable, returned an error status, or sent an unreadable body."""


class InvalidPhoneNumber(ValueError):
    pass


def normalize_msisdn(raw: str) -> str:
    """Return `255XXXXXXXXX` for local (`0XXXXXXXXX`) or international input."""

    digits = re.sub(r"\D", "", raw or "")
    if LOCAL_MSISDN.match(digits):
        return f"255{digits[1:]}"
    if INTERNATIONAL_MSISDN.match(digits):
        return digits
    raise InvalidPhoneNumber("Invalid phone number. Use format: 255XXXXXXXXX or 0XXXXXXXXX")


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


class SelcomClient:
    """Signs and sends checkout API calls with an explicit per-call timeout."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        api_secret: str,
        vendor: str,
        timeout_seconds: float = 15.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.api_secret = api_secret
        self.vendor = vendor
        self.timeout_seconds = timeout_seconds
        self.transport = transport

    @classmethod
    def from_settings(cls) -> "SelcomClient":
        return cls(
            base_url=settings.selcom_base_url,
            api_key=settings.selcom_api_key,
            api_secret=settings.selcom_api_secret,
            vendor=settings.selcom_vendor_id,
            timeout_seconds=settings.gateway_timeout_seconds,
        )

    def _headers(self, data: dict[str, Any], signed_fields: list[str]) -> dict[str, str]:
        timestamp = datetime.now(EAT).isoformat(timespec="seconds")
        return {
            "Content-Type": "application/json",
            "Authorization": f"SELCOM {_b64(self.api_key)}",
            "Digest-Method": "HS256",
            "Digest": compute_digest(self.api_secret, timestamp, data, signed_fields),
            "Timestamp": timestamp,
            "Signed-Fields": ",".join(signed_fields),
        }

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        data: dict[str, Any],
        signed_fields: list[str],
    ) -> dict[str, Any]:
        headers = self._headers(data, signed_fields)
        start = perf_counter()
        result = "error"
        try:
            with tracer.start_as_current_span(f"selcom.{operation}"):
                async with httpx.AsyncClient(
                    base_url=self.base_url, timeout=self.timeout_seconds, transport=self.transport
                ) as client:
                    if method == "GET":
                        resp = await client.get(path, params=data, headers=headers)
                    else:
                        resp = await client.post(path, json=data, headers=headers)
            try:
                body = resp.json()
            except ValueError as exc:
                raise GatewayError(f"{operation}: unreadable response ({resp.status_code})") from exc
            if resp.status_code >= 400:
                logger.error("selcom %s error status=%s body=%s", operation, resp.status_code, body)
                message = body.get("message") if isinstance(body, dict) else None
                raise GatewayError(message or f"{operation} failed with HTTP {resp.status_code}")
            if not isinstance(body, dict):
                raise GatewayError(f"{operation}: unexpected response shape")
            result = "ok"
            return body
        except httpx.HTTPError as exc:
            logger.warning("selcom %s transport error: %s", operation, exc)
            raise GatewayError(f"{operation}: {exc}") from exc
        finally:
            gateway_requests_total.labels(operation=operation, result=result).inc()
            gateway_latency_seconds.labels(operation=operation).observe(max(0.0, perf_counter() - start))

    async def create_order(
        self,
        order_id: str,
        buyer_email: str,
        buyer_name: str,
        buyer_phone: str,
        amount: int,
        webhook_url: str,
        redirect_url: str | None = None,
        cancel_url: str | None = None,
        currency: str = "TZS",
    ) -> OrderCreated:
        """Register an order so it can be paid by push or hosted checkout."""

        data: dict[str, Any] = {
            "vendor": self.vendor,
            "order_id": order_id,
            "buyer_email": buyer_email,
            "buyer_name": buyer_name,
            "buyer_phone": buyer_phone,
            "amount": amount,
            "currency": currency,
            "webhook": _b64(webhook_url),
            "buyer_remarks": "CV Download Payment",
            "merchant_remarks": "CV CHAP CHAP",
            "no_of_items": 1,
            "expiry": settings.order_expiry_minutes,
        }
        if redirect_url:
            data["redirect_url"] = _b64(redirect_url)
        if cancel_url:
            data["cancel_url"] = _b64(cancel_url)
        body = await self._request(
            "create_order", "POST", "/v1/checkout/create-order-minimal", data, ORDER_SIGNED_FIELDS
        )
        try:
            return OrderCreated.from_payload(body)
        except ValueError as exc:
            raise GatewayError(f"create_order: malformed response: {exc}") from exc

    async def push_payment(
        self, order_id: str, msisdn: str, now_ms: int | None = None
    ) -> PushAccepted | PushRejected:
        """Ask the gateway to prompt the payer's handset for their PIN."""

        formatted = normalize_msisdn(msisdn)
        trans_id = f"PUSH-{order_id}-{now_ms if now_ms is not None else int(time() * 1000)}"
        data = {"transid": trans_id, "order_id": order_id, "msisdn": formatted}
        body = await self._request("push", "POST", "/v1/checkout/wallet-payment", data, PUSH_SIGNED_FIELDS)
        return parse_push_response(body)

    async def get_order_status(self, order_id: str) -> OrderStatus | None:
        """Poll the gateway's view of one order; None when it has no row yet."""

        body = await self._request(
            "order_status", "GET", "/v1/checkout/order-status", {"order_id": order_id}, STATUS_SIGNED_FIELDS
        )
        try:
            return OrderStatus.from_payload(body)
        except ValueError as exc:
            raise GatewayError(f"order_status: malformed response: {exc}") from exc
