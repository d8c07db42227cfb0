"""Typed views of Selcom checkout API responses.

Gateway replies are loosely shaped JSON; these models pin down the parts the
payment service acts on so callers branch on types instead of string codes.
"""

import base64
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from cvpay.common.state_machine import Outcome


# Push acknowledgement codes: request queued on the handset, money not moved yet.
PUSH_ACCEPTED_CODES = frozenset({"000", "111"})
# Callback code for a settled payment.
SUCCESS_RESULT_CODE = "000"


class GatewayPaymentStatus(str, Enum):
    PENDING = "PENDING"
    INPROGRESS = "INPROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    USERCANCELLED = "USERCANCELLED"
    REJECTED = "REJECTED"

    @property
    def outcome(self) -> Outcome | None:
        """Financial outcome implied by this status, or None while in flight."""

        if self is GatewayPaymentStatus.COMPLETED:
            return Outcome.SUCCESS
        if self in (
            GatewayPaymentStatus.CANCELLED,
            GatewayPaymentStatus.USERCANCELLED,
            GatewayPaymentStatus.REJECTED,
        ):
            return Outcome.FAILURE
        return None


STATUS_MESSAGES: dict[GatewayPaymentStatus, str] = {
    GatewayPaymentStatus.PENDING: "Waiting for payment...",
    GatewayPaymentStatus.INPROGRESS: "Processing payment...",
    GatewayPaymentStatus.COMPLETED: "Payment successful!",
    GatewayPaymentStatus.CANCELLED: "Payment was cancelled.",
    GatewayPaymentStatus.USERCANCELLED: "Payment was cancelled.",
    GatewayPaymentStatus.REJECTED: "Payment was rejected.",
}


def status_message(status: GatewayPaymentStatus | None) -> str:
    if status is None:
        return "Checking payment status..."
    return STATUS_MESSAGES.get(status, "Checking payment status...")


class PushAccepted(BaseModel):
    """Gateway queued the USSD prompt; outcome arrives later."""

    kind: Literal["accepted"] = "accepted"
    resultcode: str
    reference: str | None = None
    message: str | None = None


class PushRejected(BaseModel):
    """Gateway refused to prompt the payer; the payment itself is untouched."""

    kind: Literal["rejected"] = "rejected"
    resultcode: str
    reference: str | None = None
    message: str | None = None


PushResult = Annotated[Union[PushAccepted, PushRejected], Field(discriminator="kind")]
_push_adapter: TypeAdapter[PushAccepted | PushRejected] = TypeAdapter(PushResult)


def parse_push_response(payload: dict[str, Any]) -> PushAccepted | PushRejected:
    resultcode = str(payload.get("resultcode", ""))
    kind = "accepted" if resultcode in PUSH_ACCEPTED_CODES else "rejected"
    return _push_adapter.validate_python(
        {
            "kind": kind,
            "resultcode": resultcode,
            "reference": payload.get("reference"),
            "message": payload.get("message"),
        }
    )


class OrderCreated(BaseModel):
    """Result of `create-order-minimal`."""

    resultcode: str
    reference: str | None = None
    message: str | None = None
    payment_token: str | None = None
    payment_gateway_url: str | None = None

    @property
    def ok(self) -> bool:
        return self.resultcode == SUCCESS_RESULT_CODE

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "OrderCreated":
        data = payload.get("data") or [{}]
        first = data[0] if isinstance(data, list) and data else {}
        url = first.get("payment_gateway_url")
        if url:
            # Gateway returns the hosted checkout URL base64-encoded.
            url = base64.b64decode(url).decode("utf-8")
        return cls(
            resultcode=str(payload.get("resultcode", "")),
            reference=payload.get("reference"),
            message=payload.get("message"),
            payment_token=first.get("payment_token"),
            payment_gateway_url=url,
        )


class OrderStatus(BaseModel):
    """First `data` row of an `order-status` response."""

    model_config = ConfigDict(extra="ignore")

    order_id: str | None = None
    payment_status: GatewayPaymentStatus
    transid: str | None = None
    reference: str | None = None
    channel: str | None = None
    amount: str | None = None
    creation_date: str | None = None

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "OrderStatus | None":
        data = payload.get("data") or []
        if not data:
            return None
        return cls.model_validate(data[0])


class SelcomWebhookPayload(BaseModel):
    """Asynchronous payment result pushed by the gateway."""

    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    result: str | None = None
    resultcode: str
    order_id: str = Field(min_length=1)
    transid: str | None = None
    reference: str | None = None
    channel: str | None = None
    msisdn: str | None = None
    amount: str | None = None
    utilityref: str | None = None
    message: str | None = None

    @property
    def outcome(self) -> Outcome:
        return Outcome.SUCCESS if self.resultcode == SUCCESS_RESULT_CODE else Outcome.FAILURE
