"""API request/response schemas for payment endpoints.

Field aliases keep the camelCase wire format the web client already speaks.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InitiatePaymentRequest(_CamelModel):
    """Payload accepted by `POST /payments/initiate`."""

    template_id: str = Field(alias="templateId", min_length=1)
    phone: str = Field(min_length=1)
    email: str | None = None
    name: str | None = None
    anonymous_id: str | None = Field(default=None, alias="anonymousId")
    cv_id: str | None = Field(default=None, alias="cvId")
    cv_data: dict[str, Any] = Field(default_factory=dict, alias="cvData")
    referral_code: str | None = Field(default=None, alias="referralCode")


class InitiatePaymentResponse(_CamelModel):
    success: bool = True
    order_id: str = Field(alias="orderId")
    cv_id: str = Field(alias="cvId")
    payment_token: str | None = Field(default=None, alias="paymentToken")
    payment_gateway_url: str | None = Field(default=None, alias="paymentGatewayUrl")
    msisdn: str
    amount: int
    currency: str


class PushUssdRequest(_CamelModel):
    order_id: str = Field(alias="orderId", min_length=1)
    msisdn: str = Field(min_length=1)


class PushUssdResponse(_CamelModel):
    success: bool = True
    message: str = "Payment request sent to your phone. Please enter your PIN to confirm."
    reference: str | None = None
    status: str = "pending"


class PaymentStatusResponse(_CamelModel):
    """Body of `GET /payments/status`; optional fields omitted when unset."""

    status: str
    cv_id: str | None = Field(default=None, alias="cvId")
    transaction_id: str | None = Field(default=None, alias="transactionId")
    message: str


class WebhookAck(BaseModel):
    """Receipt acknowledgement in the gateway's own response format."""

    result: str = "SUCCESS"
    resultcode: str = "000"
    message: str = "Webhook processed successfully"


class SweepResponse(BaseModel):
    checked: int
    completed: int
    failed: int
    expired: int
    unresolved: int = 0


class CVDownloadResponse(_CamelModel):
    cv_id: str = Field(alias="cvId")
    template_id: str = Field(alias="templateId")
    status: str
    data: dict[str, Any]
