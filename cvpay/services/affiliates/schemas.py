"""API request/response schemas for affiliate endpoints."""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class RegisterRequest(BaseModel):
    full_name: str = ""
    email: str = ""
    phone: str = ""


class TrackClickRequest(BaseModel):
    referral_code: str | None = None
    landing_page: str | None = None


class WithdrawRequest(BaseModel):
    amount: int = 0
    phone: str = ""


class StatusUpdateRequest(BaseModel):
    status: str = Field(min_length=1)


class PayoutSettleRequest(BaseModel):
    status: str = Field(min_length=1)


class AffiliateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    full_name: str
    email: str
    phone: str
    referral_code: str
    status: str
    commission_rate: Decimal
    total_clicks: int
    total_conversions: int
    total_earnings: int
    available_balance: int
    created_at: datetime | None = None


class ConversionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    payment_amount: int
    commission_rate: Decimal
    commission: int
    created_at: datetime | None = None


class PayoutOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    amount: int
    phone: str
    status: str
    created_at: datetime | None = None
    settled_at: datetime | None = None


class AffiliateEnvelope(BaseModel):
    affiliate: AffiliateOut


class PayoutEnvelope(BaseModel):
    payout: PayoutOut


class ValidateCodeResponse(BaseModel):
    valid: bool
    affiliate_id: str | None = None
    name: str | None = None


class TrackClickResponse(BaseModel):
    success: bool = True
    affiliate_id: str


class StatsResponse(BaseModel):
    affiliate: AffiliateOut
    conversions: list[ConversionOut]
    payouts: list[PayoutOut]
    monthly_clicks: int
    monthly_conversions: int
