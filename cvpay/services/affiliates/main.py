"""HTTP surface for the affiliate program.

User identity comes from the upstream auth proxy via `X-User-Id`; admin
endpoints require the service API key.
"""

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from cvpay.common.config import settings
from cvpay.common.db import SessionLocal
from cvpay.common.logging import configure_logging
from cvpay.common.metrics import metrics_response
from cvpay.common.middleware import add_http_metrics
from cvpay.common.startup import log_startup_config
from cvpay.common.tracing import instrument_app, setup_tracing
from cvpay.services.affiliates.schemas import (
    AffiliateEnvelope,
    AffiliateOut,
    PayoutEnvelope,
    PayoutOut,
    PayoutSettleRequest,
    RegisterRequest,
    StatsResponse,
    StatusUpdateRequest,
    TrackClickRequest,
    TrackClickResponse,
    ValidateCodeResponse,
    WithdrawRequest,
)
from cvpay.services.affiliates.service import AffiliateError, AffiliateService


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def require_user(x_user_id: str | None) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return x_user_id


def create_app(service: AffiliateService) -> FastAPI:
    """Build the affiliate API around an injected service."""

    app = FastAPI(title="CV Chap Chap Affiliates")
    instrument_app(app)
    add_http_metrics(app)

    @app.exception_handler(AffiliateError)
    async def affiliate_error_handler(_: Request, exc: AffiliateError):
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})

    @app.post("/affiliates/register", response_model=AffiliateEnvelope)
    def register(req: RegisterRequest, x_user_id: str | None = Header(default=None)):
        """Open a `pending` affiliate account for the signed-in user."""

        affiliate = service.register(require_user(x_user_id), req.full_name, req.email, req.phone)
        return AffiliateEnvelope(affiliate=AffiliateOut.model_validate(affiliate))

    @app.get("/affiliates/validate-code", response_model=ValidateCodeResponse)
    def validate_code(code: str | None = Query(default=None)):
        affiliate = service.validate_code(code)
        if affiliate is None:
            return ValidateCodeResponse(valid=False)
        return ValidateCodeResponse(valid=True, affiliate_id=affiliate.id, name=affiliate.full_name)

    @app.post("/affiliates/track-click", response_model=TrackClickResponse)
    def track_click(req: TrackClickRequest, request: Request):
        """Record a referral link visit."""

        ip = request.headers.get("x-forwarded-for") or request.headers.get("x-real-ip") or ""
        affiliate_id = service.track_click(
            req.referral_code,
            ip_address=ip,
            user_agent=request.headers.get("user-agent", ""),
            landing_page=req.landing_page,
        )
        return TrackClickResponse(affiliate_id=affiliate_id)

    @app.get("/affiliates/stats", response_model=StatsResponse)
    def stats(x_user_id: str | None = Header(default=None)):
        return StatsResponse.model_validate(service.stats(require_user(x_user_id)), from_attributes=True)

    @app.post("/affiliates/withdraw", response_model=PayoutEnvelope)
    def withdraw(req: WithdrawRequest, x_user_id: str | None = Header(default=None)):
        """Request a payout; the amount is held until an admin settles it."""

        payout = service.request_withdrawal(require_user(x_user_id), req.amount, req.phone)
        return PayoutEnvelope(payout=PayoutOut.model_validate(payout))

    @app.post("/admin/affiliates/{affiliate_id}/status", response_model=AffiliateEnvelope)
    def set_affiliate_status(
        affiliate_id: str, req: StatusUpdateRequest, x_api_key: str | None = Header(default=None)
    ):
        enforce_api_key(x_api_key)
        affiliate = service.set_status(affiliate_id, req.status)
        return AffiliateEnvelope(affiliate=AffiliateOut.model_validate(affiliate))

    @app.post("/admin/payouts/{payout_id}", response_model=PayoutEnvelope)
    def settle_payout(payout_id: str, req: PayoutSettleRequest, x_api_key: str | None = Header(default=None)):
        enforce_api_key(x_api_key)
        payout = service.settle_payout(payout_id, req.status)
        return PayoutEnvelope(payout=PayoutOut.model_validate(payout))

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health check endpoint."""

        return {"ok": True}

    return app


configure_logging()
setup_tracing(settings.service_name)
log_startup_config(settings.service_name, ["SERVICE_NAME", "POSTGRES_DSN", "MIN_WITHDRAWAL_TZS"])
app = create_app(AffiliateService(SessionLocal))
