"""HTTP surface for payment initiation, gateway callbacks, and status polling."""

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from cvpay.common.config import settings
from cvpay.common.db import SessionLocal
from cvpay.common.logging import configure_logging, logger
from cvpay.common.metrics import metrics_response, rate_limited_total
from cvpay.common.middleware import add_http_metrics
from cvpay.common.ratelimit import RateLimiter, build_rate_limiter
from cvpay.common.startup import log_startup_config
from cvpay.common.tracing import instrument_app, setup_tracing
from cvpay.services.affiliates.service import AffiliateService
from cvpay.services.gateway.client import SelcomClient
from cvpay.services.gateway.signing import InvalidSignature, SignatureVerifier
from cvpay.services.payments.schemas import (
    CVDownloadResponse,
    InitiatePaymentRequest,
    InitiatePaymentResponse,
    PaymentStatusResponse,
    PushUssdRequest,
    PushUssdResponse,
    SweepResponse,
    WebhookAck,
)
from cvpay.services.payments.service import PaymentError, PushRejectedError, ReconciliationService


class RateLimited(PaymentError):
    status_code = 429


def enforce_api_key(x_api_key: str | None) -> None:
    """Reject requests that do not provide the configured API key."""

    if x_api_key != settings.api_key:
        raise HTTPException(status_code=401, detail="invalid API key")


def client_ip(request: Request, trusted_proxy_hops: int | None = None) -> str:
    """Caller address for rate limiting.

    `X-Forwarded-For` is client-controlled except for the entries our own
    proxies appended, so it is only read when `TRUSTED_PROXY_HOPS` is set, and
    then only the hop written by the outermost trusted proxy is used.
    """

    hops = settings.trusted_proxy_hops if trusted_proxy_hops is None else trusted_proxy_hops
    peer = request.client.host if request.client else "unknown"
    if hops <= 0:
        return peer
    forwarded = [part.strip() for part in request.headers.get("x-forwarded-for", "").split(",") if part.strip()]
    if not forwarded:
        return peer
    return forwarded[-min(hops, len(forwarded))]


def create_app(service: ReconciliationService, limiter: RateLimiter) -> FastAPI:
    """Build the payments API around an injected service and limiter."""

    app = FastAPI(title="CV Chap Chap Payments")
    instrument_app(app)
    add_http_metrics(app)

    @app.exception_handler(PaymentError)
    async def payment_error_handler(_: Request, exc: PaymentError):
        if isinstance(exc, PushRejectedError):
            return JSONResponse(
                status_code=exc.status_code,
                content={"success": False, "error": str(exc), "resultcode": exc.result.resultcode},
            )
        return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})

    def enforce_rate_limit(request: Request, route: str) -> None:
        if not limiter.allow(f"{route}:{client_ip(request)}"):
            rate_limited_total.labels(service=settings.service_name, route=route).inc()
            raise RateLimited("Too many requests")

    @app.post(
        "/payments/initiate",
        response_model=InitiatePaymentResponse,
        response_model_by_alias=True,
    )
    async def initiate_payment(req: InitiatePaymentRequest, request: Request):
        """Create a gateway order for a CV and record a `pending` payment."""

        enforce_rate_limit(request, "initiate")
        return await service.initiate(req)

    @app.post("/payments/push-ussd", response_model=PushUssdResponse)
    async def push_ussd(req: PushUssdRequest, request: Request):
        """Send the USSD PIN prompt to the payer's phone."""

        enforce_rate_limit(request, "push-ussd")
        result = await service.push_payment(req.order_id, req.msisdn)
        return PushUssdResponse(reference=result.reference)

    @app.post("/payments/webhook", response_model=WebhookAck)
    async def payment_webhook(
        request: Request,
        timestamp: str | None = Header(default=None),
        digest: str | None = Header(default=None),
        signed_fields: str | None = Header(default=None),
    ):
        """Gateway result callback; the ack confirms receipt, not payment success."""

        try:
            body = await request.json()
        except ValueError:
            return JSONResponse(status_code=400, content={"error": "Invalid JSON body"})
        if not isinstance(body, dict):
            return JSONResponse(status_code=400, content={"error": "Invalid webhook payload"})
        try:
            service.handle_webhook(body, timestamp, digest, signed_fields)
        except InvalidSignature:
            return JSONResponse(status_code=401, content={"error": "Invalid signature"})
        except ValidationError as exc:
            logger.warning("webhook payload rejected: %s", exc)
            return JSONResponse(status_code=400, content={"error": "Invalid webhook payload"})
        except Exception:
            logger.exception("webhook processing error")
            return JSONResponse(status_code=500, content={"error": "Webhook processing failed"})
        return WebhookAck()

    @app.get(
        "/payments/status",
        response_model=PaymentStatusResponse,
        response_model_by_alias=True,
        response_model_exclude_none=True,
    )
    async def payment_status(order_id: str | None = Query(default=None, alias="orderId")):
        """Client polling fallback for when the callback is late or lost."""

        if not order_id:
            return JSONResponse(status_code=400, content={"error": "orderId is required"})
        view = await service.query_status(order_id)
        return PaymentStatusResponse(
            status=view.status,
            cv_id=view.cv_id,
            transaction_id=view.transaction_id,
            message=view.message,
        )

    @app.get("/cvs/{cv_id}/download", response_model=CVDownloadResponse, response_model_by_alias=True)
    def download_cv(cv_id: str):
        """Hand a paid CV to the renderer and mark it downloaded."""

        cv = service.download_cv(cv_id)
        return CVDownloadResponse(cv_id=cv.id, template_id=cv.template_id, status=cv.status, data=cv.data or {})

    @app.post("/internal/payments/sweep", response_model=SweepResponse)
    async def sweep_stale_payments(
        older_than_minutes: int = Query(default=10, ge=0),
        limit: int = Query(default=100, ge=1, le=1000),
        x_api_key: str | None = Header(default=None),
    ):
        """Reconcile payments stuck without a callback."""

        enforce_api_key(x_api_key)
        return SweepResponse(**await service.sweep_stale(older_than_minutes=older_than_minutes, limit=limit))

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
log_startup_config(
    settings.service_name,
    [
        "SERVICE_NAME",
        "POSTGRES_DSN",
        "REDIS_URL",
        "SELCOM_BASE_URL",
        "SELCOM_API_KEY",
        "SELCOM_VENDOR_ID",
        "RATE_LIMIT_BACKEND",
        "RATE_LIMIT_PER_MINUTE",
        "TRUSTED_PROXY_HOPS",
        "PUBLIC_BASE_URL",
    ],
)
service = ReconciliationService(
    SessionLocal,
    gateway=SelcomClient.from_settings(),
    affiliates=AffiliateService(SessionLocal),
    verifier=SignatureVerifier(settings.selcom_api_secret),
)
app = create_app(service, build_rate_limiter())
