"""Payment reconciliation logic.

Keeps local payment and CV rows consistent with the gateway. Webhook callbacks
(primary) and client status polls (fallback) both end in `apply_outcome`, so
the same compare-and-set transition and the same terminal-state guard apply
no matter which path arrives first or how often the gateway redelivers.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from time import time
from typing import Any
from uuid import uuid4

from cvpay.common.config import settings
from cvpay.common.logging import logger, order_id_ctx
from cvpay.common.metrics import (
    affiliate_conversion_failures_total,
    duplicate_events_skipped_total,
    payment_anomalies_total,
    payment_e2e_seconds,
    payment_failure_total,
    payment_initiations_total,
    payment_success_total,
    push_requests_total,
    signature_rejected_total,
    unknown_orders_total,
    webhooks_received_total,
)
from cvpay.common.state_machine import (
    COMPLETED,
    CV_DOWNLOADED,
    CV_PAID,
    CV_PENDING_PAYMENT,
    FAILED,
    PENDING,
    PROCESSING,
    Outcome,
    is_terminal,
    target_status,
)
from cvpay.services.affiliates.service import AffiliateService
from cvpay.services.gateway.client import GatewayError, InvalidPhoneNumber, normalize_msisdn
from cvpay.services.gateway.schemas import (
    GatewayPaymentStatus,
    PushAccepted,
    PushRejected,
    SelcomWebhookPayload,
    status_message,
)
from cvpay.services.gateway.signing import InvalidSignature, SignatureVerifier
from cvpay.services.payments import store
from cvpay.services.payments.models import CV, Payment
from cvpay.services.payments.schemas import InitiatePaymentRequest, InitiatePaymentResponse


COMPLETED_MESSAGE = "Payment successful! Your CV is ready for download."
FAILED_MESSAGE = "Payment failed. Please try again."
WAITING_MESSAGE = "Waiting for payment confirmation..."


class PaymentError(Exception):
    """Base for errors surfaced to API callers; `status_code` is the HTTP mapping."""

    status_code = 400


class InitiationError(PaymentError):
    """Payment could not be started; no payment state was changed."""


class GatewayUnavailable(PaymentError):
    status_code = 500


class PaymentNotFound(PaymentError):
    status_code = 404


class PaymentAlreadyFinal(PaymentError):
    status_code = 409


class CVNotFound(PaymentError):
    status_code = 404


class CVNotPaid(PaymentError):
    status_code = 402


class PushRejectedError(PaymentError):
    """Gateway refused the push; carries its result code for the client."""

    def __init__(self, result: PushRejected) -> None:
        super().__init__(result.message or "Failed to send payment request")
        self.result = result


class ApplyResult(str, Enum):
    APPLIED = "applied"
    ALREADY_TERMINAL = "already_terminal"
    UNKNOWN_ORDER = "unknown_order"


@dataclass
class OutcomeMeta:
    """Gateway facts attached to one outcome."""

    source: str
    transaction_id: str | None = None
    reference: str | None = None
    raw_callback: dict[str, Any] | None = None
    reason: str | None = None


@dataclass
class PaymentStatusView:
    status: str
    message: str
    cv_id: str | None = None
    transaction_id: str | None = None
    # True only when the gateway answered and has no record of the order.
    unknown_to_gateway: bool = False


class ReconciliationService:
    """Single authority for payment and CV status transitions."""

    def __init__(
        self,
        session_factory,
        gateway,
        affiliates: AffiliateService,
        verifier: SignatureVerifier,
        service_name: str = "payments",
    ) -> None:
        self.session_factory = session_factory
        self.gateway = gateway
        self.affiliates = affiliates
        self.verifier = verifier
        self.service_name = service_name

    # Initiation

    async def initiate(self, req: InitiatePaymentRequest) -> InitiatePaymentResponse:
        """Create the gateway order and a `pending` payment for one CV."""

        try:
            msisdn = normalize_msisdn(req.phone)
        except InvalidPhoneNumber as exc:
            payment_initiations_total.labels(service=self.service_name, result="invalid_phone").inc()
            raise InitiationError(str(exc)) from exc

        with self.session_factory() as db:
            if req.cv_id:
                cv = store.get_cv(db, req.cv_id)
                if cv is None:
                    raise CVNotFound("CV not found")
                if cv.status in (CV_PAID, CV_DOWNLOADED):
                    raise PaymentAlreadyFinal("CV is already paid")
            else:
                cv = CV(
                    id=str(uuid4()),
                    template_id=req.template_id,
                    anonymous_id=req.anonymous_id,
                    data=req.cv_data,
                    status="draft",
                )
                db.add(cv)
            affiliate_id = self.affiliates.resolve_referral(db, req.referral_code)
            db.commit()
            cv_id = cv.id

        order_id = f"CV-{cv_id}-{int(time() * 1000)}"
        order_id_ctx.set(order_id)
        base_url = settings.public_base_url.rstrip("/")
        personal = req.cv_data.get("personalInfo") or {}
        buyer_name = req.name or " ".join(
            part for part in (personal.get("firstName"), personal.get("lastName")) if part
        )
        try:
            order = await self.gateway.create_order(
                order_id=order_id,
                buyer_email=req.email or f"{msisdn}@cvchapchap.co.tz",
                buyer_name=buyer_name or msisdn,
                buyer_phone=msisdn,
                amount=settings.cv_price_tzs,
                webhook_url=f"{base_url}/payments/webhook",
                redirect_url=f"{base_url}/payment/success?order={order_id}",
                cancel_url=f"{base_url}/payment/cancelled?order={order_id}",
                currency=settings.currency,
            )
        except GatewayError as exc:
            payment_initiations_total.labels(service=self.service_name, result="gateway_error").inc()
            logger.error("order creation failed order_id=%s error=%s", order_id, exc)
            raise GatewayUnavailable("Failed to initiate payment") from exc
        if not order.ok:
            payment_initiations_total.labels(service=self.service_name, result="rejected").inc()
            logger.error("order rejected order_id=%s resultcode=%s", order_id, order.resultcode)
            raise InitiationError(order.message or "Failed to create payment order")

        with self.session_factory() as db:
            store.create_payment(
                db,
                order_id=order_id,
                cv_id=cv_id,
                amount=settings.cv_price_tzs,
                currency=settings.currency,
                msisdn=msisdn,
                affiliate_id=affiliate_id,
            )
            store.advance_cv(db, cv_id, CV_PENDING_PAYMENT)
            db.commit()

        payment_initiations_total.labels(service=self.service_name, result="created").inc()
        logger.info("payment initiated order_id=%s cv_id=%s affiliate_id=%s", order_id, cv_id, affiliate_id)
        return InitiatePaymentResponse(
            order_id=order_id,
            cv_id=cv_id,
            payment_token=order.payment_token,
            payment_gateway_url=order.payment_gateway_url,
            msisdn=msisdn,
            amount=settings.cv_price_tzs,
            currency=settings.currency,
        )

    async def push_payment(self, order_id: str, msisdn: str) -> PushAccepted:
        """Prompt the payer's handset; on acceptance the payment is `processing`.

        A rejected push leaves the payment as it was so the user can retry.
        """

        order_id_ctx.set(order_id)
        with self.session_factory() as db:
            payment = store.get_payment(db, order_id)
            if payment is None:
                raise PaymentNotFound("Payment not found")
            if is_terminal(payment.status):
                raise PaymentAlreadyFinal(f"Payment already {payment.status}")

        try:
            result = await self.gateway.push_payment(order_id, msisdn)
        except InvalidPhoneNumber as exc:
            raise InitiationError(str(exc)) from exc
        except GatewayError as exc:
            push_requests_total.labels(service=self.service_name, result="error").inc()
            logger.error("push failed order_id=%s error=%s", order_id, exc)
            raise GatewayUnavailable("Failed to send payment request") from exc

        if isinstance(result, PushRejected):
            push_requests_total.labels(service=self.service_name, result="rejected").inc()
            logger.warning("push rejected order_id=%s resultcode=%s", order_id, result.resultcode)
            raise PushRejectedError(result)

        push_requests_total.labels(service=self.service_name, result="accepted").inc()
        with self.session_factory() as db:
            payment = store.get_payment(db, order_id)
            if payment is not None and payment.status != PROCESSING and not is_terminal(payment.status):
                store.transition_payment(
                    db, payment, PROCESSING, reason="push_accepted", selcom_reference=result.reference
                )
                db.commit()
        logger.info("push accepted order_id=%s reference=%s", order_id, result.reference)
        return result

    # Webhook

    def handle_webhook(
        self,
        body: dict[str, Any],
        timestamp: str | None,
        digest: str | None,
        signed_fields: str | None,
    ) -> ApplyResult:
        """Authenticate a gateway callback, then apply its outcome once.

        Raises `InvalidSignature` before touching storage when the digest is bad.
        """

        try:
            self.verifier.verify(timestamp, digest, signed_fields, body)
        except InvalidSignature:
            signature_rejected_total.labels(service=self.service_name).inc()
            logger.warning("webhook rejected: invalid signature order_id=%s", body.get("order_id"))
            raise

        payload = SelcomWebhookPayload.model_validate(body)
        order_id_ctx.set(payload.order_id)
        outcome = payload.outcome
        webhooks_received_total.labels(service=self.service_name, outcome=outcome.value).inc()
        logger.info(
            "webhook received order_id=%s resultcode=%s transid=%s",
            payload.order_id,
            payload.resultcode,
            payload.transid,
        )
        return self.apply_outcome(
            payload.order_id,
            outcome,
            OutcomeMeta(
                source="webhook",
                transaction_id=payload.transid,
                reference=payload.reference,
                raw_callback=body,
                reason=None if outcome is Outcome.SUCCESS else f"gateway_failure:{payload.resultcode}",
            ),
        )

    # Reconciliation

    def apply_outcome(self, order_id: str, outcome: Outcome, meta: OutcomeMeta) -> ApplyResult:
        """Transition one payment to its terminal state, idempotently."""

        with self.session_factory() as db:
            payment = store.get_payment(db, order_id)
            if payment is None:
                unknown_orders_total.labels(service=self.service_name, source=meta.source).inc()
                logger.warning("outcome for unknown order ignored order_id=%s source=%s", order_id, meta.source)
                return ApplyResult.UNKNOWN_ORDER

            target = target_status(outcome)
            if is_terminal(payment.status):
                self._skip_terminal(payment, target, meta)
                return ApplyResult.ALREADY_TERMINAL

            fields: dict[str, Any] = {}
            if meta.transaction_id:
                fields["transaction_id"] = meta.transaction_id
            if meta.reference:
                fields["selcom_reference"] = meta.reference
            if meta.raw_callback is not None:
                fields["raw_callback"] = meta.raw_callback
            reason = meta.reason or ("gateway_success" if outcome is Outcome.SUCCESS else "gateway_failure")

            if not store.transition_payment(db, payment, target, reason=reason, **fields):
                # Another handler finished this payment between our read and write.
                db.rollback()
                duplicate_events_skipped_total.labels(service=self.service_name, source=meta.source).inc()
                logger.info("outcome lost race, already applied order_id=%s", order_id)
                return ApplyResult.ALREADY_TERMINAL

            if outcome is Outcome.SUCCESS:
                self._unlock_cv(db, payment)
                self._credit_affiliate(db, payment)
            db.commit()

        self._observe_terminal(payment, target, meta.source)
        logger.info("payment %s order_id=%s source=%s", target, order_id, meta.source)
        return ApplyResult.APPLIED

    def _skip_terminal(self, payment: Payment, target: str, meta: OutcomeMeta) -> None:
        if payment.status == target:
            duplicate_events_skipped_total.labels(service=self.service_name, source=meta.source).inc()
            logger.info("duplicate outcome skipped order_id=%s status=%s", payment.order_id, payment.status)
            return
        payment_anomalies_total.labels(
            service=self.service_name, kind=f"{target}_after_{payment.status}"
        ).inc()
        logger.warning(
            "contradictory outcome ignored order_id=%s status=%s late_outcome=%s source=%s transid=%s",
            payment.order_id,
            payment.status,
            target,
            meta.source,
            meta.transaction_id,
        )

    def _unlock_cv(self, db, payment: Payment) -> None:
        cv_id = payment.cv_id or store.cv_id_from_order_id(payment.order_id)
        if not cv_id:
            logger.warning("completed payment has no CV order_id=%s", payment.order_id)
            return
        if not store.advance_cv(db, cv_id, CV_PAID):
            logger.warning("CV not advanced to paid cv_id=%s order_id=%s", cv_id, payment.order_id)

    def _credit_affiliate(self, db, payment: Payment) -> None:
        if not payment.affiliate_id:
            return
        try:
            with db.begin_nested():
                self.affiliates.record_conversion(db, payment)
        except Exception:
            affiliate_conversion_failures_total.labels(service=self.service_name).inc()
            logger.exception(
                "affiliate conversion failed order_id=%s affiliate_id=%s", payment.order_id, payment.affiliate_id
            )

    def _observe_terminal(self, payment: Payment, terminal_state: str, source: str) -> None:
        if terminal_state == COMPLETED:
            payment_success_total.labels(service=self.service_name, source=source).inc()
        else:
            payment_failure_total.labels(service=self.service_name, source=source).inc()
        if payment.created_at is None:
            return
        created_at = payment.created_at
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        elapsed = max(0.0, (datetime.now(timezone.utc) - created_at).total_seconds())
        payment_e2e_seconds.labels(service=self.service_name, terminal_state=terminal_state).observe(elapsed)

    # Polling

    async def query_status(self, order_id: str) -> PaymentStatusView:
        """Local status if terminal, otherwise reconcile against the gateway."""

        order_id_ctx.set(order_id)
        with self.session_factory() as db:
            payment = store.get_payment(db, order_id)
        if payment is None:
            raise PaymentNotFound("Payment not found")
        if is_terminal(payment.status):
            return self._terminal_view(payment)

        try:
            remote = await self.gateway.get_order_status(order_id)
        except GatewayError as exc:
            logger.warning("status poll failed order_id=%s error=%s", order_id, exc)
            return PaymentStatusView(status=payment.status, message=WAITING_MESSAGE)

        if remote is None:
            return PaymentStatusView(status=PENDING, message=status_message(None), unknown_to_gateway=True)

        outcome = remote.payment_status.outcome
        if outcome is None:
            return PaymentStatusView(
                status=remote.payment_status.value.lower(), message=status_message(remote.payment_status)
            )

        self.apply_outcome(
            order_id,
            outcome,
            OutcomeMeta(
                source="poll",
                transaction_id=remote.transid,
                reference=remote.reference,
                reason=None if outcome is Outcome.SUCCESS else f"gateway_failure:{remote.payment_status.value}",
            ),
        )
        with self.session_factory() as db:
            payment = store.get_payment(db, order_id)
        if payment.status == FAILED and remote.payment_status is not GatewayPaymentStatus.COMPLETED:
            return PaymentStatusView(status=FAILED, message=status_message(remote.payment_status))
        return self._terminal_view(payment)

    def _terminal_view(self, payment: Payment) -> PaymentStatusView:
        if payment.status == COMPLETED:
            return PaymentStatusView(
                status=COMPLETED,
                cv_id=payment.cv_id,
                transaction_id=payment.transaction_id,
                message=COMPLETED_MESSAGE,
            )
        return PaymentStatusView(status=payment.status, message=FAILED_MESSAGE)

    async def sweep_stale(self, older_than_minutes: int = 10, limit: int = 100) -> dict[str, int]:
        """Poll stuck payments; expire those the gateway never registered.

        Only an order the gateway answered for with no record, and older than
        the gateway order lifetime, is failed locally. A failed poll or an
        in-flight gateway status leaves the payment for a later sweep.
        """

        now = datetime.now(timezone.utc)
        expire_before = now - timedelta(minutes=settings.order_expiry_minutes)
        with self.session_factory() as db:
            candidates = store.stale_payments(db, now - timedelta(minutes=older_than_minutes), limit=limit)
        counts = {"checked": 0, "completed": 0, "failed": 0, "expired": 0, "unresolved": 0}
        for candidate in candidates:
            counts["checked"] += 1
            view = await self.query_status(candidate.order_id)
            if view.status == COMPLETED:
                counts["completed"] += 1
                continue
            if view.status == FAILED:
                counts["failed"] += 1
                continue
            if not view.unknown_to_gateway:
                counts["unresolved"] += 1
                continue
            created_at = candidate.created_at
            if created_at is not None and created_at.tzinfo is None:
                created_at = created_at.replace(tzinfo=timezone.utc)
            if created_at is not None and created_at < expire_before:
                result = self.apply_outcome(
                    candidate.order_id, Outcome.FAILURE, OutcomeMeta(source="sweep", reason="expired")
                )
                if result is ApplyResult.APPLIED:
                    counts["expired"] += 1
            else:
                counts["unresolved"] += 1
        logger.info("stale payment sweep finished counts=%s", counts)
        return counts

    # CV download gate

    def download_cv(self, cv_id: str) -> CV:
        """Release a paid CV for rendering and mark it downloaded."""

        with self.session_factory() as db:
            cv = store.get_cv(db, cv_id)
            if cv is None:
                raise CVNotFound("CV not found")
            if cv.status not in (CV_PAID, CV_DOWNLOADED):
                raise CVNotPaid("Payment required before download")
            store.advance_cv(db, cv_id, CV_DOWNLOADED)
            db.commit()
            cv.status = CV_DOWNLOADED
            return cv

