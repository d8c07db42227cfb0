"""Affiliate program logic: registration, click tracking, commissions, payouts.

Commission bookkeeping runs inside the payment completion transaction (see
`record_conversion`), everything else owns its own session.
"""

import re
import secrets
import string
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select, update

from cvpay.common.config import settings
from cvpay.common.logging import logger
from cvpay.common.metrics import affiliate_conversions_total
from cvpay.services.affiliates.models import (
    Affiliate,
    AffiliatePayout,
    ReferralClick,
    ReferralConversion,
)


APPROVED = "approved"
AFFILIATE_STATUSES = {"pending", APPROVED, "suspended", "rejected"}
OPEN_PAYOUT_STATUSES = ("pending", "processing")
SETTLED_PAYOUT_STATUSES = {"paid", "rejected"}
_CODE_ALPHABET = string.ascii_lowercase + string.digits


class AffiliateError(Exception):
    """Base for affiliate errors; `status_code` is the HTTP mapping."""

    status_code = 400


class AffiliateNotFound(AffiliateError):
    status_code = 404


class AffiliateNotApproved(AffiliateError):
    status_code = 403


class AffiliateConflict(AffiliateError):
    status_code = 409


class PayoutNotFound(AffiliateError):
    status_code = 404


def commission_for(amount: int, rate: Decimal | float | int) -> int:
    """`amount * rate / 100`, rounded half-up to whole shillings."""

    value = Decimal(amount) * Decimal(str(rate)) / Decimal(100)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def generate_referral_code(full_name: str) -> str:
    clean = re.sub(r"[^a-zA-Z]", "", full_name).lower()[:6]
    suffix = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(4))
    return f"{clean}{suffix}"


def _start_of_month(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class AffiliateService:
    """Owns affiliate accounts and the commission ledger."""

    def __init__(self, session_factory, service_name: str = "affiliates") -> None:
        self.session_factory = session_factory
        self.service_name = service_name

    def _by_user(self, db, user_id: str) -> Affiliate:
        affiliate = db.execute(select(Affiliate).where(Affiliate.user_id == user_id)).scalar_one_or_none()
        if affiliate is None:
            raise AffiliateNotFound("Affiliate account not found")
        return affiliate

    def _approved_by_code(self, db, code: str) -> Affiliate | None:
        return db.execute(
            select(Affiliate).where(Affiliate.referral_code == code, Affiliate.status == APPROVED)
        ).scalar_one_or_none()

    def register(self, user_id: str, full_name: str, email: str, phone: str) -> Affiliate:
        if not user_id:
            raise AffiliateError("Not authenticated")
        if not full_name or not email or not phone:
            raise AffiliateError("Missing required fields")
        with self.session_factory() as db:
            existing = db.execute(select(Affiliate).where(Affiliate.user_id == user_id)).scalar_one_or_none()
            if existing is not None:
                raise AffiliateConflict(f"You already have an affiliate account (status: {existing.status})")
            code = generate_referral_code(full_name)
            while db.execute(select(Affiliate.id).where(Affiliate.referral_code == code)).first() is not None:
                code = generate_referral_code(full_name)
            affiliate = Affiliate(
                user_id=user_id,
                full_name=full_name,
                email=email,
                phone=phone,
                referral_code=code,
                status="pending",
                commission_rate=Decimal(str(settings.default_commission_rate)),
                total_clicks=0,
                total_conversions=0,
                total_earnings=0,
                available_balance=0,
            )
            db.add(affiliate)
            db.commit()
            db.refresh(affiliate)
            logger.info("affiliate registered affiliate_id=%s code=%s", affiliate.id, code)
            return affiliate

    def validate_code(self, code: str | None) -> Affiliate | None:
        if not code:
            return None
        with self.session_factory() as db:
            return self._approved_by_code(db, code)

    def resolve_referral(self, db, code: str | None) -> str | None:
        """Affiliate id for an approved referral code, else None."""

        if not code:
            return None
        affiliate = self._approved_by_code(db, code)
        return affiliate.id if affiliate else None

    def track_click(
        self, code: str | None, ip_address: str = "", user_agent: str = "", landing_page: str | None = None
    ) -> str:
        if not code:
            raise AffiliateError("Missing referral code")
        with self.session_factory() as db:
            affiliate = self._approved_by_code(db, code)
            if affiliate is None:
                raise AffiliateNotFound("Invalid referral code")
            db.add(
                ReferralClick(
                    affiliate_id=affiliate.id,
                    ip_address=ip_address.split(",")[0].strip(),
                    user_agent=user_agent,
                    landing_page=landing_page or "/",
                )
            )
            db.execute(
                update(Affiliate)
                .where(Affiliate.id == affiliate.id)
                .values(total_clicks=Affiliate.total_clicks + 1)
            )
            db.commit()
            return affiliate.id

    def record_conversion(self, db, payment) -> ReferralConversion | None:
        """Credit the payment's affiliate once; caller commits.

        A second call for the same payment returns the existing row untouched.
        """

        if not payment.affiliate_id:
            return None
        existing = db.execute(
            select(ReferralConversion).where(ReferralConversion.payment_id == payment.id)
        ).scalar_one_or_none()
        if existing is not None:
            logger.info("conversion already recorded payment_id=%s", payment.id)
            return existing
        affiliate = db.get(Affiliate, payment.affiliate_id)
        if affiliate is None:
            logger.warning("conversion skipped: unknown affiliate_id=%s", payment.affiliate_id)
            return None
        commission = commission_for(payment.amount, affiliate.commission_rate)
        conversion = ReferralConversion(
            affiliate_id=affiliate.id,
            payment_id=payment.id,
            order_id=payment.order_id,
            payment_amount=payment.amount,
            commission_rate=affiliate.commission_rate,
            commission=commission,
        )
        db.add(conversion)
        db.flush()
        db.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate.id)
            .values(
                total_conversions=Affiliate.total_conversions + 1,
                total_earnings=Affiliate.total_earnings + commission,
                available_balance=Affiliate.available_balance + commission,
            )
        )
        affiliate_conversions_total.labels(service=self.service_name).inc()
        logger.info(
            "conversion recorded affiliate_id=%s order_id=%s commission=%s",
            affiliate.id,
            payment.order_id,
            commission,
        )
        return conversion

    def stats(self, user_id: str) -> dict:
        with self.session_factory() as db:
            affiliate = self._by_user(db, user_id)
            month_start = _start_of_month(datetime.now(timezone.utc))
            conversions = (
                db.execute(
                    select(ReferralConversion)
                    .where(ReferralConversion.affiliate_id == affiliate.id)
                    .order_by(ReferralConversion.created_at.desc())
                    .limit(20)
                )
                .scalars()
                .all()
            )
            payouts = (
                db.execute(
                    select(AffiliatePayout)
                    .where(AffiliatePayout.affiliate_id == affiliate.id)
                    .order_by(AffiliatePayout.created_at.desc())
                    .limit(10)
                )
                .scalars()
                .all()
            )
            monthly_clicks = db.execute(
                select(func.count())
                .select_from(ReferralClick)
                .where(ReferralClick.affiliate_id == affiliate.id, ReferralClick.created_at >= month_start)
            ).scalar_one()
            monthly_conversions = db.execute(
                select(func.count())
                .select_from(ReferralConversion)
                .where(
                    ReferralConversion.affiliate_id == affiliate.id,
                    ReferralConversion.created_at >= month_start,
                )
            ).scalar_one()
            return {
                "affiliate": affiliate,
                "conversions": list(conversions),
                "payouts": list(payouts),
                "monthly_clicks": monthly_clicks or 0,
                "monthly_conversions": monthly_conversions or 0,
            }

    def request_withdrawal(self, user_id: str, amount: int, phone: str) -> AffiliatePayout:
        """Open a payout and hold `amount` from the available balance."""

        if not amount or not phone:
            raise AffiliateError("Missing required fields")
        if amount < settings.min_withdrawal_tzs:
            raise AffiliateError(f"Minimum withdrawal is TZS {settings.min_withdrawal_tzs:,}")
        with self.session_factory() as db:
            affiliate = self._by_user(db, user_id)
            if affiliate.status != APPROVED:
                raise AffiliateNotApproved("Affiliate account is not approved")
            if affiliate.available_balance < amount:
                raise AffiliateError(f"Insufficient balance. Available: TZS {affiliate.available_balance:,}")
            open_payout = db.execute(
                select(AffiliatePayout.id)
                .where(
                    AffiliatePayout.affiliate_id == affiliate.id,
                    AffiliatePayout.status.in_(OPEN_PAYOUT_STATUSES),
                )
                .limit(1)
            ).first()
            if open_payout is not None:
                raise AffiliateConflict("You already have a pending withdrawal request")

            held = db.execute(
                update(Affiliate)
                .where(Affiliate.id == affiliate.id, Affiliate.available_balance >= amount)
                .values(available_balance=Affiliate.available_balance - amount)
            )
            if held.rowcount != 1:
                db.rollback()
                raise AffiliateError("Insufficient balance")
            payout = AffiliatePayout(affiliate_id=affiliate.id, amount=amount, phone=phone, status="pending")
            db.add(payout)
            db.commit()
            db.refresh(payout)
            logger.info("payout requested affiliate_id=%s amount=%s", affiliate.id, amount)
            return payout

    def set_status(self, affiliate_id: str, status: str) -> Affiliate:
        if status not in AFFILIATE_STATUSES:
            raise AffiliateError(f"Unknown affiliate status: {status}")
        with self.session_factory() as db:
            affiliate = db.get(Affiliate, affiliate_id)
            if affiliate is None:
                raise AffiliateNotFound("Affiliate account not found")
            affiliate.status = status
            db.commit()
            db.refresh(affiliate)
            logger.info("affiliate status changed affiliate_id=%s status=%s", affiliate_id, status)
            return affiliate

    def settle_payout(self, payout_id: str, status: str) -> AffiliatePayout:
        """Finalize a payout as `paid`, or `rejected` which releases the hold."""

        if status not in SETTLED_PAYOUT_STATUSES:
            raise AffiliateError(f"Payout can only be settled as one of {sorted(SETTLED_PAYOUT_STATUSES)}")
        with self.session_factory() as db:
            payout = db.get(AffiliatePayout, payout_id)
            if payout is None:
                raise PayoutNotFound("Payout not found")
            moved = db.execute(
                update(AffiliatePayout)
                .where(AffiliatePayout.id == payout_id, AffiliatePayout.status.in_(OPEN_PAYOUT_STATUSES))
                .values(status=status, settled_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            if moved.rowcount != 1:
                raise AffiliateConflict(f"Payout already settled (status: {payout.status})")
            if status == "rejected":
                db.execute(
                    update(Affiliate)
                    .where(Affiliate.id == payout.affiliate_id)
                    .values(available_balance=Affiliate.available_balance + payout.amount)
                )
            db.commit()
            db.refresh(payout)
            logger.info("payout settled payout_id=%s status=%s", payout_id, status)
            return payout
