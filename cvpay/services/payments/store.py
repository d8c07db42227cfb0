"""Payment record store.

Plain functions over a caller-owned session so the reconciliation service can
group a status change and its side effects in one transaction. Status writes
are compare-and-set updates: the row only moves if its current status is a
legal source for the target, so concurrent webhook and poll handlers cannot
both win the same transition.
"""

import re
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm.attributes import set_committed_value

from cvpay.common.state_machine import (
    COMPLETED,
    CV_TRANSITIONS,
    PAYMENT_TRANSITIONS,
    PENDING,
    TERMINAL_PAYMENT_STATES,
    sources_for,
    validate_transition,
)
from cvpay.services.payments.models import CV, Payment, PaymentTimeline


ORDER_CV_PATTERN = re.compile(
    r"^CV-([0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})-", re.IGNORECASE
)


def cv_id_from_order_id(order_id: str) -> str | None:
    """Recover the CV id embedded in a `CV-{uuid}-{suffix}` order id."""

    match = ORDER_CV_PATTERN.match(order_id or "")
    return match.group(1).lower() if match else None


def create_payment(
    db,
    order_id: str,
    cv_id: str | None,
    amount: int,
    currency: str,
    msisdn: str | None = None,
    affiliate_id: str | None = None,
) -> Payment:
    """Insert a `pending` payment; the unique `order_id` rejects duplicates."""

    payment = Payment(
        order_id=order_id,
        cv_id=cv_id,
        amount=amount,
        currency=currency,
        msisdn=msisdn,
        affiliate_id=affiliate_id,
        status=PENDING,
        state_version=0,
    )
    db.add(payment)
    db.flush()
    db.add(PaymentTimeline(payment_id=payment.id, from_state=None, to_state=PENDING, reason="payment_created"))
    return payment


def get_payment(db, order_id: str) -> Payment | None:
    return db.execute(select(Payment).where(Payment.order_id == order_id)).scalar_one_or_none()


def transition_payment(db, payment: Payment, new_status: str, reason: str, **fields: Any) -> bool:
    """Move `payment` to `new_status` if nobody else moved it first.

    Returns False when the row is no longer in a legal source state, which
    means a concurrent handler already applied a transition.
    """

    validate_transition(payment.status, new_status, PAYMENT_TRANSITIONS)
    from_status = payment.status
    now = datetime.now(timezone.utc)
    values: dict[str, Any] = {
        "status": new_status,
        "state_version": Payment.state_version + 1,
        "updated_at": now,
        **fields,
    }
    if new_status == COMPLETED:
        values.setdefault("completed_at", now)

    result = db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status.in_(sources_for(new_status, PAYMENT_TRANSITIONS)))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return False

    # Mirror the row onto the loaded object without scheduling a second UPDATE.
    set_committed_value(payment, "status", new_status)
    set_committed_value(payment, "state_version", (payment.state_version or 0) + 1)
    set_committed_value(payment, "updated_at", now)
    for key, value in fields.items():
        set_committed_value(payment, key, value)
    if "completed_at" in values:
        set_committed_value(payment, "completed_at", values["completed_at"])
    db.add(PaymentTimeline(payment_id=payment.id, from_state=from_status, to_state=new_status, reason=reason))
    return True


def get_cv(db, cv_id: str) -> CV | None:
    return db.get(CV, cv_id)


def advance_cv(db, cv_id: str, new_status: str) -> bool:
    """Compare-and-set a CV status along `CV_TRANSITIONS`; False if not moved."""

    sources = sources_for(new_status, CV_TRANSITIONS)
    result = db.execute(
        update(CV)
        .where(CV.id == cv_id, CV.status.in_(sources))
        .values(status=new_status, updated_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def stale_payments(db, cutoff: datetime, limit: int = 100) -> list[Payment]:
    """Non-terminal payments created before `cutoff`, oldest first."""

    return list(
        db.execute(
            select(Payment)
            .where(Payment.status.not_in(sorted(TERMINAL_PAYMENT_STATES)), Payment.created_at < cutoff)
            .order_by(Payment.created_at)
            .limit(limit)
        ).scalars()
    )
