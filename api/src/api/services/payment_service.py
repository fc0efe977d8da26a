"""Payment ledger helpers."""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime
from typing import Any

from chartsense.models import Payment, PaymentRefund
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.services.billing_errors import ValidationError

logger = logging.getLogger(__name__)

REFUNDABLE_STATUSES = ("succeeded", "partially_refunded")


async def find_payment_by_session(db: AsyncSession, session_id: str) -> Payment | None:
    result = await db.execute(select(Payment).where(Payment.stripe_session_id == session_id))
    return result.scalars().first()


async def find_payment_by_charge(db: AsyncSession, charge_id: str) -> Payment | None:
    result = await db.execute(select(Payment).where(Payment.stripe_charge_id == charge_id))
    return result.scalars().first()


async def find_payment_by_intent(db: AsyncSession, payment_intent_id: str) -> Payment | None:
    result = await db.execute(
        select(Payment).where(Payment.stripe_payment_intent_id == payment_intent_id)
    )
    return result.scalars().first()


async def find_invoice_payment(db: AsyncSession, invoice_id: str, status: str) -> Payment | None:
    result = await db.execute(
        select(Payment).where(Payment.stripe_invoice_id == invoice_id, Payment.status == status)
    )
    return result.scalars().first()


async def record_payment(
    db: AsyncSession,
    *,
    user_id: uuid.UUID,
    amount: int,
    status: str,
    payment_method: str = "stripe",
    subscription_id: uuid.UUID | None = None,
    plan: str | None = None,
    currency: str = "usd",
    stripe_session_id: str | None = None,
    stripe_payment_intent_id: str | None = None,
    stripe_invoice_id: str | None = None,
    stripe_charge_id: str | None = None,
    promo_code_id: uuid.UUID | None = None,
    original_amount: int | None = None,
    discount_amount: int = 0,
    description: str | None = None,
    failure_reason: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> Payment:
    payment = Payment(
        user_id=user_id,
        subscription_id=subscription_id,
        amount=amount,
        currency=currency,
        status=status,
        payment_method=payment_method,
        plan=plan,
        stripe_session_id=stripe_session_id,
        stripe_payment_intent_id=stripe_payment_intent_id,
        stripe_invoice_id=stripe_invoice_id,
        stripe_charge_id=stripe_charge_id,
        promo_code_id=promo_code_id,
        original_amount=original_amount if original_amount is not None else amount,
        discount_amount=discount_amount,
        description=description,
        failure_reason=failure_reason,
        metadata_json=metadata or {},
        processed_at=datetime.now(UTC) if status != "pending" else None,
        refunds=[],
    )
    db.add(payment)
    await db.flush()
    logger.info(
        "Recorded %s payment %s for user %s (%s cents)", status, payment.id, user_id, amount
    )
    return payment


async def add_refund(
    db: AsyncSession,
    payment: Payment,
    *,
    amount: int,
    stripe_refund_id: str | None = None,
    reason: str | None = None,
    refunded_at: datetime | None = None,
) -> PaymentRefund | None:
    """Append a refund and move the payment to (partially_)refunded.

    Returns None when a refund with the same provider id was already recorded.
    """
    if stripe_refund_id and any(r.stripe_refund_id == stripe_refund_id for r in payment.refunds):
        return None
    if amount <= 0:
        raise ValidationError("Refund amount must be positive")
    if payment.status not in REFUNDABLE_STATUSES:
        raise ValidationError(f"Cannot refund a payment in status {payment.status}")
    if payment.refunded_amount + amount > payment.amount:
        raise ValidationError("Refund exceeds the remaining payment amount")

    refund = PaymentRefund(
        payment_id=payment.id,
        stripe_refund_id=stripe_refund_id,
        amount=amount,
        reason=reason,
        refunded_at=refunded_at or datetime.now(UTC),
    )
    payment.refunds.append(refund)
    if payment.refunded_amount >= payment.amount:
        payment.status = "refunded"
    else:
        payment.status = "partially_refunded"
    await db.flush()
    return refund


async def list_user_payments(
    db: AsyncSession,
    user_id: uuid.UUID,
    *,
    limit: int = 50,
) -> list[Payment]:
    result = await db.execute(
        select(Payment)
        .where(Payment.user_id == user_id)
        .order_by(Payment.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


def serialize_payment(payment: Payment) -> dict[str, Any]:
    return {
        "id": str(payment.id),
        "amount": payment.amount,
        "net_amount": payment.net_amount,
        "currency": payment.currency,
        "status": payment.status,
        "payment_method": payment.payment_method,
        "plan": payment.plan,
        "original_amount": payment.original_amount,
        "discount_amount": payment.discount_amount,
        "description": payment.description,
        "failure_reason": payment.failure_reason,
        "refunds": [
            {
                "amount": refund.amount,
                "reason": refund.reason,
                "refunded_at": refund.refunded_at.isoformat() if refund.refunded_at else None,
            }
            for refund in payment.refunds
        ],
        "processed_at": payment.processed_at.isoformat() if payment.processed_at else None,
        "created_at": payment.created_at.isoformat() if payment.created_at else None,
    }
