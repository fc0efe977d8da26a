"""SQLAlchemy ORM models for ChartSense billing and entitlements."""

from chartsense.models.base import Base
from chartsense.models.user import User
from chartsense.models.pending_registration import PendingRegistration
from chartsense.models.promo_code import PromoCode, PromoCodeRedemption
from chartsense.models.subscription import Subscription
from chartsense.models.payment import Payment, PaymentRefund
from chartsense.models.audit_log import AuditLog
from chartsense.models.analytics_event import AnalyticsEvent
from chartsense.models.email_verification import EmailVerificationToken

__all__ = [
    "Base",
    "User",
    "PendingRegistration",
    "PromoCode",
    "PromoCodeRedemption",
    "Subscription",
    "Payment",
    "PaymentRefund",
    "AuditLog",
    "AnalyticsEvent",
    "EmailVerificationToken",
]
