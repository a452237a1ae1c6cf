from sqlalchemy import Column, Integer, String, DateTime, Boolean, Enum, ForeignKey, text
from sqlalchemy.sql import func
import enum

from models import Base


class SubscriptionStatus(str, enum.Enum):
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"


def _enum_values(e):
    return [m.value for m in e]


class Subscription(Base):
    __tablename__ = "subscriptions"

    id = Column(Integer, primary_key=True, index=True)

    external_id = Column(String(255), nullable=False, unique=True)

    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False, index=True)

    customer_id = Column(String(255), nullable=True, index=True)
    customer_name = Column(String(255), nullable=True)

    price_id = Column(String(255), nullable=True)
    amount_cents = Column(Integer, nullable=False, default=0, server_default="0")

    status = Column(
        Enum(SubscriptionStatus, values_callable=_enum_values, name="subscription_status"),
        nullable=False,
        default=SubscriptionStatus.ACTIVE,
    )

    is_trial = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    trial_start = Column(DateTime(timezone=True), nullable=True)
    trial_end = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    canceled_at = Column(DateTime(timezone=True), nullable=True)

    # Write-once-true: mai riportati a False
    has_refund = Column(Boolean, nullable=False, default=False, server_default=text("false"))
    has_dispute = Column(Boolean, nullable=False, default=False, server_default=text("false"))

    last_event_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
