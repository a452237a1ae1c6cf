from sqlalchemy import Column, Integer, String, Date, DateTime, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
import enum

from models import Base


class PayoutStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"


def _enum_values(e):
    return [m.value for m in e]


class MonthlyPayout(Base):
    """
    Totale pagabile per (mese, affiliato).
    Una volta PAID la riga e' immutabile per l'aggregatore.
    """
    __tablename__ = "monthly_payouts"
    __table_args__ = (
        UniqueConstraint("month", "affiliate_id", name="uq_monthly_payouts_month_affiliate"),
    )

    id = Column(Integer, primary_key=True, index=True)

    # Primo giorno del mese (es. 2026-03-01)
    month = Column(Date, nullable=False, index=True)

    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False, index=True)

    total_commission_cents = Column(Integer, nullable=False, default=0)
    total_negative_cents = Column(Integer, nullable=False, default=0)
    total_payable_cents = Column(Integer, nullable=False, default=0)

    status = Column(
        Enum(PayoutStatus, values_callable=_enum_values, name="payout_status"),
        nullable=False,
        default=PayoutStatus.PENDING,
    )

    paid_at = Column(DateTime(timezone=True), nullable=True)
    paid_note = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
