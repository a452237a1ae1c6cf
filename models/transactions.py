from sqlalchemy import Column, Integer, String, DateTime, Enum, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func
import enum

from models import Base


class TransactionType(str, enum.Enum):
    COMMISSION = "commission"
    REFUND = "refund"
    DISPUTE = "dispute"


def _enum_values(e):
    return [m.value for m in e]


class Transaction(Base):
    """
    Riga del ledger commissioni (importi in centesimi, con segno).
    Creata una volta per (oggetto esterno, tipo), mai modificata.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint("external_id", "type", name="uq_transactions_external_id_type"),
    )

    id = Column(Integer, primary_key=True, index=True)

    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False, index=True)
    subscription_id = Column(Integer, ForeignKey("subscriptions.id"), nullable=True, index=True)

    # Chiave di dedup: invoice id per commission, charge id per refund/dispute
    external_id = Column(String(255), nullable=False)

    invoice_id = Column(String(255), nullable=True, index=True)
    charge_id = Column(String(255), nullable=True, index=True)
    payment_intent_id = Column(String(255), nullable=True, index=True)

    type = Column(
        Enum(TransactionType, values_callable=_enum_values, name="transaction_type"),
        nullable=False,
    )

    amount_gross_cents = Column(Integer, nullable=False)

    # Snapshot alla creazione: non cambia se il tier cambia dopo
    commission_percent = Column(Integer, nullable=False)
    commission_amount_cents = Column(Integer, nullable=False)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    available_at = Column(DateTime(timezone=True), nullable=True, index=True)

    description = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
