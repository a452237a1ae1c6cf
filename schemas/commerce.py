# schemas/commerce.py
"""
Eventi commerce ASTRATTI consumati dal LedgerBuilder.

Ogni pipeline (webhook, sync schedulata, resync, backfill) traduce gli
oggetti della piattaforma di pagamento in questi eventi e li passa allo
stesso LedgerBuilder.apply(). Importi in centesimi.
"""

from datetime import datetime
from typing import Dict, Literal, Optional, Union

from pydantic import BaseModel, Field


class CustomerObserved(BaseModel):
    kind: Literal["customer"] = "customer"
    customer_id: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    name: Optional[str] = None
    email: Optional[str] = None


class SubscriptionObserved(BaseModel):
    kind: Literal["subscription"] = "subscription"
    subscription_id: str
    customer_id: str
    status: str
    metadata: Dict[str, str] = Field(default_factory=dict)
    customer_name: Optional[str] = None
    price_id: Optional[str] = None
    amount_cents: int = 0
    trial_start: Optional[datetime] = None
    trial_end: Optional[datetime] = None
    started_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    canceled_at: Optional[datetime] = None


class SubscriptionStatusChanged(BaseModel):
    kind: Literal["subscription_status"] = "subscription_status"
    subscription_id: str
    status: str
    at: Optional[datetime] = None


class InvoicePaid(BaseModel):
    kind: Literal["invoice_paid"] = "invoice_paid"
    invoice_id: str
    customer_id: str
    amount_paid: int
    paid_at: datetime
    subscription_id: Optional[str] = None
    charge_id: Optional[str] = None
    payment_intent_id: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)
    description: Optional[str] = None


class ChargeRefunded(BaseModel):
    kind: Literal["refund"] = "refund"
    charge_id: str
    amount: int
    refunded_at: datetime
    payment_intent_id: Optional[str] = None


class DisputeOpened(BaseModel):
    kind: Literal["dispute"] = "dispute"
    dispute_id: str
    charge_id: str
    amount: int
    opened_at: datetime
    payment_intent_id: Optional[str] = None


CommerceEvent = Union[
    CustomerObserved,
    SubscriptionObserved,
    SubscriptionStatusChanged,
    InvoicePaid,
    ChargeRefunded,
    DisputeOpened,
]
