# schemas/payouts.py

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from models.monthly_payouts import PayoutStatus


class PayoutOut(BaseModel):
    id: int
    month: date
    affiliate_id: int
    affiliate_code: Optional[str] = None
    affiliate_name: Optional[str] = None
    total_commission_cents: int
    total_negative_cents: int
    total_payable_cents: int
    status: PayoutStatus
    paid_at: Optional[datetime] = None
    paid_note: Optional[str] = None

    class Config:
        from_attributes = True


class PayoutAggregateRequest(BaseModel):
    # "YYYY-MM"; se assente -> mese civile precedente
    month: Optional[str] = None
    affiliate_ids: Optional[List[int]] = None


class PayoutAggregateResult(BaseModel):
    month: str
    generated: int
    skipped_paid: int


class PayoutMarkPaidRequest(BaseModel):
    month: str
    affiliate_ids: List[int] = Field(min_length=1)
    note: Optional[str] = None


class PayoutMarkPaidResult(BaseModel):
    month: str
    marked: int
