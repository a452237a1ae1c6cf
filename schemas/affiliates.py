# schemas/affiliates.py

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field


class AffiliateCreate(BaseModel):
    code: str = Field(min_length=1, max_length=255)
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    tier: int = Field(default=1, ge=1, le=3)
    payout_destination: Optional[Dict[str, Any]] = None


class AliasOut(BaseModel):
    id: int
    alias: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class AffiliateOut(BaseModel):
    id: int
    code: str
    name: Optional[str] = None
    email: Optional[str] = None
    tier: int
    commission_pct: int
    qualifying_sale_count: int
    is_active: bool
    payout_destination: Optional[Dict[str, Any]] = None
    legacy_id: Optional[str] = None
    created_at: Optional[datetime] = None
    aliases: List[AliasOut] = []

    class Config:
        from_attributes = True


class AffiliateWithTotals(AffiliateOut):
    total_commission_cents: int = 0
    total_negative_cents: int = 0
    total_paid_cents: int = 0
    customers_linked: int = 0


class AffiliateActiveUpdate(BaseModel):
    is_active: bool


class PayoutDestinationUpdate(BaseModel):
    # opaco: pix key, dettagli wise, ...
    payout_destination: Optional[Dict[str, Any]] = None


class AliasCreate(BaseModel):
    alias: str = Field(min_length=1, max_length=100)
