# routers/payouts_admin.py

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.availability import parse_month, previous_month
from app.db import get_db
from app.payouts import aggregate_month, list_payouts, mark_paid
from models.affiliates import Affiliate
from models.monthly_payouts import PayoutStatus
from routers.auth_admin import get_current_admin
from schemas.payouts import (
    PayoutAggregateRequest,
    PayoutAggregateResult,
    PayoutMarkPaidRequest,
    PayoutMarkPaidResult,
    PayoutOut,
)

router = APIRouter(
    prefix="/admin/payouts",
    tags=["Admin Payouts"],
)


def _month_or_400(raw: str):
    try:
        return parse_month(raw)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Mese non valido (formato atteso YYYY-MM).",
        )


# ---------------------------------------------------------
# 1️⃣ LISTA PAYOUT (filtri mese / stato)
# ---------------------------------------------------------
@router.get("/", response_model=List[PayoutOut])
def admin_list_payouts(
    month: Optional[str] = Query(default=None, description="YYYY-MM"),
    payout_status: Optional[PayoutStatus] = Query(default=None, alias="status"),
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    rows = list_payouts(db, month=_month_or_400(month) if month else None, status=payout_status)

    affiliates = {}
    ids = {r.affiliate_id for r in rows}
    if ids:
        affiliates = {a.id: a for a in db.query(Affiliate).filter(Affiliate.id.in_(ids)).all()}

    out = []
    for r in rows:
        item = PayoutOut.model_validate(r)
        a = affiliates.get(r.affiliate_id)
        if a:
            item.affiliate_code = a.code
            item.affiliate_name = a.name
        out.append(item)
    return out


# ---------------------------------------------------------
# 2️⃣ AGGREGA UN MESE (default: mese precedente)
# ---------------------------------------------------------
@router.post("/aggregate", response_model=PayoutAggregateResult)
def admin_aggregate_payouts(
    payload: PayoutAggregateRequest,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    month = _month_or_400(payload.month) if payload.month else previous_month()
    return aggregate_month(db, month, payload.affiliate_ids)


# ---------------------------------------------------------
# 3️⃣ SEGNA COME PAGATI (uno o piu' affiliati, atomico)
# ---------------------------------------------------------
@router.post("/mark-paid", response_model=PayoutMarkPaidResult)
def admin_mark_paid(
    payload: PayoutMarkPaidRequest,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    month = _month_or_400(payload.month)
    marked = mark_paid(db, month, payload.affiliate_ids, note=payload.note)
    return {"month": month.isoformat(), "marked": marked}
