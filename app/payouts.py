# app/payouts.py
"""
Payout Aggregator: transazioni -> MonthlyPayout per (mese, affiliato).

Il mese e' quello CIVILE (settings.business_timezone) in cui cade
available_at. Le righe gia' PAID non vengono mai ricalcolate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.availability import month_bounds, month_of, utcnow
from app.db import upsert_unless
from models.monthly_payouts import MonthlyPayout, PayoutStatus
from models.transactions import Transaction, TransactionType

logger = logging.getLogger(__name__)

PAYOUT_UPDATE_COLUMNS = (
    "total_commission_cents",
    "total_negative_cents",
    "total_payable_cents",
    "status",
)


@dataclass
class PayoutTotals:
    affiliate_id: int
    total_commission_cents: int
    total_negative_cents: int

    @property
    def total_payable_cents(self) -> int:
        return payable_cents(self.total_commission_cents, self.total_negative_cents)


def payable_cents(commission_cents: int, negative_cents: int) -> int:
    return max(int(commission_cents) - int(negative_cents), 0)


def compute_month_totals(
    db: Session,
    month: date,
    affiliate_ids: Optional[Iterable[int]] = None,
) -> list[PayoutTotals]:
    start, end = month_bounds(month)

    commission_sum = func.coalesce(
        func.sum(
            case(
                (Transaction.type == TransactionType.COMMISSION, Transaction.commission_amount_cents),
                else_=0,
            )
        ),
        0,
    )
    negative_sum = func.coalesce(
        func.sum(
            case(
                (Transaction.type != TransactionType.COMMISSION, func.abs(Transaction.commission_amount_cents)),
                else_=0,
            )
        ),
        0,
    )

    q = (
        db.query(Transaction.affiliate_id, commission_sum, negative_sum)
        .filter(Transaction.available_at >= start, Transaction.available_at < end)
        .group_by(Transaction.affiliate_id)
        .order_by(Transaction.affiliate_id.asc())
    )
    if affiliate_ids is not None:
        q = q.filter(Transaction.affiliate_id.in_(list(affiliate_ids)))

    return [
        PayoutTotals(
            affiliate_id=int(affiliate_id),
            total_commission_cents=int(commission or 0),
            total_negative_cents=int(negative or 0),
        )
        for affiliate_id, commission, negative in q.all()
    ]


def _upsert_pending(db: Session, month: date, totals: PayoutTotals) -> None:
    upsert_unless(
        db,
        MonthlyPayout,
        {
            "month": month,
            "affiliate_id": totals.affiliate_id,
            "total_commission_cents": totals.total_commission_cents,
            "total_negative_cents": totals.total_negative_cents,
            "total_payable_cents": totals.total_payable_cents,
            "status": PayoutStatus.PENDING,
        },
        ["month", "affiliate_id"],
        PAYOUT_UPDATE_COLUMNS,
        # riga gia' pagata: hard skip
        where=MonthlyPayout.status != PayoutStatus.PAID,
    )


def aggregate_month(
    db: Session,
    month: date,
    affiliate_ids: Optional[Iterable[int]] = None,
) -> dict:
    month = date(month.year, month.month, 1)
    totals = compute_month_totals(db, month, affiliate_ids)

    already_paid = {
        row.affiliate_id
        for row in db.query(MonthlyPayout.affiliate_id)
        .filter(MonthlyPayout.month == month, MonthlyPayout.status == PayoutStatus.PAID)
        .all()
    }

    generated = 0
    skipped_paid = 0
    for t in totals:
        if t.affiliate_id in already_paid:
            skipped_paid += 1
            continue
        _upsert_pending(db, month, t)
        generated += 1

    db.commit()
    logger.info(
        "Payout aggregation month=%s generated=%s skipped_paid=%s",
        month.isoformat(),
        generated,
        skipped_paid,
    )
    return {
        "month": month.isoformat(),
        "generated": generated,
        "skipped_paid": skipped_paid,
    }


def mark_paid(
    db: Session,
    month: date,
    affiliate_ids: Iterable[int],
    note: Optional[str] = None,
    paid_at: Optional[datetime] = None,
) -> int:
    """
    Segna PAID uno o piu' payout del mese in UNA transazione.
    Le righe mancanti vengono prima aggregate (pending) e poi pagate.
    """
    month = date(month.year, month.month, 1)
    ids = sorted({int(a) for a in affiliate_ids})
    if not ids:
        return 0

    existing = {
        row.affiliate_id
        for row in db.query(MonthlyPayout.affiliate_id)
        .filter(MonthlyPayout.month == month, MonthlyPayout.affiliate_id.in_(ids))
        .all()
    }
    missing = [a for a in ids if a not in existing]
    if missing:
        for t in compute_month_totals(db, month, missing):
            _upsert_pending(db, month, t)

    values = {"status": PayoutStatus.PAID, "paid_at": paid_at or utcnow()}
    if note:
        values["paid_note"] = note

    marked = (
        db.query(MonthlyPayout)
        .filter(
            MonthlyPayout.month == month,
            MonthlyPayout.affiliate_id.in_(ids),
            MonthlyPayout.status != PayoutStatus.PAID,
        )
        .update(values, synchronize_session=False)
    )
    db.commit()
    logger.info("Payouts marked paid month=%s count=%s", month.isoformat(), marked)
    return int(marked or 0)


def list_payouts(
    db: Session,
    month: Optional[date] = None,
    status: Optional[PayoutStatus] = None,
) -> list[MonthlyPayout]:
    q = db.query(MonthlyPayout)
    if month is not None:
        q = q.filter(MonthlyPayout.month == date(month.year, month.month, 1))
    if status is not None:
        q = q.filter(MonthlyPayout.status == status)
    return q.order_by(MonthlyPayout.month.desc(), MonthlyPayout.total_payable_cents.desc()).all()


def synthesize_paid_history(
    db: Session,
    affiliate_ids: Iterable[int],
    before: Optional[date] = None,
    note: str = "Legacy migration",
) -> int:
    """
    Backfill: righe MonthlyPayout gia' PAID per i mesi passati (il denaro
    e' gia' stato versato dal sistema legacy). Non tocca righe gia' pagate.
    """
    ids = list(affiliate_ids)
    if not ids:
        return 0
    cutoff = before or month_of(utcnow())

    months: set[date] = set()
    for (available_at,) in (
        db.query(Transaction.available_at)
        .filter(Transaction.affiliate_id.in_(ids), Transaction.available_at.isnot(None))
        .all()
    ):
        m = month_of(available_at)
        if m < cutoff:
            months.add(m)

    now = utcnow()
    created = 0
    for month in sorted(months):
        already_paid = {
            row.affiliate_id
            for row in db.query(MonthlyPayout.affiliate_id)
            .filter(MonthlyPayout.month == month, MonthlyPayout.status == PayoutStatus.PAID)
            .all()
        }
        for t in compute_month_totals(db, month, ids):
            if t.affiliate_id in already_paid:
                continue
            created += upsert_unless(
                db,
                MonthlyPayout,
                {
                    "month": month,
                    "affiliate_id": t.affiliate_id,
                    "total_commission_cents": t.total_commission_cents,
                    "total_negative_cents": t.total_negative_cents,
                    "total_payable_cents": t.total_payable_cents,
                    "status": PayoutStatus.PAID,
                    "paid_at": now,
                    "paid_note": note,
                },
                ["month", "affiliate_id"],
                PAYOUT_UPDATE_COLUMNS + ("paid_at", "paid_note"),
                where=MonthlyPayout.status != PayoutStatus.PAID,
            )

    db.commit()
    return created
