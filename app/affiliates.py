# app/affiliates.py
"""Affiliate Registry: creazione, alias, totali per il pannello admin."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from app.errors import AliasLimitError
from models.affiliates import MAX_LIVE_ALIASES, Affiliate, AffiliateAlias
from models.customer_links import CustomerAffiliateLink
from models.monthly_payouts import MonthlyPayout, PayoutStatus
from models.transactions import Transaction, TransactionType

logger = logging.getLogger(__name__)


class TokenInUseError(ValueError):
    """Token gia' usato come codice o alias da un affiliato."""


def token_in_use(db: Session, token: str) -> bool:
    if db.query(Affiliate.id).filter(Affiliate.code == token).first():
        return True
    return db.query(AffiliateAlias.id).filter(AffiliateAlias.alias == token).first() is not None


def create_affiliate(
    db: Session,
    code: str,
    name: Optional[str] = None,
    email: Optional[str] = None,
    tier: int = 1,
    payout_destination: Optional[dict] = None,
) -> Affiliate:
    code = code.strip()
    if not code:
        raise ValueError("Codice affiliato vuoto")
    if token_in_use(db, code):
        raise TokenInUseError(f"Codice gia' in uso: {code}")

    affiliate = Affiliate(
        code=code,
        name=name,
        email=(email or "").strip().lower() or None,
        tier=tier,
        qualifying_sale_count=0,
        is_active=True,
        payout_destination=payout_destination,
    )
    db.add(affiliate)
    db.commit()
    db.refresh(affiliate)
    logger.info("Affiliate created id=%s code=%s", affiliate.id, affiliate.code)
    return affiliate


def add_alias(db: Session, affiliate: Affiliate, alias: str) -> AffiliateAlias:
    """
    Aggiunge un alias (massimo MAX_LIVE_ALIASES). Non fa commit.
    """
    alias = alias.strip()
    if not alias:
        raise ValueError("Alias vuoto")
    if token_in_use(db, alias):
        raise TokenInUseError(f"Alias gia' in uso: {alias}")

    # lock sull'affiliato: conteggio e insert serializzati tra richieste concorrenti
    db.query(Affiliate.id).filter(Affiliate.id == affiliate.id).with_for_update().one()
    live = db.query(AffiliateAlias).filter(AffiliateAlias.affiliate_id == affiliate.id).count()
    if live >= MAX_LIVE_ALIASES:
        raise AliasLimitError(
            f"Affiliato {affiliate.id} ha gia' {live} alias (massimo {MAX_LIVE_ALIASES})"
        )

    row = AffiliateAlias(affiliate_id=affiliate.id, alias=alias)
    db.add(row)
    db.flush()
    return row


def remove_alias(db: Session, affiliate_id: int, alias_id: int) -> bool:
    deleted = (
        db.query(AffiliateAlias)
        .filter(AffiliateAlias.id == alias_id, AffiliateAlias.affiliate_id == affiliate_id)
        .delete(synchronize_session=False)
    )
    db.commit()
    return bool(deleted)


def affiliate_totals(db: Session, affiliate_ids: Optional[list[int]] = None) -> dict[int, dict]:
    """
    Totali per affiliato (centesimi): commissioni, storni, pagato, customer collegati.
    """
    tx_q = db.query(
        Transaction.affiliate_id,
        func.coalesce(
            func.sum(
                case(
                    (Transaction.type == TransactionType.COMMISSION, Transaction.commission_amount_cents),
                    else_=0,
                )
            ),
            0,
        ),
        func.coalesce(
            func.sum(
                case(
                    (Transaction.type != TransactionType.COMMISSION, func.abs(Transaction.commission_amount_cents)),
                    else_=0,
                )
            ),
            0,
        ),
    ).group_by(Transaction.affiliate_id)

    paid_q = (
        db.query(MonthlyPayout.affiliate_id, func.coalesce(func.sum(MonthlyPayout.total_payable_cents), 0))
        .filter(MonthlyPayout.status == PayoutStatus.PAID)
        .group_by(MonthlyPayout.affiliate_id)
    )

    links_q = db.query(CustomerAffiliateLink.affiliate_id, func.count(CustomerAffiliateLink.customer_id)).group_by(
        CustomerAffiliateLink.affiliate_id
    )

    if affiliate_ids is not None:
        tx_q = tx_q.filter(Transaction.affiliate_id.in_(affiliate_ids))
        paid_q = paid_q.filter(MonthlyPayout.affiliate_id.in_(affiliate_ids))
        links_q = links_q.filter(CustomerAffiliateLink.affiliate_id.in_(affiliate_ids))

    totals: dict[int, dict] = {}

    def _row(affiliate_id: int) -> dict:
        return totals.setdefault(
            affiliate_id,
            {
                "total_commission_cents": 0,
                "total_negative_cents": 0,
                "total_paid_cents": 0,
                "customers_linked": 0,
            },
        )

    for affiliate_id, commission, negative in tx_q.all():
        r = _row(affiliate_id)
        r["total_commission_cents"] = int(commission or 0)
        r["total_negative_cents"] = int(negative or 0)
    for affiliate_id, paid in paid_q.all():
        _row(affiliate_id)["total_paid_cents"] = int(paid or 0)
    for affiliate_id, n in links_q.all():
        _row(affiliate_id)["customers_linked"] = int(n or 0)

    return totals
