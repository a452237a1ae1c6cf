# app/ledger.py
"""
Commission Ledger Builder: UNICO punto che scrive nel ledger.

Webhook, sync schedulata, resync manuale e backfill traducono i propri
oggetti in eventi astratti (schemas/commerce.py) e chiamano apply().
Replay dello stesso oggetto, da qualsiasi pipeline, in qualsiasi ordine,
quante volte si vuole -> stesso stato del ledger.

Dedup solo tramite vincoli unique + INSERT ... ON CONFLICT DO NOTHING,
mai check-then-insert.
"""

from __future__ import annotations

import enum
import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from app.attribution import AttributionResolver
from app.availability import as_utc, compute_available_at, utcnow
from app.commission import (
    calc_commission_cents,
    calc_reversal_cents,
    commission_pct_for_tier,
    tier_for_count,
)
from app.db import insert_if_absent, upsert_unless
from models.affiliates import Affiliate
from models.subscriptions import Subscription, SubscriptionStatus
from models.transactions import Transaction, TransactionType
from schemas.commerce import (
    ChargeRefunded,
    CommerceEvent,
    CustomerObserved,
    DisputeOpened,
    InvoicePaid,
    SubscriptionObserved,
    SubscriptionStatusChanged,
)

logger = logging.getLogger(__name__)

COMMISSION_DESCRIPTION = "Commissione vendita"
REFUND_DESCRIPTION = "Storno commissione - Refund"
DISPUTE_DESCRIPTION = "Storno commissione - Disputa"

# Campi aggiornati (last-write-wins) a ogni osservazione di una subscription.
# affiliate_id e i flag has_refund / has_dispute NON sono mai sovrascritti.
SUBSCRIPTION_UPDATE_COLUMNS = (
    "customer_id",
    "customer_name",
    "price_id",
    "amount_cents",
    "status",
    "is_trial",
    "trial_start",
    "trial_end",
    "started_at",
    "current_period_end",
    "canceled_at",
    "last_event_at",
)


class ApplyOutcome(str, enum.Enum):
    CREATED = "created"
    UPDATED = "updated"
    LINKED = "linked"
    DUPLICATE = "duplicate"
    UNATTRIBUTED = "unattributed"
    MISSING_ORIGINAL = "missing_original"
    SKIPPED = "skipped"


def _utc(dt: Optional[datetime]) -> Optional[datetime]:
    return as_utc(dt) if dt is not None else None


def coerce_subscription_status(value: str) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(str(value).strip().lower())
    except ValueError:
        logger.warning("Unknown subscription status %r, stored as active", value)
        return SubscriptionStatus.ACTIVE


class LedgerBuilder:
    def __init__(self, db: Session, resolver: Optional[AttributionResolver] = None, source: str = "engine"):
        self.db = db
        self.source = source
        self.resolver = resolver or AttributionResolver(db, source=source)

    # -------------------------------------------------
    # DISPATCH
    # -------------------------------------------------
    def apply(self, event: CommerceEvent) -> ApplyOutcome:
        if isinstance(event, InvoicePaid):
            return self.apply_invoice_paid(event)
        if isinstance(event, ChargeRefunded):
            return self.apply_reversal(
                charge_id=event.charge_id,
                payment_intent_id=event.payment_intent_id,
                amount=event.amount,
                at=event.refunded_at,
                tx_type=TransactionType.REFUND,
            )
        if isinstance(event, DisputeOpened):
            return self.apply_reversal(
                charge_id=event.charge_id,
                payment_intent_id=event.payment_intent_id,
                amount=event.amount,
                at=event.opened_at,
                tx_type=TransactionType.DISPUTE,
            )
        if isinstance(event, SubscriptionObserved):
            return self.observe_subscription(event)
        if isinstance(event, SubscriptionStatusChanged):
            return self.change_subscription_status(event)
        if isinstance(event, CustomerObserved):
            return self.observe_customer(event)
        raise TypeError(f"Unsupported commerce event: {type(event).__name__}")

    # -------------------------------------------------
    # CUSTOMER / SUBSCRIPTION
    # -------------------------------------------------
    def observe_customer(self, event: CustomerObserved) -> ApplyOutcome:
        affiliate_id = self.resolver.resolve(event.customer_id, event.metadata)
        return ApplyOutcome.LINKED if affiliate_id is not None else ApplyOutcome.UNATTRIBUTED

    def observe_subscription(self, event: SubscriptionObserved) -> ApplyOutcome:
        affiliate_id = self.resolver.resolve(event.customer_id, event.metadata)
        if affiliate_id is None:
            return ApplyOutcome.UNATTRIBUTED

        status = coerce_subscription_status(event.status)
        values = {
            "external_id": event.subscription_id,
            "affiliate_id": affiliate_id,
            "customer_id": event.customer_id,
            "customer_name": event.customer_name,
            "price_id": event.price_id,
            "amount_cents": int(event.amount_cents or 0),
            "status": status,
            "is_trial": status == SubscriptionStatus.TRIALING,
            "trial_start": _utc(event.trial_start),
            "trial_end": _utc(event.trial_end),
            "started_at": _utc(event.started_at),
            "current_period_end": _utc(event.current_period_end),
            "canceled_at": _utc(event.canceled_at),
            "last_event_at": utcnow(),
        }
        upsert_unless(self.db, Subscription, values, ["external_id"], SUBSCRIPTION_UPDATE_COLUMNS)
        self.db.commit()
        return ApplyOutcome.UPDATED

    def change_subscription_status(self, event: SubscriptionStatusChanged) -> ApplyOutcome:
        status = coerce_subscription_status(event.status)
        at = _utc(event.at) or utcnow()

        values: dict = {"status": status, "last_event_at": at}
        if status == SubscriptionStatus.CANCELED:
            values["canceled_at"] = at

        updated = (
            self.db.query(Subscription)
            .filter(Subscription.external_id == event.subscription_id)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return ApplyOutcome.UPDATED if updated else ApplyOutcome.SKIPPED

    def _ensure_subscription(self, external_id: str, affiliate_id: int, customer_id: str) -> int:
        """
        La fattura puo' arrivare prima della subscription: creiamo uno stub
        (insert-if-absent) cosi' il contatore prima-vendita e' corretto in
        qualsiasi ordine. Riga bloccata FOR UPDATE fino al commit.
        """
        insert_if_absent(
            self.db,
            Subscription,
            {
                "external_id": external_id,
                "affiliate_id": affiliate_id,
                "customer_id": customer_id,
                "status": SubscriptionStatus.ACTIVE,
                "last_event_at": utcnow(),
            },
            ["external_id"],
        )
        row = (
            self.db.query(Subscription.id)
            .filter(Subscription.external_id == external_id)
            .with_for_update()
            .one()
        )
        return row.id

    # -------------------------------------------------
    # COMMISSION
    # -------------------------------------------------
    def apply_invoice_paid(self, event: InvoicePaid) -> ApplyOutcome:
        if int(event.amount_paid or 0) <= 0:
            return ApplyOutcome.SKIPPED

        affiliate_id = self.resolver.resolve(event.customer_id, event.metadata)
        if affiliate_id is None:
            return ApplyOutcome.UNATTRIBUTED

        already = (
            self.db.query(Transaction.id)
            .filter(
                Transaction.external_id == event.invoice_id,
                Transaction.type == TransactionType.COMMISSION,
            )
            .first()
        )
        if already:
            return ApplyOutcome.DUPLICATE

        affiliate = self.db.get(Affiliate, affiliate_id)
        if affiliate is None:
            logger.warning("Linked affiliate %s not found for invoice %s", affiliate_id, event.invoice_id)
            return ApplyOutcome.SKIPPED

        # Percentuale del tier CORRENTE, salvata come snapshot
        pct = commission_pct_for_tier(affiliate.tier)
        paid_at = as_utc(event.paid_at)

        subscription_pk = None
        if event.subscription_id:
            subscription_pk = self._ensure_subscription(event.subscription_id, affiliate_id, event.customer_id)

        inserted = insert_if_absent(
            self.db,
            Transaction,
            {
                "affiliate_id": affiliate_id,
                "subscription_id": subscription_pk,
                "external_id": event.invoice_id,
                "invoice_id": event.invoice_id,
                "charge_id": event.charge_id,
                "payment_intent_id": event.payment_intent_id,
                "type": TransactionType.COMMISSION,
                "amount_gross_cents": int(event.amount_paid),
                "commission_percent": pct,
                "commission_amount_cents": calc_commission_cents(event.amount_paid, pct),
                "paid_at": paid_at,
                "available_at": compute_available_at(paid_at),
                "description": event.description or COMMISSION_DESCRIPTION,
            },
            ["external_id", "type"],
        )
        if not inserted:
            self.db.rollback()
            return ApplyOutcome.DUPLICATE

        if subscription_pk is not None:
            self._count_first_sale(affiliate_id, subscription_pk)

        self.db.commit()
        logger.info(
            "Commission booked invoice=%s affiliate=%s pct=%s gross=%s",
            event.invoice_id,
            affiliate_id,
            pct,
            event.amount_paid,
        )
        return ApplyOutcome.CREATED

    def _count_first_sale(self, affiliate_id: int, subscription_pk: int) -> None:
        # +1 solo se la riga appena inserita e' l'UNICA commissione della
        # subscription; valutato nella stessa transazione dell'insert.
        commissions_for_subscription = (
            select(func.count(Transaction.id))
            .where(
                Transaction.subscription_id == subscription_pk,
                Transaction.type == TransactionType.COMMISSION,
            )
            .scalar_subquery()
        )
        self.db.execute(
            update(Affiliate)
            .where(Affiliate.id == affiliate_id, commissions_for_subscription == 1)
            .values(qualifying_sale_count=Affiliate.qualifying_sale_count + 1)
            .execution_options(synchronize_session=False)
        )

    # -------------------------------------------------
    # REFUND / DISPUTE
    # -------------------------------------------------
    def _find_original_commission(self, charge_id: str, payment_intent_id: Optional[str]) -> Optional[Transaction]:
        match = [Transaction.charge_id == charge_id]
        if payment_intent_id:
            match.append(Transaction.payment_intent_id == payment_intent_id)
        return (
            self.db.query(Transaction)
            .filter(Transaction.type == TransactionType.COMMISSION, or_(*match))
            .order_by(Transaction.id.asc())
            .first()
        )

    def apply_reversal(
        self,
        *,
        charge_id: str,
        payment_intent_id: Optional[str],
        amount: int,
        at: datetime,
        tx_type: TransactionType,
    ) -> ApplyOutcome:
        if int(amount or 0) == 0:
            return ApplyOutcome.SKIPPED

        original = self._find_original_commission(charge_id, payment_intent_id)
        if original is None:
            logger.info("No commission to reverse for charge=%s type=%s", charge_id, tx_type.value)
            return ApplyOutcome.MISSING_ORIGINAL

        at_utc = as_utc(at)
        inserted = insert_if_absent(
            self.db,
            Transaction,
            {
                "affiliate_id": original.affiliate_id,
                "subscription_id": original.subscription_id,
                "external_id": charge_id,
                "invoice_id": original.invoice_id,
                "charge_id": charge_id,
                "payment_intent_id": payment_intent_id or original.payment_intent_id,
                "type": tx_type,
                "amount_gross_cents": -abs(int(amount)),
                # Percentuale ereditata dalla commissione originale
                "commission_percent": original.commission_percent,
                "commission_amount_cents": calc_reversal_cents(amount, original.commission_percent),
                # Addebito immediato
                "paid_at": at_utc,
                "available_at": at_utc,
                "description": REFUND_DESCRIPTION if tx_type == TransactionType.REFUND else DISPUTE_DESCRIPTION,
            },
            ["external_id", "type"],
        )

        if original.subscription_id is not None:
            flag = Subscription.has_refund if tx_type == TransactionType.REFUND else Subscription.has_dispute
            self.db.execute(
                update(Subscription)
                .where(Subscription.id == original.subscription_id, flag.is_(False))
                .values({flag.key: True})
                .execution_options(synchronize_session=False)
            )

        self.db.commit()

        if not inserted:
            return ApplyOutcome.DUPLICATE

        logger.info(
            "Commission reversed charge=%s type=%s affiliate=%s pct=%s amount=%s",
            charge_id,
            tx_type.value,
            original.affiliate_id,
            original.commission_percent,
            amount,
        )
        return ApplyOutcome.CREATED


# -------------------------------------------------
# TIER POLICY (valutata in modo lazy: sync / reconcile / backfill)
# -------------------------------------------------
def apply_tier_policy(db: Session, affiliate_ids: Optional[Iterable[int]] = None) -> int:
    """
    qualifying_sale_count = max(attuale, subscription distinte con commissione)
    tier = promozione secondo tier_for_count (mai declassamento automatico).
    Cambia solo le commissioni FUTURE. Ritorna il numero di affiliati toccati.
    """
    counts_q = (
        db.query(
            Transaction.affiliate_id,
            func.count(func.distinct(Transaction.subscription_id)),
        )
        .filter(
            Transaction.type == TransactionType.COMMISSION,
            Transaction.subscription_id.isnot(None),
        )
        .group_by(Transaction.affiliate_id)
    )
    q = db.query(Affiliate)
    if affiliate_ids is not None:
        ids = list(affiliate_ids)
        if not ids:
            return 0
        counts_q = counts_q.filter(Transaction.affiliate_id.in_(ids))
        q = q.filter(Affiliate.id.in_(ids))

    distinct_counts = {affiliate_id: int(n) for affiliate_id, n in counts_q.all()}

    changed = 0
    for affiliate in q.all():
        count = max(int(affiliate.qualifying_sale_count or 0), distinct_counts.get(affiliate.id, 0))
        tier = max(int(affiliate.tier or 1), tier_for_count(count))
        if count != affiliate.qualifying_sale_count or tier != affiliate.tier:
            if tier != affiliate.tier:
                logger.info("Tier change affiliate=%s %s -> %s (sales=%s)", affiliate.id, affiliate.tier, tier, count)
            affiliate.qualifying_sale_count = count
            affiliate.tier = tier
            changed += 1

    db.commit()
    return changed
