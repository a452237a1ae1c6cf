# app/stripe_source.py
"""
Adapter Stripe -> eventi commerce astratti.

Interfaccia "source" usata da SyncRunner (la stessa implementata dai fake
nei test):

    iter_records(kind, since)            -> oggetti grezzi paginati (stream)
    iter_customer_invoices(customer_id)  -> fatture pagate di un customer
    to_event(kind, raw)                  -> CommerceEvent | None

kind in: customers, subscriptions, invoices, refunds, disputes.
Tutte le chiamate HTTP hanno timeout (settings.stripe_timeout_seconds).
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

import stripe

from app.config import settings
from app.errors import UpstreamLookupError
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

PAGE_SIZE = 100

RECORD_KINDS = ("customers", "subscriptions", "invoices", "refunds", "disputes")


def configure_stripe() -> None:
    if settings.stripe_secret_key:
        stripe.api_key = settings.stripe_secret_key
    stripe.max_network_retries = 2
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.stripe_timeout_seconds)


# -------------------------------------------------
# helpers (StripeObject -> dict, timestamp -> datetime)
# -------------------------------------------------
def plain(obj: Any) -> Any:
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    to_dict_recursive = getattr(obj, "to_dict_recursive", None)
    if callable(to_dict_recursive):
        return to_dict_recursive()
    to_dict = getattr(obj, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    return obj


def ts(value: Any) -> Optional[datetime]:
    if value in (None, "", 0):
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _id_of(ref: Any) -> Optional[str]:
    if ref is None:
        return None
    if isinstance(ref, dict):
        return ref.get("id")
    return str(ref)


def _metadata(obj: Any) -> dict[str, str]:
    if not isinstance(obj, dict):
        return {}
    md = obj.get("metadata") or {}
    return {str(k): str(v) for k, v in dict(md).items() if v is not None}


def _live_customer(ref: Any) -> Optional[dict]:
    if isinstance(ref, dict) and not ref.get("deleted"):
        return ref
    return None


# -------------------------------------------------
# MAPPERS (oggetto Stripe -> evento astratto)
# -------------------------------------------------
def customer_event(customer: dict) -> Optional[CustomerObserved]:
    if customer.get("deleted"):
        return None
    return CustomerObserved(
        customer_id=customer["id"],
        metadata=_metadata(customer),
        name=customer.get("name"),
        email=customer.get("email"),
    )


def subscription_event(sub: dict) -> SubscriptionObserved:
    customer_ref = sub.get("customer")
    customer = _live_customer(customer_ref)

    items = ((sub.get("items") or {}).get("data")) or []
    item = items[0] if items else {}
    price = item.get("price") or {}
    current_period_end = sub.get("current_period_end") or item.get("current_period_end")

    # metadata della subscription + del customer (se espanso); il customer vince
    metadata = {**_metadata(sub), **_metadata(customer)}

    return SubscriptionObserved(
        subscription_id=sub["id"],
        customer_id=_id_of(customer_ref),
        status=sub.get("status") or "active",
        metadata=metadata,
        customer_name=(customer.get("name") or customer.get("email")) if customer else None,
        price_id=price.get("id"),
        amount_cents=int(price.get("unit_amount") or 0),
        trial_start=ts(sub.get("trial_start")),
        trial_end=ts(sub.get("trial_end")),
        started_at=ts(sub.get("start_date")),
        current_period_end=ts(current_period_end),
        canceled_at=ts(sub.get("canceled_at")),
    )


def _invoice_subscription_id(inv: dict) -> Optional[str]:
    sub = inv.get("subscription")
    if sub:
        return _id_of(sub)
    # API recenti: invoice.parent.subscription_details.subscription
    details = ((inv.get("parent") or {}).get("subscription_details")) or {}
    return _id_of(details.get("subscription"))


def _invoice_payment_refs(inv: dict) -> tuple[Optional[str], Optional[str]]:
    charge_id = _id_of(inv.get("charge"))
    payment_intent_id = _id_of(inv.get("payment_intent"))
    if charge_id or payment_intent_id:
        return charge_id, payment_intent_id
    # API recenti: invoice.payments.data[].payment
    for p in ((inv.get("payments") or {}).get("data")) or []:
        payment = p.get("payment") or {}
        charge_id = charge_id or _id_of(payment.get("charge"))
        payment_intent_id = payment_intent_id or _id_of(payment.get("payment_intent"))
    return charge_id, payment_intent_id


def invoice_event(inv: dict) -> Optional[InvoicePaid]:
    customer_ref = inv.get("customer")
    customer_id = _id_of(customer_ref)
    if not customer_id:
        return None

    transitions = inv.get("status_transitions") or {}
    paid_at = ts(transitions.get("paid_at")) or ts(inv.get("created"))
    if paid_at is None:
        return None

    charge_id, payment_intent_id = _invoice_payment_refs(inv)
    return InvoicePaid(
        invoice_id=inv["id"],
        customer_id=customer_id,
        amount_paid=int(inv.get("amount_paid") or 0),
        paid_at=paid_at,
        subscription_id=_invoice_subscription_id(inv),
        charge_id=charge_id,
        payment_intent_id=payment_intent_id,
        metadata=_metadata(_live_customer(customer_ref)),
    )


def charge_refund_event(charge: dict, fallback_at: Optional[datetime] = None) -> Optional[ChargeRefunded]:
    amount = int(charge.get("amount_refunded") or 0)
    if amount <= 0:
        return None
    refunds = ((charge.get("refunds") or {}).get("data")) or []
    created = [r.get("created") for r in refunds if r.get("created")]
    refunded_at = ts(max(created)) if created else (fallback_at or ts(charge.get("created")))
    return ChargeRefunded(
        charge_id=charge["id"],
        amount=amount,
        refunded_at=refunded_at,
        payment_intent_id=_id_of(charge.get("payment_intent")),
    )


def refund_event(refund: dict) -> Optional[ChargeRefunded]:
    charge_ref = refund.get("charge")
    charge_id = _id_of(charge_ref)
    if not charge_id:
        return None
    # Importo cumulativo sul charge quando disponibile (stesso valore del webhook)
    amount = int(refund.get("amount") or 0)
    if isinstance(charge_ref, dict) and charge_ref.get("amount_refunded"):
        amount = int(charge_ref["amount_refunded"])
    return ChargeRefunded(
        charge_id=charge_id,
        amount=amount,
        refunded_at=ts(refund.get("created")),
        payment_intent_id=_id_of(refund.get("payment_intent")),
    )


def dispute_event(dispute: dict) -> DisputeOpened:
    charge_id = _id_of(dispute.get("charge"))
    if not charge_id:
        raise UpstreamLookupError(f"dispute {dispute.get('id')} has no charge")
    return DisputeOpened(
        dispute_id=dispute["id"],
        charge_id=charge_id,
        amount=int(dispute.get("amount") or 0),
        opened_at=ts(dispute.get("created")),
        payment_intent_id=_id_of(dispute.get("payment_intent")),
    )


class StripeCommerceSource:
    def __init__(self):
        configure_stripe()

    # -----------------------------
    # webhook
    # -----------------------------
    def construct_event(self, payload: bytes, sig_header: str) -> dict:
        """Verifica firma; solleva ValueError / stripe.SignatureVerificationError."""
        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=sig_header,
            secret=settings.stripe_webhook_secret,
        )
        return plain(event)

    def retrieve_customer(self, customer_id: str) -> dict:
        try:
            return plain(stripe.Customer.retrieve(customer_id))
        except stripe.InvalidRequestError as e:
            raise UpstreamLookupError(f"customer {customer_id}: {e}") from e

    def events_from_webhook(self, event: dict) -> Optional[list[CommerceEvent]]:
        """None = tipo evento non gestito dal motore."""
        event_type = event.get("type")
        obj = ((event.get("data") or {}).get("object")) or {}
        event_at = ts(event.get("created"))

        if event_type == "checkout.session.completed":
            customer_id = _id_of(obj.get("customer"))
            if not customer_id:
                return []
            customer = self.retrieve_customer(customer_id)
            if customer.get("deleted"):
                return []
            return [
                CustomerObserved(
                    customer_id=customer_id,
                    metadata={**_metadata(obj), **_metadata(customer)},
                    name=customer.get("name"),
                    email=customer.get("email"),
                )
            ]

        if event_type in ("customer.created", "customer.updated"):
            ev = customer_event(obj)
            return [ev] if ev else []

        if event_type in ("customer.subscription.created", "customer.subscription.updated"):
            return [subscription_event(obj)]

        if event_type == "customer.subscription.deleted":
            return [
                SubscriptionStatusChanged(
                    subscription_id=obj["id"],
                    status="canceled",
                    at=ts(obj.get("canceled_at")) or event_at,
                )
            ]

        if event_type == "invoice.paid":
            ev = invoice_event(obj)
            return [ev] if ev else []

        if event_type == "invoice.payment_failed":
            sub_id = _invoice_subscription_id(obj)
            if not sub_id:
                return []
            return [SubscriptionStatusChanged(subscription_id=sub_id, status="past_due", at=event_at)]

        if event_type == "charge.refunded":
            ev = charge_refund_event(obj, fallback_at=event_at)
            return [ev] if ev else []

        if event_type in ("charge.dispute.created", "charge.dispute.updated"):
            return [dispute_event(obj)]

        return None

    # -----------------------------
    # pull (sync / resync / backfill)
    # -----------------------------
    def iter_records(self, kind: str, since: datetime) -> Iterator[dict]:
        created = {"gte": int(since.timestamp())}

        if kind == "customers":
            pager = stripe.Customer.list(created=created, limit=PAGE_SIZE)
        elif kind == "subscriptions":
            pager = stripe.Subscription.list(
                created=created, status="all", expand=["data.customer"], limit=PAGE_SIZE
            )
        elif kind == "invoices":
            pager = stripe.Invoice.list(
                created=created, status="paid", expand=["data.customer"], limit=PAGE_SIZE
            )
        elif kind == "refunds":
            pager = stripe.Refund.list(created=created, expand=["data.charge"], limit=PAGE_SIZE)
        elif kind == "disputes":
            pager = stripe.Dispute.list(created=created, limit=PAGE_SIZE)
        else:
            raise ValueError(f"Unknown record kind: {kind}")

        for obj in pager.auto_paging_iter():
            yield plain(obj)

    def iter_customer_invoices(self, customer_id: str) -> Iterator[dict]:
        pager = stripe.Invoice.list(customer=customer_id, status="paid", limit=PAGE_SIZE)
        for obj in pager.auto_paging_iter():
            yield plain(obj)

    def to_event(self, kind: str, raw: dict) -> Optional[CommerceEvent]:
        if kind == "customers":
            return customer_event(raw)
        if kind == "subscriptions":
            return subscription_event(raw)
        if kind == "invoices":
            return invoice_event(raw)
        if kind == "refunds":
            return refund_event(raw)
        if kind == "disputes":
            return dispute_event(raw)
        raise ValueError(f"Unknown record kind: {kind}")

    @staticmethod
    def record_id(raw: Any) -> str:
        return str(_id_of(raw) or "?")


def get_commerce_source() -> StripeCommerceSource:
    """Dependency FastAPI (sostituita dai fake nei test)."""
    return StripeCommerceSource()
