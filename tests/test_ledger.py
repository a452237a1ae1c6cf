from __future__ import annotations

from datetime import datetime, timezone

from app.availability import as_utc
from app.ledger import ApplyOutcome, LedgerBuilder, apply_tier_policy
from models.affiliates import Affiliate
from models.subscriptions import Subscription, SubscriptionStatus
from models.transactions import Transaction, TransactionType
from schemas.commerce import (
    ChargeRefunded,
    CustomerObserved,
    DisputeOpened,
    InvoicePaid,
    SubscriptionObserved,
    SubscriptionStatusChanged,
)

PAID_AT = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


def _invoice(invoice_id: str = "in_1", amount: int = 10000, subscription_id: str | None = "sub_1", **kw) -> InvoicePaid:
    return InvoicePaid(
        invoice_id=invoice_id,
        customer_id=kw.pop("customer_id", "cus_1"),
        amount_paid=amount,
        paid_at=kw.pop("paid_at", PAID_AT),
        subscription_id=subscription_id,
        charge_id=kw.pop("charge_id", f"ch_{invoice_id}"),
        **kw,
    )


def _commissions(db) -> list[Transaction]:
    return db.query(Transaction).filter(Transaction.type == TransactionType.COMMISSION).all()


def test_end_to_end_commission_and_refund(db, affiliate) -> None:
    builder = LedgerBuilder(db)
    assert builder.apply(CustomerObserved(customer_id="cus_1", metadata={"Link": "AB12"})) == ApplyOutcome.LINKED
    assert builder.apply(_invoice()) == ApplyOutcome.CREATED

    commission = _commissions(db)[0]
    assert commission.affiliate_id == affiliate.id
    assert commission.commission_percent == 30
    assert commission.amount_gross_cents == 10000
    assert commission.commission_amount_cents == 3000
    assert as_utc(commission.available_at) == datetime(2026, 4, 5, 15, 0, tzinfo=timezone.utc)

    refunded_at = datetime(2026, 3, 20, 12, 0, tzinfo=timezone.utc)
    outcome = builder.apply(ChargeRefunded(charge_id="ch_in_1", amount=10000, refunded_at=refunded_at))
    assert outcome == ApplyOutcome.CREATED

    reversal = db.query(Transaction).filter(Transaction.type == TransactionType.REFUND).one()
    assert reversal.affiliate_id == affiliate.id
    assert reversal.amount_gross_cents == -10000
    assert reversal.commission_amount_cents == -3000
    assert reversal.commission_percent == 30
    assert as_utc(reversal.paid_at) == refunded_at
    assert as_utc(reversal.available_at) == refunded_at

    sub = db.query(Subscription).filter(Subscription.external_id == "sub_1").one()
    assert sub.has_refund is True
    assert sub.has_dispute is False


def test_replaying_the_same_invoice_is_a_no_op(db, affiliate) -> None:
    builder = LedgerBuilder(db)
    event = _invoice(metadata={"Link": "AB12"})
    assert builder.apply(event) == ApplyOutcome.CREATED
    assert builder.apply(event) == ApplyOutcome.DUPLICATE
    assert LedgerBuilder(db).apply(event) == ApplyOutcome.DUPLICATE

    assert len(_commissions(db)) == 1
    db.expire_all()
    assert db.get(Affiliate, affiliate.id).qualifying_sale_count == 1


def test_unattributed_and_zero_amount_invoices_are_skipped(db, affiliate) -> None:
    builder = LedgerBuilder(db)
    assert builder.apply(_invoice("in_free", amount=0, metadata={"Link": "AB12"})) == ApplyOutcome.SKIPPED
    assert builder.apply(_invoice("in_anon", customer_id="cus_anon")) == ApplyOutcome.UNATTRIBUTED
    assert db.query(Transaction).count() == 0


def test_qualifying_sale_counter_counts_first_commission_per_subscription(db, affiliate) -> None:
    builder = LedgerBuilder(db)
    builder.apply(CustomerObserved(customer_id="cus_1", metadata={"Link": "AB12"}))

    builder.apply(_invoice("in_1", subscription_id="sub_1"))
    builder.apply(_invoice("in_2", subscription_id="sub_1"))
    builder.apply(_invoice("in_3", subscription_id="sub_2"))
    # fattura senza subscription: commissione si, contatore no
    builder.apply(_invoice("in_4", subscription_id=None))

    assert len(_commissions(db)) == 4
    db.expire_all()
    assert db.get(Affiliate, affiliate.id).qualifying_sale_count == 2


def test_reversal_inherits_original_percent_after_tier_change(db, affiliate) -> None:
    builder = LedgerBuilder(db)
    builder.apply(CustomerObserved(customer_id="cus_1", metadata={"Link": "AB12"}))
    builder.apply(_invoice("in_1"))

    affiliate.tier = 3
    db.commit()

    builder.apply(_invoice("in_2"))
    builder.apply(
        DisputeOpened(
            dispute_id="dp_1",
            charge_id="ch_in_1",
            amount=10000,
            opened_at=datetime(2026, 3, 25, tzinfo=timezone.utc),
        )
    )

    by_invoice = {t.invoice_id: t for t in _commissions(db)}
    assert by_invoice["in_1"].commission_percent == 30
    assert by_invoice["in_2"].commission_percent == 40
    assert by_invoice["in_2"].commission_amount_cents == 4000

    dispute = db.query(Transaction).filter(Transaction.type == TransactionType.DISPUTE).one()
    assert dispute.commission_percent == 30
    assert dispute.commission_amount_cents == -3000


def test_partial_refund_and_duplicate_reversal(db, affiliate) -> None:
    builder = LedgerBuilder(db)
    builder.apply(_invoice(metadata={"Link": "AB12"}))

    refund = ChargeRefunded(charge_id="ch_in_1", amount=5000, refunded_at=datetime(2026, 3, 20, tzinfo=timezone.utc))
    assert builder.apply(refund) == ApplyOutcome.CREATED
    assert builder.apply(refund) == ApplyOutcome.DUPLICATE

    rows = db.query(Transaction).filter(Transaction.type == TransactionType.REFUND).all()
    assert len(rows) == 1
    assert rows[0].commission_amount_cents == -1500


def test_reversal_without_original_commission_writes_nothing(db, affiliate) -> None:
    outcome = LedgerBuilder(db).apply(
        ChargeRefunded(charge_id="ch_unknown", amount=1000, refunded_at=datetime(2026, 3, 20, tzinfo=timezone.utc))
    )
    assert outcome == ApplyOutcome.MISSING_ORIGINAL
    assert db.query(Transaction).count() == 0


def test_invoice_before_subscription_keeps_affiliate_and_flags(db, affiliate, other_affiliate) -> None:
    builder = LedgerBuilder(db)
    builder.apply(_invoice(metadata={"Link": "AB12"}))
    builder.apply(
        ChargeRefunded(charge_id="ch_in_1", amount=10000, refunded_at=datetime(2026, 3, 20, tzinfo=timezone.utc))
    )

    # la subscription arriva dopo, con metadata di un altro affiliato
    outcome = builder.apply(
        SubscriptionObserved(
            subscription_id="sub_1",
            customer_id="cus_1",
            status="past_due",
            metadata={"Link": "XY99"},
            customer_name="Cliente Teste",
            amount_cents=10000,
        )
    )
    assert outcome == ApplyOutcome.UPDATED

    db.expire_all()
    sub = db.query(Subscription).filter(Subscription.external_id == "sub_1").one()
    assert sub.affiliate_id == affiliate.id
    assert sub.status == SubscriptionStatus.PAST_DUE
    assert sub.customer_name == "Cliente Teste"
    assert sub.has_refund is True


def test_subscription_status_changes(db, affiliate) -> None:
    builder = LedgerBuilder(db)
    builder.apply(_invoice(metadata={"Link": "AB12"}))

    canceled_at = datetime(2026, 4, 1, tzinfo=timezone.utc)
    assert builder.apply(
        SubscriptionStatusChanged(subscription_id="sub_1", status="canceled", at=canceled_at)
    ) == ApplyOutcome.UPDATED
    assert builder.apply(SubscriptionStatusChanged(subscription_id="sub_missing", status="past_due")) == ApplyOutcome.SKIPPED

    db.expire_all()
    sub = db.query(Subscription).filter(Subscription.external_id == "sub_1").one()
    assert sub.status == SubscriptionStatus.CANCELED
    assert as_utc(sub.canceled_at) == canceled_at


def test_tier_policy_promotes_and_never_demotes(db, affiliate, other_affiliate) -> None:
    affiliate.qualifying_sale_count = 20
    other_affiliate.tier = 3
    db.commit()

    changed = apply_tier_policy(db)
    assert changed == 1

    db.expire_all()
    assert db.get(Affiliate, affiliate.id).tier == 2
    assert db.get(Affiliate, other_affiliate.id).tier == 3
    assert db.get(Affiliate, other_affiliate.id).qualifying_sale_count == 0


def test_tier_policy_catches_up_counter_from_ledger(db, affiliate) -> None:
    builder = LedgerBuilder(db)
    builder.apply(CustomerObserved(customer_id="cus_1", metadata={"Link": "AB12"}))
    for n in range(3):
        builder.apply(_invoice(f"in_{n}", subscription_id=f"sub_{n}"))

    # contatore perso (es. dati importati a mano)
    affiliate.qualifying_sale_count = 0
    db.commit()

    apply_tier_policy(db, [affiliate.id])
    db.expire_all()
    assert db.get(Affiliate, affiliate.id).qualifying_sale_count == 3
