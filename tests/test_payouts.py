from __future__ import annotations

from datetime import date, datetime, timezone

from app.payouts import aggregate_month, list_payouts, mark_paid, payable_cents, synthesize_paid_history
from models.monthly_payouts import MonthlyPayout, PayoutStatus
from models.transactions import Transaction, TransactionType

MARCH = date(2026, 3, 1)


def _tx(db, affiliate_id: int, external_id: str, tx_type: TransactionType, commission: int, available_at: datetime) -> None:
    db.add(
        Transaction(
            affiliate_id=affiliate_id,
            external_id=external_id,
            type=tx_type,
            amount_gross_cents=commission * 100 // 30,
            commission_percent=30,
            commission_amount_cents=commission,
            paid_at=available_at,
            available_at=available_at,
        )
    )
    db.commit()


def _payout(db, affiliate_id: int, month: date = MARCH) -> MonthlyPayout:
    db.expire_all()
    return (
        db.query(MonthlyPayout)
        .filter(MonthlyPayout.month == month, MonthlyPayout.affiliate_id == affiliate_id)
        .one()
    )


def test_payable_is_commission_minus_negatives_floored_at_zero() -> None:
    assert payable_cents(10000, 3000) == 7000
    assert payable_cents(3000, 5000) == 0


def test_aggregate_month_sums_by_available_at(db, affiliate, other_affiliate) -> None:
    in_march = datetime(2026, 3, 5, 15, 0, tzinfo=timezone.utc)
    _tx(db, affiliate.id, "in_1", TransactionType.COMMISSION, 6000, in_march)
    _tx(db, affiliate.id, "in_2", TransactionType.COMMISSION, 4000, in_march)
    _tx(db, affiliate.id, "ch_1", TransactionType.REFUND, -3000, datetime(2026, 3, 20, tzinfo=timezone.utc))
    # 31/03 23:30 a Sao Paulo: ancora marzo
    _tx(db, other_affiliate.id, "ch_2", TransactionType.DISPUTE, -5000, datetime(2026, 4, 1, 2, 30, tzinfo=timezone.utc))
    # aprile: fuori dal mese
    _tx(db, affiliate.id, "in_3", TransactionType.COMMISSION, 9999, datetime(2026, 4, 5, 15, 0, tzinfo=timezone.utc))

    result = aggregate_month(db, MARCH)
    assert result == {"month": "2026-03-01", "generated": 2, "skipped_paid": 0}

    p = _payout(db, affiliate.id)
    assert p.total_commission_cents == 10000
    assert p.total_negative_cents == 3000
    assert p.total_payable_cents == 7000
    assert p.status == PayoutStatus.PENDING

    q = _payout(db, other_affiliate.id)
    assert q.total_commission_cents == 0
    assert q.total_negative_cents == 5000
    assert q.total_payable_cents == 0


def test_affiliates_without_transactions_get_no_row(db, affiliate, other_affiliate) -> None:
    _tx(db, affiliate.id, "in_1", TransactionType.COMMISSION, 3000, datetime(2026, 3, 5, 15, tzinfo=timezone.utc))
    aggregate_month(db, MARCH)
    assert db.query(MonthlyPayout).filter(MonthlyPayout.affiliate_id == other_affiliate.id).count() == 0


def test_reaggregation_updates_pending_rows(db, affiliate) -> None:
    _tx(db, affiliate.id, "in_1", TransactionType.COMMISSION, 3000, datetime(2026, 3, 5, 15, tzinfo=timezone.utc))
    aggregate_month(db, MARCH)
    _tx(db, affiliate.id, "ch_1", TransactionType.REFUND, -1000, datetime(2026, 3, 9, tzinfo=timezone.utc))
    aggregate_month(db, MARCH)

    assert db.query(MonthlyPayout).count() == 1
    assert _payout(db, affiliate.id).total_payable_cents == 2000


def test_paid_rows_are_immutable_to_the_aggregator(db, affiliate) -> None:
    _tx(db, affiliate.id, "in_1", TransactionType.COMMISSION, 3000, datetime(2026, 3, 5, 15, tzinfo=timezone.utc))
    aggregate_month(db, MARCH)

    assert mark_paid(db, MARCH, [affiliate.id], note="PIX 123") == 1
    paid = _payout(db, affiliate.id)
    assert paid.status == PayoutStatus.PAID
    assert paid.paid_at is not None
    assert paid.paid_note == "PIX 123"

    # transazione tardiva nel mese gia' pagato
    _tx(db, affiliate.id, "ch_late", TransactionType.REFUND, -3000, datetime(2026, 3, 28, tzinfo=timezone.utc))
    result = aggregate_month(db, MARCH)
    assert result["skipped_paid"] == 1
    assert result["generated"] == 0

    after = _payout(db, affiliate.id)
    assert after.total_payable_cents == 3000
    assert after.status == PayoutStatus.PAID

    # marcare di nuovo non cambia nulla
    assert mark_paid(db, MARCH, [affiliate.id]) == 0


def test_mark_paid_aggregates_missing_rows_first(db, affiliate, other_affiliate) -> None:
    _tx(db, affiliate.id, "in_1", TransactionType.COMMISSION, 3000, datetime(2026, 3, 5, 15, tzinfo=timezone.utc))
    _tx(db, other_affiliate.id, "in_2", TransactionType.COMMISSION, 1500, datetime(2026, 3, 6, 15, tzinfo=timezone.utc))

    assert mark_paid(db, MARCH, [affiliate.id, other_affiliate.id]) == 2
    assert _payout(db, affiliate.id).total_payable_cents == 3000
    assert _payout(db, other_affiliate.id).status == PayoutStatus.PAID

    assert len(list_payouts(db, month=MARCH, status=PayoutStatus.PAID)) == 2
    assert list_payouts(db, status=PayoutStatus.PENDING) == []


def test_synthesize_paid_history_only_for_past_months(db, affiliate) -> None:
    _tx(db, affiliate.id, "in_old", TransactionType.COMMISSION, 3000, datetime(2020, 2, 5, 15, tzinfo=timezone.utc))
    _tx(db, affiliate.id, "in_new", TransactionType.COMMISSION, 3000, datetime(2026, 3, 5, 15, tzinfo=timezone.utc))

    created = synthesize_paid_history(db, [affiliate.id], before=MARCH)
    assert created == 1

    old = _payout(db, affiliate.id, date(2020, 2, 1))
    assert old.status == PayoutStatus.PAID
    assert old.paid_note == "Legacy migration"
    assert old.total_payable_cents == 3000
    assert db.query(MonthlyPayout).filter(MonthlyPayout.month == MARCH).count() == 0

    # secondo passaggio: le righe gia' pagate non vengono ricontate
    assert synthesize_paid_history(db, [affiliate.id], before=MARCH) == 0
    assert db.query(MonthlyPayout).count() == 1
