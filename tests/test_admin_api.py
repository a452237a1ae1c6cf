from __future__ import annotations

from datetime import date, datetime, timezone
from unittest.mock import patch

from sqlalchemy.orm import Query

from app.affiliates import add_alias
from app.security import create_access_token
from models.affiliates import Affiliate, AffiliateAlias
from models.customer_links import CustomerAffiliateLink
from models.monthly_payouts import MonthlyPayout, PayoutStatus
from models.transactions import Transaction, TransactionType


def _tx(db, affiliate_id: int, external_id: str, tx_type: TransactionType, commission: int, available_at: datetime) -> None:
    db.add(
        Transaction(
            affiliate_id=affiliate_id,
            external_id=external_id,
            type=tx_type,
            amount_gross_cents=abs(commission) * 100 // 30,
            commission_percent=30,
            commission_amount_cents=commission,
            paid_at=available_at,
            available_at=available_at,
        )
    )
    db.commit()


# ---------------------------------------------------------
# Auth
# ---------------------------------------------------------
def test_admin_me_and_token_checks(client, admin_headers) -> None:
    r = client.get("/admin/me", headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["email"] == "admin@example.com"

    affiliate_token = create_access_token({"sub": "affiliate:1"})
    r = client.get("/admin/affiliates/", headers={"Authorization": f"Bearer {affiliate_token}"})
    assert r.status_code == 403

    ghost_token = create_access_token({"sub": "admin:999"})
    r = client.get("/admin/affiliates/", headers={"Authorization": f"Bearer {ghost_token}"})
    assert r.status_code == 401


# ---------------------------------------------------------
# Affiliati
# ---------------------------------------------------------
def test_create_affiliate_and_reject_duplicate_code(client, db, admin_headers) -> None:
    r = client.post(
        "/admin/affiliates/",
        json={"code": "NEW1", "name": "Nova", "email": "Nova@Example.com", "payout_destination": {"pix": "nova@pix"}},
        headers=admin_headers,
    )
    assert r.status_code == 201
    body = r.json()
    assert body["code"] == "NEW1"
    assert body["tier"] == 1
    assert body["commission_pct"] == 30
    assert body["email"] == "nova@example.com"
    assert body["aliases"] == []

    r = client.post("/admin/affiliates/", json={"code": "NEW1"}, headers=admin_headers)
    assert r.status_code == 409


def test_code_cannot_reuse_an_existing_alias(client, db, admin_headers, affiliate) -> None:
    db.add(AffiliateAlias(affiliate_id=affiliate.id, alias="promo"))
    db.commit()
    r = client.post("/admin/affiliates/", json={"code": "promo"}, headers=admin_headers)
    assert r.status_code == 409


def test_list_affiliates_with_totals_and_active_filter(client, db, admin_headers, affiliate, other_affiliate) -> None:
    _tx(db, affiliate.id, "in_1", TransactionType.COMMISSION, 3000, datetime(2026, 3, 5, 15, tzinfo=timezone.utc))
    _tx(db, affiliate.id, "ch_1", TransactionType.REFUND, -1000, datetime(2026, 3, 20, tzinfo=timezone.utc))
    db.add(CustomerAffiliateLink(customer_id="cus_1", affiliate_id=affiliate.id, source="webhook"))
    db.add(
        MonthlyPayout(
            month=date(2026, 2, 1),
            affiliate_id=affiliate.id,
            total_commission_cents=500,
            total_negative_cents=0,
            total_payable_cents=500,
            status=PayoutStatus.PAID,
        )
    )
    other_affiliate.is_active = False
    db.commit()

    r = client.get("/admin/affiliates/", headers=admin_headers)
    assert r.status_code == 200
    rows = {row["code"]: row for row in r.json()}
    assert rows["AB12"]["total_commission_cents"] == 3000
    assert rows["AB12"]["total_negative_cents"] == 1000
    assert rows["AB12"]["total_paid_cents"] == 500
    assert rows["AB12"]["customers_linked"] == 1
    assert rows["XY99"]["total_commission_cents"] == 0

    r = client.get("/admin/affiliates/?active=no", headers=admin_headers)
    assert [row["code"] for row in r.json()] == ["XY99"]

    r = client.get(f"/admin/affiliates/{affiliate.id}", headers=admin_headers)
    assert r.json()["customers_linked"] == 1
    assert client.get("/admin/affiliates/999", headers=admin_headers).status_code == 404


def test_aliases_are_capped_and_unique(client, db, admin_headers, affiliate, other_affiliate) -> None:
    url = f"/admin/affiliates/{affiliate.id}/aliases"
    created = []
    for alias in ("ana-1", "ana-2", "ana-3"):
        r = client.post(url, json={"alias": alias}, headers=admin_headers)
        assert r.status_code == 201
        created.append(r.json()["id"])

    r = client.post(url, json={"alias": "ana-4"}, headers=admin_headers)
    assert r.status_code == 400

    # token gia' usato da un altro affiliato (codice)
    r = client.post(f"/admin/affiliates/{other_affiliate.id}/aliases", json={"alias": "AB12"}, headers=admin_headers)
    assert r.status_code == 409

    r = client.delete(f"{url}/{created[0]}", headers=admin_headers)
    assert r.status_code == 200
    assert client.delete(f"{url}/{created[0]}", headers=admin_headers).status_code == 404

    # liberato uno slot
    assert client.post(url, json={"alias": "ana-4"}, headers=admin_headers).status_code == 201

    db.expire_all()
    assert sorted(a.alias for a in db.get(Affiliate, affiliate.id).aliases) == ["ana-2", "ana-3", "ana-4"]


def test_toggle_active_and_payout_destination(client, db, admin_headers, affiliate) -> None:
    r = client.patch(f"/admin/affiliates/{affiliate.id}/active", json={"is_active": False}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json()["is_active"] is False

    r = client.patch(
        f"/admin/affiliates/{affiliate.id}/payout-destination",
        json={"payout_destination": {"wise": {"iban": "BR00"}}},
        headers=admin_headers,
    )
    assert r.status_code == 200
    assert r.json()["payout_destination"] == {"wise": {"iban": "BR00"}}

    db.expire_all()
    row = db.get(Affiliate, affiliate.id)
    assert row.is_active is False
    assert row.payout_destination == {"wise": {"iban": "BR00"}}


def test_recompute_tiers_promotes_only(client, db, admin_headers, affiliate, other_affiliate) -> None:
    affiliate.qualifying_sale_count = 20
    other_affiliate.tier = 3
    db.commit()

    r = client.post("/admin/affiliates/recompute-tiers", headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"success": True, "changed": 1}

    db.expire_all()
    assert db.get(Affiliate, affiliate.id).tier == 2
    assert db.get(Affiliate, other_affiliate.id).tier == 3


# ---------------------------------------------------------
# Payout
# ---------------------------------------------------------
def test_payout_aggregate_list_and_mark_paid(client, db, admin_headers, affiliate, other_affiliate) -> None:
    _tx(db, affiliate.id, "in_1", TransactionType.COMMISSION, 3000, datetime(2026, 3, 5, 15, tzinfo=timezone.utc))
    _tx(db, other_affiliate.id, "in_2", TransactionType.COMMISSION, 6000, datetime(2026, 3, 20, 15, tzinfo=timezone.utc))

    r = client.post("/admin/payouts/aggregate", json={"month": "2026-03"}, headers=admin_headers)
    assert r.status_code == 200
    assert r.json() == {"month": "2026-03-01", "generated": 2, "skipped_paid": 0}

    r = client.get("/admin/payouts/?month=2026-03", headers=admin_headers)
    rows = r.json()
    assert [row["affiliate_code"] for row in rows] == ["XY99", "AB12"]
    assert rows[0]["total_payable_cents"] == 6000
    assert rows[0]["status"] == "pending"

    r = client.post(
        "/admin/payouts/mark-paid",
        json={"month": "2026-03", "affiliate_ids": [affiliate.id, other_affiliate.id], "note": "PIX lote 12"},
        headers=admin_headers,
    )
    assert r.status_code == 200
    assert r.json() == {"month": "2026-03-01", "marked": 2}

    r = client.get("/admin/payouts/?status=paid", headers=admin_headers)
    assert {row["paid_note"] for row in r.json()} == {"PIX lote 12"}
    assert client.get("/admin/payouts/?status=pending", headers=admin_headers).json() == []


def test_payout_routes_validate_month(client, admin_headers, affiliate) -> None:
    assert client.get("/admin/payouts/?month=2026-13", headers=admin_headers).status_code == 400
    assert client.post("/admin/payouts/aggregate", json={"month": "marzo"}, headers=admin_headers).status_code == 400
    r = client.post(
        "/admin/payouts/mark-paid",
        json={"month": "2026-03", "affiliate_ids": []},
        headers=admin_headers,
    )
    assert r.status_code == 422


def test_payout_routes_require_admin(client) -> None:
    assert client.get("/admin/payouts/").status_code == 401
    assert client.post("/admin/payouts/mark-paid", json={"month": "2026-03", "affiliate_ids": [1]}).status_code == 401


def test_add_alias_locks_the_affiliate_row_before_counting(db, affiliate) -> None:
    with patch("sqlalchemy.orm.Query.with_for_update", autospec=True, side_effect=Query.with_for_update) as lock:
        add_alias(db, affiliate, "ana-locked")
    db.commit()

    lock.assert_called_once()
    assert db.query(AffiliateAlias).filter(AffiliateAlias.alias == "ana-locked").count() == 1
