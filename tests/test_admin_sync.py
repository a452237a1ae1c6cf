from __future__ import annotations

import json

from app.ingestion import SyncRunner
from models.sync_logs import SyncLog
from models.transactions import Transaction
from tests import factories as f


def _events(response) -> list[dict]:
    return [json.loads(line[len("data: "):]) for line in response.text.splitlines() if line.startswith("data: ")]


def _seed(source) -> None:
    source.records["customers"] = [f.customer("cus_1", {"Link": "AB12"})]
    source.records["invoices"] = [
        f.invoice("in_1", "cus_1", subscription_id="sub_1", charge_id="ch_1"),
        f.invoice("in_2", "cus_1", subscription_id="sub_1", charge_id="ch_2", paid_at=f.ts(2026, 4, 10)),
    ]


def test_resync_requires_admin(client, commerce_source) -> None:
    assert client.post("/admin/sync/resync", json={"days": 30}).status_code == 401
    assert client.post(
        "/admin/sync/resync", json={"days": 30}, headers={"Authorization": "Bearer not-a-jwt"}
    ).status_code == 401


def test_resync_rejects_out_of_range_window(client, commerce_source, admin_headers) -> None:
    assert client.post("/admin/sync/resync", json={"days": 0}, headers=admin_headers).status_code == 400
    assert client.post("/admin/sync/resync", json={"days": 366}, headers=admin_headers).status_code == 400


def test_resync_streams_progress_and_is_idempotent(client, db, commerce_source, admin_headers, affiliate) -> None:
    _seed(commerce_source)

    r = client.post("/admin/sync/resync", json={"days": 90}, headers=admin_headers)
    assert r.status_code == 200
    assert r.headers["content-type"].startswith("text/event-stream")

    events = _events(r)
    assert events[0]["type"] == "start"
    assert events[-1]["type"] == "complete"
    steps = {e["step"] for e in events if e["type"] == "progress"}
    assert {"customers", "subscriptions", "invoices", "refunds", "disputes", "tiers"} <= steps
    assert events[-1]["counts"]["invoices_synced"] == 2

    # secondo run sulla stessa finestra: nessuna nuova riga
    again = _events(client.post("/admin/sync/resync", json={"days": 90}, headers=admin_headers))
    assert again[-1]["counts"]["invoices_synced"] == 0
    assert db.query(Transaction).count() == 2

    logs = client.get("/admin/sync/logs", headers=admin_headers).json()
    assert [log["status"] for log in logs] == ["completed", "completed"]
    assert logs[0]["triggered_by"] == "manual"
    assert logs[0]["days_synced"] == 90


def test_interrupted_run_keeps_committed_work_and_marks_log(db, commerce_source, affiliate) -> None:
    _seed(commerce_source)

    events = SyncRunner(db, commerce_source, triggered_by="manual").run(30)
    seen = []
    for event in events:
        seen.append(event)
        if event["step"] == "invoices" and event["message"].endswith("record)"):
            break
    events.close()

    db.expire_all()
    log = db.query(SyncLog).one()
    assert log.status == "interrupted"
    assert log.finished_at is not None
    assert db.query(Transaction).count() == 2

    # restart dall'inizio: converge senza duplicati
    final = list(SyncRunner(db, commerce_source, triggered_by="manual").run(30))[-1]
    assert final["type"] == "complete"
    assert db.query(Transaction).count() == 2


def test_listing_failure_ends_run_with_error(db, commerce_source, affiliate) -> None:
    class BrokenListing(f.FakeCommerceSource):
        def iter_records(self, kind, since):
            if kind == "refunds":
                raise RuntimeError("stripe unavailable")
            return super().iter_records(kind, since)

    source = BrokenListing()
    source.records = commerce_source.records
    _seed(source)

    events = list(SyncRunner(db, source, triggered_by="manual").run(30))
    assert events[-1]["type"] == "error"
    assert "stripe unavailable" in events[-1]["message"]

    db.expire_all()
    log = db.query(SyncLog).one()
    assert log.status == "error"
    assert log.error_message == "stripe unavailable"
    # le fatture elaborate prima dell'errore restano
    assert db.query(Transaction).count() == 2
