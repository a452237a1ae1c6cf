# app/ingestion.py
"""
Pipeline di ingestione. Tutte convergono su LedgerBuilder.apply():

- webhook real-time      -> process_webhook_event()
- sync schedulata        -> run_incremental_sync()  (SyncRunner, drenato)
- resync manuale ampia   -> SyncRunner.run()        (stream di progress)
- backfill storico       -> BackfillRunner.run()    (stream di progress)

I runner sono generatori di eventi progress:
    {"type": start|progress|complete|error, "step", "message", "counts", ...}
Un errore su un singolo record viene registrato e il batch continua.
Se il consumer chiude il generatore (client disconnesso) il SyncLog
viene marcato "interrupted": i record gia' committati restano, un nuovo
run sulla stessa finestra e' sicuro (idempotenza del ledger).
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Iterator, Optional

from sqlalchemy.orm import Session

from app.affiliates import add_alias, token_in_use
from app.attribution import AttributionResolver
from app.availability import utcnow
from app.config import settings
from app.db import insert_if_absent
from app.errors import AliasLimitError, UpstreamLookupError
from app.ledger import ApplyOutcome, LedgerBuilder, apply_tier_policy
from app.payouts import synthesize_paid_history
from models.affiliates import Affiliate
from models.customer_links import CustomerAffiliateLink
from models.ingestion_events import IngestionEvent, IngestionEventStatus
from models.sync_logs import SyncLog

logger = logging.getLogger(__name__)

SYNC_RECORD_KINDS = ("customers", "subscriptions", "invoices", "refunds", "disputes")

PROGRESS_EVERY = 100

RUN_RUNNING = "running"
RUN_COMPLETED = "completed"
RUN_ERROR = "error"
RUN_INTERRUPTED = "interrupted"

# kind -> (colonna SyncLog, esito che incrementa il contatore)
KIND_COUNTERS: dict[str, tuple[str, ApplyOutcome]] = {
    "customers": ("customers_linked", ApplyOutcome.LINKED),
    "subscriptions": ("subscriptions_synced", ApplyOutcome.UPDATED),
    "invoices": ("invoices_synced", ApplyOutcome.CREATED),
    "refunds": ("refunds_synced", ApplyOutcome.CREATED),
    "disputes": ("disputes_synced", ApplyOutcome.CREATED),
}

SYNC_LOG_COUNT_COLUMNS = (
    "customers_scanned",
    "customers_linked",
    "subscriptions_synced",
    "invoices_synced",
    "refunds_synced",
    "disputes_synced",
)


# =====================================================
# WEBHOOK: registro di idempotenza
# =====================================================
class IngestionEventStore:
    def __init__(self, db: Session):
        self.db = db

    def begin(self, event_id: str, event_type: Optional[str] = None, payload: Any = None) -> bool:
        """
        Registra l'evento (pending) se nuovo. Ritorna False se l'evento e'
        gia' stato processato (o scartato): la riconsegna e' un no-op.
        """
        insert_if_absent(
            self.db,
            IngestionEvent,
            {
                "event_id": event_id,
                "event_type": event_type,
                "status": IngestionEventStatus.PENDING,
                "payload": payload,
            },
            ["event_id"],
        )
        self.db.commit()

        status = (
            self.db.query(IngestionEvent.status)
            .filter(IngestionEvent.event_id == event_id)
            .scalar()
        )
        return status not in (IngestionEventStatus.PROCESSED, IngestionEventStatus.SKIPPED)

    def _set(self, event_id: str, status: IngestionEventStatus, error: Optional[str] = None) -> int:
        values: dict[str, Any] = {"status": status, "error": error}
        if status == IngestionEventStatus.PROCESSED:
            values["processed_at"] = utcnow()
        updated = (
            self.db.query(IngestionEvent)
            .filter(
                IngestionEvent.event_id == event_id,
                IngestionEvent.status != IngestionEventStatus.PROCESSED,
            )
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        return int(updated or 0)

    def mark_processed(self, event_id: str) -> int:
        return self._set(event_id, IngestionEventStatus.PROCESSED)

    def mark_failed(self, event_id: str, reason: str) -> int:
        return self._set(event_id, IngestionEventStatus.FAILED, reason[:2000])

    def mark_skipped(self, event_id: str, reason: Optional[str] = None) -> int:
        return self._set(event_id, IngestionEventStatus.SKIPPED, reason)


def process_webhook_event(db: Session, event: dict, source: Any) -> dict:
    """
    Evento webhook gia' verificato -> ledger.
    Le eccezioni inattese vengono propagate dopo aver marcato l'evento
    "failed": il router risponde 500 e la piattaforma ritenta la consegna.
    """
    event_id = event.get("id")
    event_type = event.get("type")
    if not event_id:
        raise ValueError("Webhook event without id")

    store = IngestionEventStore(db)
    if not store.begin(event_id, event_type, payload=event):
        logger.info("Webhook event already processed id=%s type=%s", event_id, event_type)
        return {"received": True, "status": "already_processed"}

    try:
        commerce_events = source.events_from_webhook(event)
    except UpstreamLookupError as e:
        logger.warning("Webhook event skipped id=%s type=%s: %s", event_id, event_type, e)
        store.mark_skipped(event_id, str(e))
        return {"received": True, "status": "skipped"}
    except Exception as e:
        db.rollback()
        store.mark_failed(event_id, f"mapping: {e}")
        raise

    if commerce_events is None:
        store.mark_skipped(event_id, "unhandled event type")
        return {"received": True, "status": "ignored"}

    builder = LedgerBuilder(db, source="webhook")
    outcomes = []
    try:
        for ev in commerce_events:
            outcomes.append(builder.apply(ev).value)
    except Exception as e:
        db.rollback()
        store.mark_failed(event_id, str(e))
        logger.warning("Webhook event failed id=%s type=%s: %s", event_id, event_type, e)
        raise

    store.mark_processed(event_id)
    logger.info("Webhook event processed id=%s type=%s outcomes=%s", event_id, event_type, outcomes)
    return {"received": True, "status": "processed", "outcomes": outcomes}


# =====================================================
# RUNNER BASE (SyncLog + progress + errori per record)
# =====================================================
class _PipelineRunner:
    triggered_by = "manual"

    def __init__(self, db: Session, max_errors: Optional[int] = None):
        self.db = db
        self.max_errors = max_errors or settings.max_batch_errors
        self.counts: dict[str, int] = {c: 0 for c in SYNC_LOG_COUNT_COLUMNS}
        self.errors: list[str] = []
        self.error_total = 0
        self.log_id: Optional[int] = None

    # -----------------------------
    # hooks
    # -----------------------------
    def _steps(self, days: Optional[int]) -> Iterator[dict]:
        raise NotImplementedError

    # -----------------------------
    # helpers
    # -----------------------------
    def _event(self, type_: str, step: Optional[str], message: str, **extra: Any) -> dict:
        payload = {
            "type": type_,
            "step": step,
            "message": message,
            "counts": dict(self.counts),
            "errors": self.error_total,
            "sync_log_id": self.log_id,
        }
        payload.update(extra)
        return payload

    def _record_error(self, kind: str, record_id: str, exc: BaseException) -> None:
        self.error_total += 1
        msg = f"{kind} {record_id}: {exc}"
        if len(self.errors) < self.max_errors:
            self.errors.append(msg)
        logger.warning("Record skipped %s", msg)

    def _save_log(self, status: Optional[str] = None, error_message: Optional[str] = None) -> None:
        log = self.db.get(SyncLog, self.log_id)
        if log is None:
            return
        for column in SYNC_LOG_COUNT_COLUMNS:
            setattr(log, column, self.counts.get(column, 0))
        log.errors = list(self.errors)
        if status is not None:
            log.status = status
            if status != RUN_RUNNING:
                log.finished_at = utcnow()
        if error_message is not None:
            log.error_message = error_message[:2000]
        self.db.commit()

    # -----------------------------
    # run
    # -----------------------------
    def run(self, days: Optional[int] = None) -> Iterator[dict]:
        log = SyncLog(days_synced=days, triggered_by=self.triggered_by, status=RUN_RUNNING)
        self.db.add(log)
        self.db.commit()
        self.log_id = log.id
        logger.info("Run started id=%s triggered_by=%s days=%s", self.log_id, self.triggered_by, days)

        yield self._event("start", None, f"Avvio {self.triggered_by}", days=days)

        finished = False
        try:
            for progress in self._steps(days):
                yield progress

            self._save_log(RUN_COMPLETED)
            finished = True
            logger.info(
                "Run completed id=%s counts=%s errors=%s",
                self.log_id,
                self.counts,
                self.error_total,
            )
            yield self._event("complete", None, "Completato", error_list=list(self.errors))
        except GeneratorExit:
            if not finished:
                self.db.rollback()
                self._save_log(RUN_INTERRUPTED, "Run interrotto dal client")
                logger.warning("Run interrupted id=%s counts=%s", self.log_id, self.counts)
            raise
        except Exception as e:
            logger.exception("Run failed id=%s", self.log_id)
            self.db.rollback()
            self._save_log(RUN_ERROR, str(e))
            finished = True
            yield self._event("error", None, str(e), error_list=list(self.errors))


# =====================================================
# SYNC (schedulata / reconcile / resync manuale)
# =====================================================
class SyncRunner(_PipelineRunner):
    def __init__(
        self,
        db: Session,
        source: Any,
        triggered_by: str = "cron",
        max_errors: Optional[int] = None,
    ):
        super().__init__(db, max_errors=max_errors)
        self.source = source
        self.triggered_by = triggered_by
        self.builder = LedgerBuilder(db, source=triggered_by)

    def _sync_kind(self, kind: str, since) -> Iterator[dict]:
        column, counted_outcome = KIND_COUNTERS[kind]
        seen = 0

        yield self._event("progress", kind, f"Sincronizzazione {kind}...")

        for raw in self.source.iter_records(kind, since):
            seen += 1
            if kind == "customers":
                self.counts["customers_scanned"] += 1
            try:
                event = self.source.to_event(kind, raw)
                if event is None:
                    continue
                outcome = self.builder.apply(event)
            except Exception as e:
                self.db.rollback()
                self._record_error(kind, self.source.record_id(raw), e)
                continue

            if outcome == counted_outcome:
                self.counts[column] += 1

            if seen % PROGRESS_EVERY == 0:
                yield self._event("progress", kind, f"{kind}: {seen} record elaborati")

        self._save_log()
        yield self._event("progress", kind, f"{kind}: completato ({seen} record)")

    def _steps(self, days: Optional[int]) -> Iterator[dict]:
        since = utcnow() - timedelta(days=int(days or settings.cron_sync_days))

        for kind in SYNC_RECORD_KINDS:
            yield from self._sync_kind(kind, since)

        yield self._event("progress", "tiers", "Ricalcolo tier...")
        changed = apply_tier_policy(self.db)
        yield self._event("progress", "tiers", f"Tier aggiornati: {changed}", tiers_changed=changed)


def run_incremental_sync(
    db: Session,
    source: Any,
    days: Optional[int] = None,
    triggered_by: str = "cron",
) -> dict:
    """Sync non interattiva: drena il generatore e ritorna l'ultimo evento."""
    last: dict = {}
    for progress in SyncRunner(db, source, triggered_by=triggered_by).run(days or settings.cron_sync_days):
        last = progress
    return last


# =====================================================
# BACKFILL STORICO (sistema legacy -> ledger)
# =====================================================
class BackfillRunner(_PipelineRunner):
    triggered_by = "backfill"

    def __init__(
        self,
        db: Session,
        commerce_source: Any,
        legacy_source: Any,
        max_errors: Optional[int] = None,
    ):
        super().__init__(db, max_errors=max_errors)
        self.commerce_source = commerce_source
        self.legacy_source = legacy_source
        self.resolver = AttributionResolver(db, source="backfill")
        self.builder = LedgerBuilder(db, resolver=self.resolver, source="backfill")
        self.counts.update({"affiliates_created": 0, "affiliates_reused": 0, "payouts_created": 0})
        # legacy affiliate id -> affiliates.id
        self.affiliate_map: dict[str, int] = {}

    # -----------------------------
    # step 1: affiliati
    # -----------------------------
    def _find_existing(self, legacy_id: str, token: str, email: Optional[str]) -> Optional[Affiliate]:
        affiliate = self.db.query(Affiliate).filter(Affiliate.legacy_id == legacy_id).first()
        if affiliate:
            return affiliate
        if token:
            # codice, lista legacy ";" o alias gia' assegnato: il token ha gia' un proprietario
            owner_id = self.resolver.find_affiliate_by_token(token)
            if owner_id is not None:
                return self.db.get(Affiliate, owner_id)
        if email:
            return self.db.query(Affiliate).filter(Affiliate.email == email).first()
        return None

    def _keep_token_as_alias(self, affiliate: Affiliate, token: str) -> None:
        if not token or token_in_use(self.db, token):
            return
        add_alias(self.db, affiliate, token)

    def _migrate_affiliate(self, rw: dict) -> int:
        legacy_id = str(rw["id"])
        token = (rw.get("token") or "").strip()
        email = (rw.get("email") or "").strip().lower() or None
        name = f"{rw.get('first_name') or ''} {rw.get('last_name') or ''}".strip() or None

        affiliate = self._find_existing(legacy_id, token, email)
        if affiliate is None:
            if not token:
                raise ValueError("affiliato legacy senza token")
            insert_if_absent(
                self.db,
                Affiliate,
                {"code": token, "name": name, "email": email, "legacy_id": legacy_id, "tier": 1, "is_active": True},
                ["code"],
            )
            self.db.commit()
            affiliate = self.db.query(Affiliate).filter(Affiliate.code == token).one()
            self.counts["affiliates_created"] += 1
            return affiliate.id

        if not affiliate.legacy_id:
            affiliate.legacy_id = legacy_id
        if not affiliate.name and name:
            affiliate.name = name
        self.db.commit()
        self.counts["affiliates_reused"] += 1

        # Il codice esistente NON viene sovrascritto: il token legacy diventa alias
        try:
            self._keep_token_as_alias(affiliate, token)
            self.db.commit()
        except AliasLimitError as e:
            self.db.rollback()
            self._record_error("affiliate", legacy_id, e)
        return affiliate.id

    # -----------------------------
    # step 2: referral -> link first-touch
    # -----------------------------
    def _migrate_referral(self, referral: dict) -> None:
        customer_id = referral.get("stripe_customer_id")
        legacy_affiliate_id = str((referral.get("affiliate") or {}).get("id") or "")
        if not customer_id or not legacy_affiliate_id:
            return
        affiliate_id = self.affiliate_map.get(legacy_affiliate_id)
        if affiliate_id is None:
            return
        self.counts["customers_scanned"] += 1
        _, created = self.resolver.link_with_status(customer_id, affiliate_id, source="backfill")
        if created:
            self.counts["customers_linked"] += 1

    # -----------------------------
    # step 3: fatture pagate dei customer migrati
    # -----------------------------
    def _replay_customer_invoices(self, customer_id: str) -> None:
        for raw in self.commerce_source.iter_customer_invoices(customer_id):
            try:
                event = self.commerce_source.to_event("invoices", raw)
                if event is None:
                    continue
                outcome = self.builder.apply(event)
            except Exception as e:
                self.db.rollback()
                self._record_error("invoices", self.commerce_source.record_id(raw), e)
                continue
            if outcome == ApplyOutcome.CREATED:
                self.counts["invoices_synced"] += 1

    def _steps(self, days: Optional[int]) -> Iterator[dict]:
        yield self._event("progress", "affiliates", "Import affiliati legacy...")
        for rw in self.legacy_source.iter_affiliates():
            try:
                self.affiliate_map[str(rw["id"])] = self._migrate_affiliate(rw)
            except Exception as e:
                self.db.rollback()
                self._record_error("affiliate", str(rw.get("id") or rw.get("email") or "?"), e)
        yield self._event("progress", "affiliates", f"Affiliati importati: {len(self.affiliate_map)}")

        yield self._event("progress", "referrals", "Import referral...")
        for referral in self.legacy_source.iter_referrals():
            try:
                self._migrate_referral(referral)
            except Exception as e:
                self.db.rollback()
                self._record_error("referral", str(referral.get("id") or "?"), e)
        self._save_log()
        yield self._event("progress", "referrals", f"Customer collegati: {self.counts['customers_linked']}")

        affiliate_ids = sorted(set(self.affiliate_map.values()))
        customer_ids = []
        if affiliate_ids:
            customer_ids = [
                row.customer_id
                for row in self.db.query(CustomerAffiliateLink.customer_id)
                .filter(CustomerAffiliateLink.affiliate_id.in_(affiliate_ids))
                .order_by(CustomerAffiliateLink.customer_id.asc())
                .all()
            ]

        yield self._event("progress", "invoices", f"Fatture di {len(customer_ids)} customer...")
        for n, customer_id in enumerate(customer_ids, start=1):
            try:
                self._replay_customer_invoices(customer_id)
            except Exception as e:
                self.db.rollback()
                self._record_error("customer", customer_id, e)
            if n % PROGRESS_EVERY == 0:
                yield self._event("progress", "invoices", f"{n}/{len(customer_ids)} customer elaborati")
        self._save_log()
        yield self._event("progress", "invoices", f"Commissioni create: {self.counts['invoices_synced']}")

        yield self._event("progress", "tiers", "Ricalcolo tier...")
        changed = apply_tier_policy(self.db, affiliate_ids)
        yield self._event("progress", "tiers", f"Tier aggiornati: {changed}", tiers_changed=changed)

        yield self._event("progress", "payouts", "Storico payout...")
        self.counts["payouts_created"] = synthesize_paid_history(self.db, affiliate_ids)
        yield self._event("progress", "payouts", f"Payout storici: {self.counts['payouts_created']}")
