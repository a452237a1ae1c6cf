# routers/cron.py

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from app.availability import previous_month
from app.config import settings
from app.db import get_db
from app.ingestion import run_incremental_sync
from app.payouts import aggregate_month
from app.stripe_source import get_commerce_source
from routers.auth_admin import require_cron_secret

router = APIRouter(
    prefix="/cron",
    tags=["Cron"],
    dependencies=[Depends(require_cron_secret)],
)

logger = logging.getLogger(__name__)


def _sync_response(result: dict):
    if result.get("type") == "error":
        raise HTTPException(status_code=500, detail=result.get("message") or "Sync fallita")
    return {
        "success": True,
        "sync_log_id": result.get("sync_log_id"),
        "counts": result.get("counts") or {},
        "errors": result.get("error_list") or [],
    }


# ---------------------------------------------------------
# Sync incrementale (finestra corta, ogni poche ore)
# ---------------------------------------------------------
@router.api_route("/stripe-sync", methods=["GET", "POST"])
def cron_stripe_sync(
    db: Session = Depends(get_db),
    source=Depends(get_commerce_source),
):
    result = run_incremental_sync(db, source, days=settings.cron_sync_days, triggered_by="cron")
    return _sync_response(result)


# ---------------------------------------------------------
# Reconcile giornaliero (finestra ampia)
# ---------------------------------------------------------
@router.api_route("/reconcile", methods=["GET", "POST"])
def cron_reconcile(
    db: Session = Depends(get_db),
    source=Depends(get_commerce_source),
):
    result = run_incremental_sync(db, source, days=settings.reconcile_days, triggered_by="reconcile")
    return _sync_response(result)


# ---------------------------------------------------------
# Payout mensili: aggrega il mese civile precedente
# ---------------------------------------------------------
@router.api_route("/monthly-payouts", methods=["GET", "POST"])
def cron_monthly_payouts(db: Session = Depends(get_db)):
    return {"success": True, **aggregate_month(db, previous_month())}
