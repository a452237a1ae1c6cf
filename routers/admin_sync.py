# routers/admin_sync.py

import json
import logging
from contextlib import closing
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.config import settings
from app.db import SessionLocal, get_db
from app.ingestion import BackfillRunner, SyncRunner
from app.legacy_source import get_legacy_source
from app.stripe_source import get_commerce_source
from models.sync_logs import SyncLog
from routers.auth_admin import get_current_admin
from schemas.sync import ResyncRequest, SyncLogOut

router = APIRouter(
    prefix="/admin/sync",
    tags=["Admin Sync"],
)

logger = logging.getLogger(__name__)


def _event_stream(make_runner, days=None):
    """
    Server-Sent Events: una riga "data: {json}" per evento progress.
    Sessione DB propria: vive quanto lo stream, non quanto la request.
    """
    def gen():
        db = SessionLocal()
        try:
            with closing(make_runner(db).run(days)) as events:
                for event in events:
                    yield f"data: {json.dumps(event, default=str)}\n\n"
        finally:
            db.close()

    return StreamingResponse(
        gen(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# ---------------------------------------------------------
# POST /admin/sync/resync -> resync ampia con stream di progress
# ---------------------------------------------------------
@router.post("/resync")
def admin_resync(
    payload: ResyncRequest,
    admin=Depends(get_current_admin),
    source=Depends(get_commerce_source),
):
    days = payload.days if payload.days is not None else settings.resync_default_days
    if days < 1 or days > settings.resync_max_days:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"days deve essere tra 1 e {settings.resync_max_days}",
        )

    logger.info("Manual resync requested admin=%s days=%s", admin.id, days)
    return _event_stream(lambda db: SyncRunner(db, source, triggered_by="manual"), days)


# ---------------------------------------------------------
# POST /admin/sync/backfill -> import storico dal sistema legacy
# ---------------------------------------------------------
@router.post("/backfill")
def admin_backfill(
    admin=Depends(get_current_admin),
    source=Depends(get_commerce_source),
    legacy=Depends(get_legacy_source),
):
    logger.info("Legacy backfill requested admin=%s", admin.id)
    return _event_stream(lambda db: BackfillRunner(db, source, legacy))


# ---------------------------------------------------------
# GET /admin/sync/logs -> ultimi run
# ---------------------------------------------------------
@router.get("/logs", response_model=List[SyncLogOut])
def admin_sync_logs(
    limit: int = Query(default=20, ge=1, le=200),
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    return db.query(SyncLog).order_by(SyncLog.id.desc()).limit(limit).all()
