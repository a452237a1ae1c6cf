# schemas/sync.py

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel


class ResyncRequest(BaseModel):
    # 1..RESYNC_MAX_DAYS; se assente -> RESYNC_DEFAULT_DAYS
    days: Optional[int] = None


class SyncLogOut(BaseModel):
    id: int
    days_synced: Optional[int] = None
    triggered_by: str
    status: str

    customers_scanned: int = 0
    customers_linked: int = 0
    subscriptions_synced: int = 0
    invoices_synced: int = 0
    refunds_synced: int = 0
    disputes_synced: int = 0

    error_message: Optional[str] = None
    errors: Optional[List[str]] = None

    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    class Config:
        from_attributes = True
