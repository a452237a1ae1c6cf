from sqlalchemy import Column, Integer, String, DateTime, JSON, Text
from sqlalchemy.sql import func

from models import Base


class SyncLog(Base):
    """Run-log di sync schedulata / resync manuale / backfill."""
    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)

    days_synced = Column(Integer, nullable=True)

    # cron | reconcile | manual | backfill
    triggered_by = Column(String(50), nullable=False)

    # running | completed | error | interrupted
    status = Column(String(20), nullable=False, default="running")

    customers_scanned = Column(Integer, nullable=False, default=0)
    customers_linked = Column(Integer, nullable=False, default=0)
    subscriptions_synced = Column(Integer, nullable=False, default=0)
    invoices_synced = Column(Integer, nullable=False, default=0)
    refunds_synced = Column(Integer, nullable=False, default=0)
    disputes_synced = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)
    errors = Column(JSON, nullable=True)

    started_at = Column(DateTime(timezone=True), server_default=func.now())
    finished_at = Column(DateTime(timezone=True), nullable=True)
