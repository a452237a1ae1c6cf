from sqlalchemy import Column, Integer, String, DateTime, Enum, JSON, Text
from sqlalchemy.sql import func
import enum

from models import Base


class IngestionEventStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    SKIPPED = "skipped"


def _enum_values(e):
    return [m.value for m in e]


class IngestionEvent(Base):
    """
    Registro di idempotenza per il webhook: la riconsegna dello stesso
    evento (stesso event_id) e' un no-op.
    """
    __tablename__ = "ingestion_events"

    id = Column(Integer, primary_key=True, index=True)

    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=True)

    status = Column(
        Enum(IngestionEventStatus, values_callable=_enum_values, name="ingestion_event_status"),
        nullable=False,
        default=IngestionEventStatus.PENDING,
    )

    payload = Column(JSON, nullable=True)
    error = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    processed_at = Column(DateTime(timezone=True), nullable=True)
