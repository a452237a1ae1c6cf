# app/availability.py
"""
Calendario di disponibilita' delle commissioni.

Tutto il calcolo avviene in UN solo fuso orario civile
(settings.business_timezone, default America/Sao_Paulo), indipendente dal
fuso della macchina:

- pagamento tra il giorno 01 e il 15  -> disponibile il 05 del mese successivo, ore 12:00
- pagamento tra il giorno 16 e fine mese -> disponibile il 20 del mese successivo, ore 12:00
"""

from __future__ import annotations

from datetime import date, datetime, time, timezone
from functools import lru_cache
from typing import Optional
from zoneinfo import ZoneInfo

from app.config import settings

FIRST_WINDOW_LAST_DAY = 15
FIRST_WINDOW_RELEASE_DAY = 5
SECOND_WINDOW_RELEASE_DAY = 20
RELEASE_TIME = time(12, 0)


@lru_cache(maxsize=8)
def _zone(name: str) -> ZoneInfo:
    return ZoneInfo(name)


def business_tz(tz_name: Optional[str] = None) -> ZoneInfo:
    return _zone(tz_name or settings.business_timezone)


def as_utc(dt: datetime) -> datetime:
    """Datetime naive = UTC (SQLite restituisce datetime naive)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _next_month(year: int, month: int) -> tuple[int, int]:
    if month == 12:
        return year + 1, 1
    return year, month + 1


def compute_available_at(paid_at: datetime, tz_name: Optional[str] = None) -> datetime:
    tz = business_tz(tz_name)
    local = as_utc(paid_at).astimezone(tz)

    year, month = _next_month(local.year, local.month)
    day = FIRST_WINDOW_RELEASE_DAY if local.day <= FIRST_WINDOW_LAST_DAY else SECOND_WINDOW_RELEASE_DAY

    release = datetime.combine(date(year, month, day), RELEASE_TIME, tzinfo=tz)
    return release.astimezone(timezone.utc)


def month_of(dt: datetime, tz_name: Optional[str] = None) -> date:
    """Primo giorno del mese civile che contiene dt."""
    local = as_utc(dt).astimezone(business_tz(tz_name))
    return date(local.year, local.month, 1)


def month_bounds(month: date, tz_name: Optional[str] = None) -> tuple[datetime, datetime]:
    """Intervallo UTC semi-aperto [inizio, inizio mese successivo)."""
    tz = business_tz(tz_name)
    start = datetime.combine(date(month.year, month.month, 1), time(0, 0), tzinfo=tz)
    ny, nm = _next_month(month.year, month.month)
    end = datetime.combine(date(ny, nm, 1), time(0, 0), tzinfo=tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def previous_month(now: Optional[datetime] = None, tz_name: Optional[str] = None) -> date:
    current = month_of(now or utcnow(), tz_name)
    if current.month == 1:
        return date(current.year - 1, 12, 1)
    return date(current.year, current.month - 1, 1)


def parse_month(value: str) -> date:
    """Accetta "YYYY-MM" oppure "YYYY-MM-DD" (il giorno viene ignorato)."""
    parts = str(value).strip().split("-")
    if len(parts) < 2:
        raise ValueError(f"Invalid month: {value!r}")
    return date(int(parts[0]), int(parts[1]), 1)
