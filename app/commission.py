# app/commission.py

from decimal import Decimal, ROUND_HALF_UP

from models.affiliates import TIER_COMMISSION_PCT

TIER_2_MIN_SALES = 20
TIER_3_MIN_SALES = 50


def commission_pct_for_tier(tier: int | None) -> int:
    return TIER_COMMISSION_PCT.get(int(tier or 1), TIER_COMMISSION_PCT[1])


def tier_for_count(qualifying_sales: int) -> int:
    if qualifying_sales >= TIER_3_MIN_SALES:
        return 3
    if qualifying_sales >= TIER_2_MIN_SALES:
        return 2
    return 1


def calc_commission_cents(amount_cents: int, commission_pct: int) -> int:
    """round(amount * pct / 100) su centesimi interi, half-up."""
    raw = (Decimal(int(amount_cents)) * Decimal(int(commission_pct))) / Decimal("100")
    return int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calc_reversal_cents(amount_cents: int, commission_pct: int) -> int:
    """Storno: -round(|amount| * pct / 100) con la pct della commissione originale."""
    return -calc_commission_cents(abs(int(amount_cents)), commission_pct)
