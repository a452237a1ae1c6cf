# routers/admin_affiliates.py

from typing import List, Optional
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.affiliates import TokenInUseError, add_alias, affiliate_totals, create_affiliate, remove_alias
from app.db import get_db
from app.errors import AliasLimitError
from app.ledger import apply_tier_policy
from models.affiliates import Affiliate
from routers.auth_admin import get_current_admin
from schemas.affiliates import (
    AffiliateActiveUpdate,
    AffiliateCreate,
    AffiliateOut,
    AffiliateWithTotals,
    AliasCreate,
    AliasOut,
    PayoutDestinationUpdate,
)

router = APIRouter(
    prefix="/admin/affiliates",
    tags=["Admin Affiliates"],
)

logger = logging.getLogger(__name__)


def parse_bool(val: str | None) -> Optional[bool]:
    """
    Parsing robusto per querystring:
    true/false, 1/0, yes/no, y/n, on/off
    Se val è None, vuota o invalida -> None (non filtra)
    """
    if val is None:
        return None
    s = str(val).strip().lower()
    if s in ("true", "1", "yes", "y", "on"):
        return True
    if s in ("false", "0", "no", "n", "off"):
        return False
    return None


def _get_or_404(db: Session, affiliate_id: int) -> Affiliate:
    affiliate = db.query(Affiliate).filter(Affiliate.id == affiliate_id).first()
    if not affiliate:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Affiliato non trovato.",
        )
    return affiliate


# ---------------------------------------------------------
# 1️⃣ LISTA AFFILIATI CON TOTALI
#    + filtro robusto ?active=true/false
# ---------------------------------------------------------
@router.get("/", response_model=List[AffiliateWithTotals])
def admin_list_affiliates(
    active: Optional[str] = Query(
        default=None,
        description="Filtra is_active: true/false (accetta anche 1/0, yes/no, on/off)",
    ),
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    q = db.query(Affiliate).order_by(Affiliate.created_at.desc(), Affiliate.id.desc())

    active_bool = parse_bool(active)
    if active_bool is True:
        q = q.filter(Affiliate.is_active.is_(True))
    elif active_bool is False:
        q = q.filter(Affiliate.is_active.is_(False))

    affiliates = q.all()
    totals = affiliate_totals(db, [a.id for a in affiliates]) if affiliates else {}

    out = []
    for a in affiliates:
        item = AffiliateWithTotals.model_validate(a)
        for key, value in totals.get(a.id, {}).items():
            setattr(item, key, value)
        out.append(item)
    return out


# ---------------------------------------------------------
# 2️⃣ CREA AFFILIATO
# ---------------------------------------------------------
@router.post("/", response_model=AffiliateOut, status_code=status.HTTP_201_CREATED)
def admin_create_affiliate(
    payload: AffiliateCreate,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    try:
        return create_affiliate(
            db,
            code=payload.code,
            name=payload.name,
            email=payload.email,
            tier=payload.tier,
            payout_destination=payload.payout_destination,
        )
    except TokenInUseError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ---------------------------------------------------------
# 3️⃣ RICALCOLO TIER (promozione secondo le vendite)
# ---------------------------------------------------------
@router.post("/recompute-tiers")
def admin_recompute_tiers(
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    changed = apply_tier_policy(db)
    return {"success": True, "changed": changed}


# ---------------------------------------------------------
# 4️⃣ DETTAGLIO
# ---------------------------------------------------------
@router.get("/{affiliate_id}", response_model=AffiliateWithTotals)
def admin_get_affiliate(
    affiliate_id: int,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    affiliate = _get_or_404(db, affiliate_id)
    item = AffiliateWithTotals.model_validate(affiliate)
    for key, value in affiliate_totals(db, [affiliate.id]).get(affiliate.id, {}).items():
        setattr(item, key, value)
    return item


# ---------------------------------------------------------
# 5️⃣ ATTIVA / DISATTIVA
# ---------------------------------------------------------
@router.patch("/{affiliate_id}/active", response_model=AffiliateOut)
def admin_set_affiliate_active(
    affiliate_id: int,
    payload: AffiliateActiveUpdate,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    affiliate = _get_or_404(db, affiliate_id)
    affiliate.is_active = payload.is_active
    db.commit()
    db.refresh(affiliate)
    logger.info("Affiliate %s active=%s (admin=%s)", affiliate.id, affiliate.is_active, admin.id)
    return affiliate


# ---------------------------------------------------------
# 6️⃣ DESTINAZIONE PAYOUT
# ---------------------------------------------------------
@router.patch("/{affiliate_id}/payout-destination", response_model=AffiliateOut)
def admin_set_payout_destination(
    affiliate_id: int,
    payload: PayoutDestinationUpdate,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    affiliate = _get_or_404(db, affiliate_id)
    affiliate.payout_destination = payload.payout_destination
    db.commit()
    db.refresh(affiliate)
    return affiliate


# ---------------------------------------------------------
# 7️⃣ ALIAS (massimo 3 per affiliato)
# ---------------------------------------------------------
@router.post("/{affiliate_id}/aliases", response_model=AliasOut, status_code=status.HTTP_201_CREATED)
def admin_add_alias(
    affiliate_id: int,
    payload: AliasCreate,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    affiliate = _get_or_404(db, affiliate_id)
    try:
        alias = add_alias(db, affiliate, payload.alias)
    except TokenInUseError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except (AliasLimitError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    db.commit()
    db.refresh(alias)
    return alias


@router.delete("/{affiliate_id}/aliases/{alias_id}")
def admin_remove_alias(
    affiliate_id: int,
    alias_id: int,
    db: Session = Depends(get_db),
    admin=Depends(get_current_admin),
):
    _get_or_404(db, affiliate_id)
    if not remove_alias(db, affiliate_id, alias_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Alias non trovato.")
    return {"success": True}
