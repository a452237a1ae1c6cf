# routers/auth_admin.py

import hmac
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.config import settings
from app.db import get_db
from app.security import decode_access_token
from models.admin import Admin
from schemas.admin import AdminOut

router = APIRouter(prefix="/admin", tags=["Admin Auth"])

# Schema di sicurezza HTTP Bearer per gli admin
admin_bearer_scheme = HTTPBearer(auto_error=False)


# -------------------------------------------------
# Dependency: controlla che il token sia di un admin
# -------------------------------------------------
def get_current_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(admin_bearer_scheme),
    db: Session = Depends(get_db),
):
    """
    Legge il token JWT dall'header Authorization: Bearer <token>,
    verifica che il 'sub' inizi con 'admin:' e restituisce l'oggetto Admin.
    """
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token admin mancante.",
        )

    subject = decode_access_token(credentials.credentials)
    if subject is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token admin non valido.",
        )

    if not subject.startswith("admin:"):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Accesso negato: token non admin.",
        )

    # estraiamo l'ID numerico dopo "admin:"
    try:
        admin_id = int(subject.split(":", 1)[1])
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token admin corrotto.",
        )

    admin = db.query(Admin).filter(Admin.id == admin_id).first()
    if not admin or not admin.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin non trovato.",
        )

    return admin


# -------------------------------------------------
# Dependency: scheduler esterno (Authorization: Bearer <CRON_SECRET>)
# -------------------------------------------------
def require_cron_secret(authorization: Optional[str] = Header(default=None)) -> None:
    if not settings.cron_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="CRON_SECRET non configurato",
        )

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Non autorizzato",
        )


# ------------------------------
# GET /admin/me
# ------------------------------
@router.get("/me", response_model=AdminOut)
def admin_me(admin: Admin = Depends(get_current_admin)):
    return admin
