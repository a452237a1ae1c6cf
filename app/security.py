# app/security.py

from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import jwt, JWTError

from app.config import settings

ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24  # 24 ore


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    """
    Usato dal pannello admin esterno (e dai test) per emettere token
    con sub = "admin:<id>". Il login non vive in questo servizio.
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Optional[str]:
    """
    Ritorna il 'sub' se il token è valido, altrimenti None.
    """
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    sub = payload.get("sub")
    if sub is None:
        return None
    return str(sub)
