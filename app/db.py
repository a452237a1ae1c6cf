# app/db.py

from __future__ import annotations

import logging
from typing import Any, Iterable, Optional

from sqlalchemy import create_engine
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings

logger = logging.getLogger(__name__)

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(
    settings.database_url,
    pool_pre_ping=True,
    connect_args=_connect_args,
)

SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


# --------------------------------------------------
# INSERT-IF-ABSENT / UPSERT (vincoli unique a livello DB)
# --------------------------------------------------
def _dialect_insert(db: Session):
    name = db.get_bind().dialect.name
    if name == "postgresql":
        return postgresql.insert
    if name == "sqlite":
        return sqlite.insert
    return None


def insert_if_absent(
    db: Session,
    model: Any,
    values: dict[str, Any],
    conflict_columns: Iterable[str],
) -> bool:
    """
    INSERT atomico: se il vincolo unique su conflict_columns esiste gia',
    non fa nulla. Ritorna True solo se la riga e' stata inserita davvero.
    Non fa commit: resta dentro la transazione del chiamante.
    """
    insert = _dialect_insert(db)
    if insert is not None:
        stmt = (
            insert(model.__table__)
            .values(**values)
            .on_conflict_do_nothing(index_elements=list(conflict_columns))
        )
        result = db.execute(stmt)
        return (result.rowcount or 0) == 1

    # Altri dialetti: SAVEPOINT + IntegrityError
    try:
        with db.begin_nested():
            db.execute(model.__table__.insert().values(**values))
        return True
    except IntegrityError:
        logger.debug("insert_if_absent: conflict on %s %s", model.__tablename__, list(conflict_columns))
        return False


def upsert_unless(
    db: Session,
    model: Any,
    values: dict[str, Any],
    conflict_columns: Iterable[str],
    update_columns: Iterable[str],
    where: Optional[Any] = None,
) -> int:
    """
    INSERT ... ON CONFLICT DO UPDATE, con condizione opzionale sulla riga
    esistente (es. payout gia' pagato -> nessuna modifica).
    Ritorna le righe scritte: 0 se la condizione ha bloccato l'update.
    """
    insert = _dialect_insert(db)
    conflict_columns = list(conflict_columns)
    update_columns = list(update_columns)

    if insert is not None:
        stmt = insert(model.__table__).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=conflict_columns,
            set_={c: getattr(stmt.excluded, c) for c in update_columns},
            where=where,
        )
        result = db.execute(stmt)
        return int(result.rowcount or 0)

    if insert_if_absent(db, model, values, conflict_columns):
        return 1

    q = db.query(model)
    for c in conflict_columns:
        q = q.filter(getattr(model, c) == values[c])
    if where is not None:
        q = q.filter(where)
    return int(q.update({c: values[c] for c in update_columns}, synchronize_session=False) or 0)
