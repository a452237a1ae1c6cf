# models/admin.py

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Integer, String

from . import Base  # Importiamo Base dal package models


class Admin(Base):
    __tablename__ = "admins"

    id = Column(Integer, primary_key=True, index=True)

    email = Column(String, unique=True, index=True, nullable=False)

    # Il login vive fuori da questo servizio: qui basta sapere se l'admin
    # del token esiste ed e' attivo
    is_active = Column(Boolean, default=True, nullable=False)

    is_superadmin = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
