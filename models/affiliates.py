from sqlalchemy import Column, Integer, String, DateTime, Boolean, ForeignKey, JSON
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from models import Base


# Tier -> percentuale commissione (snapshot salvato su ogni transazione)
TIER_COMMISSION_PCT: dict[int, int] = {
    1: 30,
    2: 35,
    3: 40,
}

MAX_LIVE_ALIASES = 3


class Affiliate(Base):
    __tablename__ = "affiliates"

    id = Column(Integer, primary_key=True, index=True)

    # Codice referral leggibile (es. "AB12"). Il legacy puo' contenere
    # piu' codici separati da ";"
    code = Column(String(255), nullable=False, unique=True)

    name = Column(String(150), nullable=True)
    email = Column(String(255), nullable=True, index=True)

    # 1 / 2 / 3 -> 30% / 35% / 40%
    tier = Column(Integer, nullable=False, default=1, server_default="1")

    # Monotono: +1 alla prima commissione di ogni subscription
    qualifying_sale_count = Column(Integer, nullable=False, default=0, server_default="0")

    is_active = Column(Boolean, nullable=False, default=True)

    # Destinazione payout (opaca: pix key, dettagli wise, ...)
    payout_destination = Column(JSON, nullable=True)

    # Id nel sistema legacy (Rewardful), solo per affiliati migrati
    legacy_id = Column(String(100), nullable=True, unique=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    aliases = relationship(
        "AffiliateAlias",
        back_populates="affiliate",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def commission_pct(self) -> int:
        return TIER_COMMISSION_PCT.get(int(self.tier or 1), TIER_COMMISSION_PCT[1])


class AffiliateAlias(Base):
    """
    Token secondario (creato dall'affiliato) usato come chiave alternativa
    di attribuzione. Massimo MAX_LIVE_ALIASES per affiliato.
    """
    __tablename__ = "affiliate_aliases"

    id = Column(Integer, primary_key=True, index=True)

    affiliate_id = Column(Integer, ForeignKey("affiliates.id", ondelete="CASCADE"), nullable=False, index=True)

    alias = Column(String(100), nullable=False, unique=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())

    affiliate = relationship("Affiliate", back_populates="aliases")
