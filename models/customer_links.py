from sqlalchemy import Column, Integer, String, DateTime, ForeignKey
from sqlalchemy.sql import func

from models import Base


class CustomerAffiliateLink(Base):
    """
    First-touch: customer esterno -> affiliato.
    Creato una sola volta (PK su customer_id), MAI aggiornato.
    """
    __tablename__ = "customer_affiliate_links"

    customer_id = Column(String(255), primary_key=True)

    affiliate_id = Column(Integer, ForeignKey("affiliates.id"), nullable=False, index=True)

    # Quale pipeline ha creato il link (webhook / sync / resync / backfill)
    source = Column(String(50), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
