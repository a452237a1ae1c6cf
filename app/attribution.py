# app/attribution.py

from __future__ import annotations

import logging
from typing import Mapping, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.db import insert_if_absent
from models.affiliates import Affiliate, AffiliateAlias
from models.customer_links import CustomerAffiliateLink

logger = logging.getLogger(__name__)

# -------------------------------------------------
# PRIORITA' CHIAVI METADATA (ordine FISSO)
# "Link"/"link" contengono il codice leggibile, "referral" e' l'ultima
# risorsa (nel legacy era un UUID, non un codice). Il primo valore non
# vuoto vince.
# -------------------------------------------------
REFERRAL_METADATA_KEYS: tuple[str, ...] = (
    "Link",
    "link",
    "via",
    "affiliate_code",
    "ref",
    "referral",
)

LEGACY_CODE_SEPARATOR = ";"


def extract_referral_token(metadata: Optional[Mapping[str, object]]) -> Optional[str]:
    if not metadata:
        return None
    for key in REFERRAL_METADATA_KEYS:
        value = metadata.get(key)
        if value is None:
            continue
        token = str(value).strip()
        if token:
            return token
    return None


class AttributionResolver:
    """
    resolve(customer_id, metadata) -> affiliate_id | None

    Un'istanza per richiesta / per run: la cache contiene SOLO risultati
    positivi. Un "non attribuito" viene sempre ricontrollato sul DB, cosi'
    un link creato a meta' run da un'altra pipeline viene visto subito.
    """

    def __init__(self, db: Session, source: str = "engine"):
        self.db = db
        self.source = source
        self._cache: dict[str, int] = {}

    # -----------------------------
    # lookup
    # -----------------------------
    def linked_affiliate_id(self, customer_id: str) -> Optional[int]:
        if customer_id in self._cache:
            return self._cache[customer_id]

        link = (
            self.db.query(CustomerAffiliateLink)
            .filter(CustomerAffiliateLink.customer_id == customer_id)
            .first()
        )
        if link:
            self._cache[customer_id] = link.affiliate_id
            return link.affiliate_id
        return None

    def find_affiliate_by_token(self, token: str) -> Optional[int]:
        # 1) codice esatto
        affiliate = self.db.query(Affiliate.id).filter(Affiliate.code == token).first()
        if affiliate:
            return affiliate.id

        # 2) codici legacy "A;B;C" (match esatto sull'elemento, case-insensitive)
        needle = token.lower()
        candidates = (
            self.db.query(Affiliate.id, Affiliate.code)
            .filter(Affiliate.code.contains(LEGACY_CODE_SEPARATOR))
            .filter(func.lower(Affiliate.code).contains(needle, autoescape=True))
            .all()
        )
        for row in candidates:
            parts = [c.strip().lower() for c in row.code.split(LEGACY_CODE_SEPARATOR)]
            if needle in parts:
                return row.id

        # 3) alias
        alias = self.db.query(AffiliateAlias.affiliate_id).filter(AffiliateAlias.alias == token).first()
        if alias:
            return alias.affiliate_id

        return None

    # -----------------------------
    # link
    # -----------------------------
    def link(self, customer_id: str, affiliate_id: int, source: Optional[str] = None) -> int:
        """
        Crea il link first-touch (insert-if-absent) e ritorna l'affiliato
        EFFETTIVAMENTE salvato: se un'altra pipeline ha vinto la corsa,
        vale il suo.
        """
        stored, _ = self.link_with_status(customer_id, affiliate_id, source)
        return stored

    def link_with_status(
        self,
        customer_id: str,
        affiliate_id: int,
        source: Optional[str] = None,
    ) -> tuple[int, bool]:
        """Come link(), piu' True se la riga e' stata inserita da questa chiamata."""
        created = insert_if_absent(
            self.db,
            CustomerAffiliateLink,
            {
                "customer_id": customer_id,
                "affiliate_id": affiliate_id,
                "source": source or self.source,
            },
            ["customer_id"],
        )
        self.db.commit()

        stored = (
            self.db.query(CustomerAffiliateLink.affiliate_id)
            .filter(CustomerAffiliateLink.customer_id == customer_id)
            .scalar()
        )
        if created:
            logger.info("First-touch link created customer=%s affiliate=%s source=%s", customer_id, stored, source or self.source)
        elif stored != affiliate_id:
            logger.info(
                "First-touch already owned customer=%s owner=%s candidate=%s",
                customer_id,
                stored,
                affiliate_id,
            )

        self._cache[customer_id] = stored
        return stored, created

    def resolve(self, customer_id: Optional[str], metadata: Optional[Mapping[str, object]] = None) -> Optional[int]:
        if not customer_id:
            return None

        existing = self.linked_affiliate_id(customer_id)
        if existing is not None:
            return existing

        token = extract_referral_token(metadata)
        if not token:
            return None

        affiliate_id = self.find_affiliate_by_token(token)
        if affiliate_id is None:
            logger.info("Referral token not matched token=%s customer=%s", token, customer_id)
            return None

        return self.link(customer_id, affiliate_id)
