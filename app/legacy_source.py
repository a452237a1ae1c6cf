# app/legacy_source.py
"""
Client HTTP del sistema affiliati legacy (Rewardful), usato SOLO dal backfill.

Interfaccia "legacy source" (implementata anche dai fake nei test):

    iter_affiliates() -> dict {id, email, first_name, last_name, token}
    iter_referrals()  -> dict {id, stripe_customer_id, affiliate: {id}}
"""

from __future__ import annotations

import logging
from typing import Any, Iterator, Optional

import requests

from app.config import settings
from app.errors import LegacySourceError

logger = logging.getLogger(__name__)

PER_PAGE = 100


class RewardfulClient:
    def __init__(
        self,
        api_secret: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        self.api_secret = api_secret if api_secret is not None else settings.rewardful_api_secret
        self.base_url = (base_url or settings.rewardful_api_url).rstrip("/")
        self.timeout = timeout or settings.legacy_timeout_seconds
        self.session = session or requests.Session()

    def _get(self, endpoint: str, params: dict[str, Any]) -> dict:
        if not self.api_secret:
            raise LegacySourceError("REWARDFUL_API_SECRET non configurato")

        try:
            r = self.session.get(
                f"{self.base_url}{endpoint}",
                params=params,
                headers={
                    "Authorization": f"Bearer {self.api_secret}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise LegacySourceError(f"Rewardful request failed: {e}") from e

        if r.status_code >= 300:
            raise LegacySourceError(f"Rewardful API error: {r.status_code} {r.text[:200]}")

        try:
            return r.json()
        except ValueError as e:
            raise LegacySourceError(f"Rewardful invalid JSON on {endpoint}") from e

    def _paginate(self, endpoint: str) -> Iterator[dict]:
        page = 1
        while True:
            body = self._get(endpoint, {"per_page": PER_PAGE, "page": page})
            for item in body.get("data") or []:
                yield item

            next_page = (body.get("pagination") or {}).get("next_page")
            if not next_page:
                return
            page = int(next_page)

    def iter_affiliates(self) -> Iterator[dict]:
        return self._paginate("/affiliates")

    def iter_referrals(self) -> Iterator[dict]:
        return self._paginate("/referrals")


def get_legacy_source() -> RewardfulClient:
    """Dependency FastAPI (sostituita dai fake nei test)."""
    return RewardfulClient()
