from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import structlog

from app.config import settings
from app.database.models import TokenBucket


logger = structlog.get_logger(__name__)

# (max unit price in cents, tokens); anything above the last bound gets LARGE_PACK_TOKENS
PRICE_TIER_FALLBACK: tuple[tuple[int, int], ...] = ((1000, 7000), (5000, 40000))
LARGE_PACK_TOKENS = 100000

ADDON_PRICE_MARKERS = ('addon', 'add-on')


class PriceCatalog:
    def __init__(self, token_amounts: Mapping[str, int] | None = None):
        source = settings.TOKEN_CATALOG if token_amounts is None else token_amounts
        self._token_amounts = {str(key): int(value) for key, value in source.items()}

    def __contains__(self, price_id: str) -> bool:
        return self.lookup(price_id) is not None

    def lookup(self, price_id: str | None) -> int | None:
        """Exact key match, then the first catalog key found inside ``price_id``."""
        if not price_id:
            return None
        if price_id in self._token_amounts:
            return self._token_amounts[price_id]
        for key, tokens in self._token_amounts.items():
            if key in price_id:
                return tokens
        return None

    def resolve_tokens(
        self,
        price_id: str | None,
        *,
        metadata: Mapping[str, Any] | None = None,
        unit_amount: int | None = None,
    ) -> int:
        tokens = self.lookup(price_id)
        if tokens is not None:
            return tokens

        raw = (metadata or {}).get('tokens')
        if raw not in (None, ''):
            try:
                return int(raw)
            except (TypeError, ValueError):
                logger.warning('Ignoring non-numeric tokens metadata', price_id=price_id, tokens=raw)

        cents = int(unit_amount or 0)
        for bound, tier_tokens in PRICE_TIER_FALLBACK:
            if cents <= bound:
                return tier_tokens
        return LARGE_PACK_TOKENS

    @staticmethod
    def resolve_bucket(price_id: str | None, *, metadata: Mapping[str, Any] | None = None) -> TokenBucket:
        declared = (metadata or {}).get('token_type')
        if declared:
            try:
                return TokenBucket.parse(str(declared))
            except ValueError:
                logger.warning('Ignoring unknown token_type metadata', price_id=price_id, token_type=declared)
        lowered = (price_id or '').lower()
        if any(marker in lowered for marker in ADDON_PRICE_MARKERS):
            return TokenBucket.ADDONS
        return TokenBucket.SUBSCRIPTION
