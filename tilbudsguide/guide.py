from __future__ import annotations

import math
from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence

from tilbudsguide.config import GUIDE_MAX_STORES, GUIDE_SAMPLE_OFFERS
from tilbudsguide.matching import normalize_text, offer_matches_query
from tilbudsguide.models import Offer, SampleOffer, StoreRow


def group_by_store(offers: Iterable[Offer]) -> Dict[str, List[Offer]]:
    groups: Dict[str, List[Offer]] = defaultdict(list)
    for offer in offers:
        key = normalize_text(offer.store)
        if key:
            groups[key].append(offer)
    return groups


def coverage_pct(coverage_count: int, total_queries: int) -> int:
    if total_queries <= 0:
        return 0
    # Halves round up.
    return int(math.floor(coverage_count / total_queries * 100 + 0.5))


def _price_key(offer: Offer) -> tuple[float, str]:
    price = offer.price if offer.price is not None else math.inf
    return price, offer.source_url


def build_store_row(offers: Sequence[Offer], queries: Sequence[str]) -> StoreRow:
    matched: List[str] = []
    qualifying: Dict[str, Offer] = {}
    for query in queries:
        hits = [o for o in offers if offer_matches_query(o.name, query)]
        if hits:
            matched.append(query)
        for offer in hits:
            qualifying.setdefault(offer.source_url, offer)

    ranked = sorted(qualifying.values(), key=_price_key)
    prices = [o.price for o in ranked if o.price is not None]
    best_price: Optional[float] = prices[0] if prices else None

    return StoreRow(
        store=min((o.store or "").strip() for o in offers),
        coverage_count=len(matched),
        coverage_pct=coverage_pct(len(matched), len(queries)),
        matched_items=matched,
        best_price=best_price,
        sample_offers=[SampleOffer.from_offer(o) for o in ranked[:GUIDE_SAMPLE_OFFERS]],
    )


def rank_stores(
    queries: Sequence[str],
    offers: Iterable[Offer],
    max_stores: int = GUIDE_MAX_STORES,
) -> List[StoreRow]:
    """Rank stores by query coverage, then by cheapest matching price."""
    if not queries:
        return []

    keyed_rows = []
    for key, store_offers in group_by_store(offers).items():
        store_offers.sort(key=_price_key)
        keyed_rows.append((key, build_store_row(store_offers, queries)))

    keyed_rows.sort(
        key=lambda kr: (
            -kr[1].coverage_count,
            kr[1].best_price if kr[1].best_price is not None else math.inf,
            kr[0],
        )
    )
    return [row for _, row in keyed_rows[:max_stores]]
