from __future__ import annotations

import asyncio
import logging
from itertools import chain
from typing import Dict, List, Optional, Sequence, Tuple

from fastapi import Depends, FastAPI, HTTPException, Query

from tilbudsguide import __version__
from tilbudsguide.cache import TTLCache
from tilbudsguide.config import (
    GIT_COMMIT_SHA,
    GUIDE_DELAY_MS,
    GUIDE_LIMIT,
    GUIDE_MAX_QUERIES,
    LOG_LEVEL,
    MAX_RESULTS,
    SEARCH_DEFAULT_DELAY_MS,
    SEARCH_DEFAULT_LIMIT,
    SEARCH_MAX_DELAY_MS,
    SEARCH_MAX_LIMIT,
    clamp,
)
from tilbudsguide.fetcher import EtaFetcher, UpstreamError
from tilbudsguide.guide import rank_stores
from tilbudsguide.matching import (
    expand_query,
    is_allowed_store,
    is_flavored_milk_name,
    is_junk_offer_name,
    is_milk_query,
    parse_query_list,
    score_milk_offer,
    uniq_by_source_url,
    uniq_strings,
)
from tilbudsguide.models import GuideResponse, Offer, SearchCounts, SearchResponse

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("tilbudsguide")

app = FastAPI(title="Tilbudsguide", version=__version__)

FETCHER = EtaFetcher()
SEARCH_CACHE: TTLCache[SearchResponse] = TTLCache()


def get_fetcher() -> EtaFetcher:
    return FETCHER


def get_search_cache() -> TTLCache[SearchResponse]:
    return SEARCH_CACHE


def parse_int(raw: Optional[str], default: int, min_value: int, max_value: int) -> int:
    if raw is None or not str(raw).strip():
        return default
    try:
        value = int(float(str(raw).strip()))
    except (ValueError, OverflowError):
        return default
    return clamp(value, min_value, max_value)


async def fetch_terms(
    fetcher: EtaFetcher, terms: Sequence[str], limit: int, delay_ms: int
) -> Tuple[Dict[str, List[Offer]], List[str]]:
    """Fetch every term concurrently; a failed term yields no offers."""

    async def fetch_one(term: str) -> Tuple[str, Optional[List[Offer]]]:
        try:
            return term, await fetcher.search_offers(term, limit=limit, delay_ms=delay_ms)
        except UpstreamError as exc:
            logger.warning("Search term failed: %s", exc)
            return term, None
        except Exception:
            logger.exception("Unexpected failure fetching term %r", term)
            return term, None

    results = await asyncio.gather(*(fetch_one(term) for term in terms))
    offers_by_term = {term: offers for term, offers in results if offers is not None}
    failed = [term for term, offers in results if offers is None]
    return offers_by_term, failed


def ensure_upstream_available(terms: Sequence[str], failed: Sequence[str]) -> None:
    if terms and len(failed) == len(terms):
        raise HTTPException(
            status_code=502,
            detail=f"Search provider failure: no search page reachable for {', '.join(failed)}",
        )


def keep_offer(offer: Offer) -> bool:
    return is_allowed_store(offer.store) and not is_junk_offer_name(offer.name)


async def search_impl(
    q: str, limit: int, delay_ms: int, fetcher: EtaFetcher, cache: TTLCache[SearchResponse]
) -> SearchResponse:
    q = q.strip()
    if not q:
        return SearchResponse(q="")

    key = (q, limit, delay_ms)
    cached, found = cache.get(key)
    if found and cached is not None:
        return cached.model_copy(update={"cached": True})

    terms = uniq_strings(expand_query(q))
    offers_by_term, failed = await fetch_terms(fetcher, terms, limit, delay_ms)
    ensure_upstream_available(terms, failed)

    merged = uniq_by_source_url(chain.from_iterable(offers_by_term.get(t, []) for t in terms))
    filtered = [o for o in merged if keep_offer(o)]

    if is_milk_query(q):
        filtered = [o for o in filtered if not is_flavored_milk_name(o.name)]
        filtered.sort(key=lambda o: -score_milk_offer(o.name))

    offers = [o for o in filtered if o.kind == "offer"][:MAX_RESULTS]
    promotions = [o for o in filtered if o.kind == "promotion"][:MAX_RESULTS]

    response = SearchResponse(
        q=q,
        cached=False,
        counts=SearchCounts(total=len(offers) + len(promotions), offers=len(offers), promotions=len(promotions)),
        offers=offers,
        promotions=promotions,
    )
    logger.info(
        "Search %r: %d terms, %d merged, %d offers, %d promotions",
        q, len(terms), len(merged), len(offers), len(promotions),
    )
    if not failed:
        cache.set(key, response)
    return response


async def guide_impl(queries: List[str], fetcher: EtaFetcher) -> GuideResponse:
    if not queries:
        return GuideResponse()

    terms = uniq_strings(chain.from_iterable(expand_query(q) for q in queries))
    offers_by_term, failed = await fetch_terms(fetcher, terms, GUIDE_LIMIT, GUIDE_DELAY_MS)
    ensure_upstream_available(terms, failed)

    merged = uniq_by_source_url(chain.from_iterable(offers_by_term.get(t, []) for t in terms))
    priced = [o for o in merged if o.kind == "offer" and keep_offer(o)]
    stores = rank_stores(queries, priced)

    logger.info("Guide %s: %d terms, %d priced offers, %d stores", queries, len(terms), len(priced), len(stores))
    return GuideResponse(queries=queries, total_queries=len(queries), stores=stores)


@app.get("/")
def root() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/version")
def version() -> Dict[str, str]:
    return {"sha": GIT_COMMIT_SHA}


@app.get("/search", response_model=SearchResponse)
async def search(
    q: str = "",
    limit: Optional[str] = None,
    delay_ms: Optional[str] = Query(default=None, alias="delayMs"),
    fetcher: EtaFetcher = Depends(get_fetcher),
    cache: TTLCache = Depends(get_search_cache),
) -> SearchResponse:
    try:
        return await search_impl(
            q,
            limit=parse_int(limit, SEARCH_DEFAULT_LIMIT, 1, SEARCH_MAX_LIMIT),
            delay_ms=parse_int(delay_ms, SEARCH_DEFAULT_DELAY_MS, 0, SEARCH_MAX_DELAY_MS),
            fetcher=fetcher,
            cache=cache,
        )
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Unhandled search failure")
        raise HTTPException(status_code=500, detail=f"Unexpected error: {exc}") from exc


@app.get("/guide", response_model=GuideResponse)
async def guide(
    qs: Optional[str] = None,
    q: List[str] = Query(default=[]),
    text: Optional[str] = None,
    fetcher: EtaFetcher = Depends(get_fetcher),
) -> GuideResponse:
    queries = parse_query_list(qs, q, text, GUIDE_MAX_QUERIES)
    try:
        return await guide_impl(queries, fetcher)
    except HTTPException:
        raise
    except Exception as exc:
        logger.exception("Unhandled guide failure")
        raise HTTPException(status_code=500, detail=f"Unexpected error: {exc}") from exc
