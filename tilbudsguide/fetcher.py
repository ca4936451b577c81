from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Tuple
from urllib.parse import quote

import httpx

from tilbudsguide.cache import TTLCache
from tilbudsguide.config import ETA_BASE_URL, ETA_SEARCH_PATH, ETA_USER_AGENT, REQUEST_TIMEOUT_SECONDS
from tilbudsguide.extract import extract_offer_payload, extract_offer_urls
from tilbudsguide.models import Offer
from tilbudsguide.normalize import normalize_offer_payload

logger = logging.getLogger(__name__)

CacheKey = Tuple[str, int, int]


class UpstreamError(Exception):
    """The search page for a term could not be retrieved."""

    def __init__(self, term: str, reason: str) -> None:
        super().__init__(f"{term!r}: {reason}")
        self.term = term
        self.reason = reason


class EtaFetcher:
    """Fetches the offers the deals site lists for a search term."""

    DEFAULT_HEADERS = {
        "Accept": "text/html,*/*",
        "Accept-Language": "da-DK,da;q=0.9,en;q=0.8",
        "Cache-Control": "no-store",
    }

    def __init__(
        self,
        base_url: str = ETA_BASE_URL,
        timeout: float = REQUEST_TIMEOUT_SECONDS,
        user_agent: str = ETA_USER_AGENT,
        cache: Optional[TTLCache[List[Offer]]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent
        self.cache: TTLCache[List[Offer]] = cache if cache is not None else TTLCache()
        self._transport = transport
        self._sleep = sleep

    def search_url(self, term: str) -> str:
        return self.base_url + ETA_SEARCH_PATH + quote(term, safe="")

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout),
            headers={**self.DEFAULT_HEADERS, "User-Agent": self.user_agent},
            follow_redirects=True,
            transport=self._transport,
        )

    async def search_offers(self, term: str, limit: int, delay_ms: int) -> List[Offer]:
        term = term.strip()
        if not term:
            return []
        key: CacheKey = (term, limit, delay_ms)
        offers, found = self.cache.get(key)
        if found and offers is not None:
            logger.debug("Cache hit for term=%r limit=%d delay_ms=%d", term, limit, delay_ms)
            return list(offers)

        logger.debug("Cache miss for term=%r limit=%d delay_ms=%d", term, limit, delay_ms)
        offers = await self.fetch_offers(term, limit, delay_ms)
        self.cache.set(key, offers)
        return list(offers)

    async def fetch_offers(self, term: str, limit: int, delay_ms: int) -> List[Offer]:
        async with self._client() as client:
            search_html = await self._fetch_search_page(client, term)
            offer_urls = extract_offer_urls(search_html, base_url=self.base_url)[:limit]

            offers: List[Offer] = []
            for index, url in enumerate(offer_urls):
                if index and delay_ms > 0:
                    await self._sleep(delay_ms / 1000)
                offer = await self.fetch_offer(client, url)
                if offer is not None:
                    offers.append(offer)

        logger.info("Term %r: %d offer URLs, %d offers decoded", term, len(offer_urls), len(offers))
        return offers

    async def _get(self, client: httpx.AsyncClient, url: str) -> httpx.Response:
        # httpx timeouts are per operation; this bounds the whole request.
        try:
            return await asyncio.wait_for(client.get(url), timeout=self.timeout)
        except asyncio.TimeoutError as exc:
            raise httpx.TimeoutException(f"no complete response within {self.timeout}s") from exc

    async def _fetch_search_page(self, client: httpx.AsyncClient, term: str) -> str:
        url = self.search_url(term)
        try:
            response = await self._get(client, url)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning("Search page failed for term=%r: HTTP %s", term, exc.response.status_code)
            raise UpstreamError(term, f"HTTP {exc.response.status_code}") from exc
        except httpx.TimeoutException as exc:
            logger.warning("Search page timed out for term=%r", term)
            raise UpstreamError(term, "timeout") from exc
        except httpx.HTTPError as exc:
            logger.warning("Search page failed for term=%r: %s", term, exc)
            raise UpstreamError(term, str(exc) or exc.__class__.__name__) from exc
        return response.text

    async def fetch_offer(self, client: httpx.AsyncClient, url: str) -> Optional[Offer]:
        try:
            response = await self._get(client, url)
        except httpx.TimeoutException:
            logger.debug("Offer page timed out: %s", url)
            return None
        except httpx.HTTPError as exc:
            logger.debug("Offer page failed: %s (%s)", url, exc)
            return None
        if not response.is_success:
            logger.debug("Offer page skipped: %s (HTTP %s)", url, response.status_code)
            return None

        try:
            payload = extract_offer_payload(response.text)
            if payload is None:
                logger.debug("No offer payload on %s", url)
                return None
            return normalize_offer_payload(payload, url)
        except Exception as exc:
            logger.debug("Offer page could not be decoded: %s (%r)", url, exc)
            return None
