"""Shared fixtures: a fake deals site served through ``httpx.MockTransport``."""

from __future__ import annotations

import base64
import html
import itertools
import json
from pathlib import Path
from typing import Dict, List, Optional, Tuple
from urllib.parse import quote

import httpx
import pytest

from tilbudsguide.cache import TTLCache
from tilbudsguide.fetcher import EtaFetcher
from tilbudsguide.models import Offer

BASE_URL = "https://etilbudsavis.dk"
FIXTURES_DIR = Path(__file__).parent / "fixtures"
_offer_ids = itertools.count(1)


def load_fixture(name: str) -> str:
    return (FIXTURES_DIR / name).read_text(encoding="utf-8")


def offer_url(store: str, publication: str, offer: str) -> str:
    return f"{BASE_URL}/{store}/tilbud?publication={publication}&offer={offer}"


def offer_page_body(body: str, key: Optional[list] = None) -> str:
    data_key = base64.urlsafe_b64encode(json.dumps(key or ["offer", {"id": "x"}]).encode()).decode().rstrip("=")
    return f'<html><body><app-data data-key="{data_key}">{body}</app-data></body></html>'


def offer_page(payload: dict, key: Optional[list] = None) -> str:
    return offer_page_body(html.escape(json.dumps(payload, ensure_ascii=False)), key)


def search_page(urls: List[str]) -> str:
    anchors = "\n".join(f'<a href="{html.escape(u)}">tilbud</a>' for u in urls)
    return f"<html><body>{anchors}</body></html>"


def make_offer(
    name: Optional[str],
    price: Optional[float],
    store: Optional[str] = "Netto",
    url: Optional[str] = None,
) -> Offer:
    return Offer(
        source_url=url or offer_url("tilbud", "p", str(next(_offer_ids))),
        store=store,
        name=name,
        price=price,
    )


class FakeEtaSite:
    """Serves search and offer pages and counts every request it receives."""

    def __init__(self) -> None:
        self.searches: Dict[str, Tuple[int, str]] = {}
        self.pages: Dict[str, Tuple[int, str]] = {}
        self.timeouts: set[str] = set()
        self.requests: List[str] = []

    def add_search(self, term: str, offers: Dict[str, dict], status: int = 200) -> None:
        self.searches[term] = (status, search_page(list(offers)))
        for url, payload in offers.items():
            self.pages[url] = (200, offer_page(payload))

    def handler(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        if url in self.timeouts:
            raise httpx.ReadTimeout("timed out", request=request)

        path = request.url.path
        if path.startswith("/soeg/"):
            term = path[len("/soeg/"):]
            status, body = self.searches.get(term, (404, "not found"))
            return httpx.Response(status, text=body)

        status, body = self.pages.get(url, (404, "not found"))
        return httpx.Response(status, text=body)

    def search_requests(self) -> List[str]:
        return [u for u in self.requests if "/soeg/" in u]

    def search_url(self, term: str) -> str:
        return f"{BASE_URL}/soeg/{quote(term, safe='')}"


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def site() -> FakeEtaSite:
    return FakeEtaSite()


@pytest.fixture
def sleeper() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def fetcher(site: FakeEtaSite, sleeper: RecordingSleep) -> EtaFetcher:
    return EtaFetcher(
        base_url=BASE_URL,
        timeout=5,
        cache=TTLCache(ttl_seconds=300, max_entries=64),
        transport=httpx.MockTransport(site.handler),
        sleep=sleeper,
    )
