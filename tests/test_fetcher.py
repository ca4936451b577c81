"""Tests for EtaFetcher against a fake deals site."""

import asyncio

import httpx
import pytest

from conftest import BASE_URL, offer_page, offer_page_body, offer_url, search_page
from tilbudsguide import fetcher as fetcher_module
from tilbudsguide.fetcher import EtaFetcher, UpstreamError
from tilbudsguide.normalize import normalize_offer_payload


def _onion_offers():
    return {
        offer_url("netto", "p1", "o1"): {"name": "Løg 1 kg", "price": "10,00", "seller": {"name": "Netto"}},
        offer_url("lidl", "p2", "o2"): {"name": "Rødløg", "pricing": {"price": 8}},
        offer_url("meny", "p3", "o3"): {"name": "25% på alle løg"},
    }


class TestSearchOffers:
    """Tests for EtaFetcher.search_offers."""

    @pytest.mark.asyncio
    async def test_fetches_and_normalizes(self, site, fetcher):
        site.add_search("løg", _onion_offers())

        offers = await fetcher.search_offers("løg", limit=40, delay_ms=0)

        assert [o.name for o in offers] == ["Løg 1 kg", "Rødløg", "25% på alle løg"]
        assert [o.store for o in offers] == ["Netto", "lidl", "meny"]
        assert [o.kind for o in offers] == ["offer", "offer", "promotion"]
        assert offers[2].discount_percent == 25
        assert offers[0].publication == "p1"
        assert offers[0].offer_id == "o1"

    @pytest.mark.asyncio
    async def test_search_url_is_encoded(self, site, fetcher):
        site.add_search("hakket oksekød", {})

        await fetcher.search_offers("hakket oksekød", limit=40, delay_ms=0)

        assert site.requests == [f"{BASE_URL}/soeg/hakket%20oksek%C3%B8d"]

    @pytest.mark.asyncio
    async def test_limit_caps_offer_pages(self, site, fetcher):
        site.add_search("løg", _onion_offers())

        offers = await fetcher.search_offers("løg", limit=2, delay_ms=0)

        assert len(offers) == 2
        assert len(site.requests) == 3

    @pytest.mark.asyncio
    async def test_pacing_between_offer_pages(self, site, fetcher, sleeper):
        site.add_search("løg", _onion_offers())

        await fetcher.search_offers("løg", limit=40, delay_ms=120)

        assert sleeper.calls == [0.12, 0.12]

    @pytest.mark.asyncio
    async def test_failed_offer_pages_are_skipped(self, site, fetcher):
        offers = _onion_offers()
        site.add_search("løg", offers)
        urls = list(offers)
        site.pages[urls[0]] = (404, "gone")
        site.timeouts.add(urls[1])

        result = await fetcher.search_offers("løg", limit=40, delay_ms=0)

        assert [o.source_url for o in result] == [urls[2]]

    @pytest.mark.asyncio
    async def test_page_without_payload_is_skipped(self, site, fetcher):
        offers = _onion_offers()
        site.add_search("løg", offers)
        urls = list(offers)
        site.pages[urls[1]] = (200, "<html><body>Ingen data</body></html>")

        result = await fetcher.search_offers("løg", limit=40, delay_ms=0)

        assert urls[1] not in [o.source_url for o in result]
        assert len(result) == 2

    @pytest.mark.asyncio
    async def test_deeply_nested_payload_is_skipped(self, site, fetcher):
        offers = _onion_offers()
        site.add_search("løg", offers)
        urls = list(offers)
        site.pages[urls[0]] = (200, offer_page_body("[" * 100000 + "]" * 100000))

        result = await fetcher.search_offers("løg", limit=40, delay_ms=0)

        assert [o.source_url for o in result] == urls[1:]

    @pytest.mark.asyncio
    async def test_oversized_price_keeps_the_offer(self, site, fetcher):
        offers = _onion_offers()
        site.add_search("løg", offers)
        urls = list(offers)
        site.pages[urls[0]] = (200, offer_page_body('{"name": "Løg", "price": 1' + "0" * 400 + "}"))

        result = await fetcher.search_offers("løg", limit=40, delay_ms=0)

        assert [o.source_url for o in result] == urls
        assert result[0].price is None

    @pytest.mark.asyncio
    async def test_normalize_failure_is_skipped(self, site, fetcher, monkeypatch):
        offers = _onion_offers()
        site.add_search("løg", offers)
        urls = list(offers)

        def normalize(payload, source_url):
            if source_url == urls[1]:
                raise TypeError("unexpected payload shape")
            return normalize_offer_payload(payload, source_url)

        monkeypatch.setattr(fetcher_module, "normalize_offer_payload", normalize)

        result = await fetcher.search_offers("løg", limit=40, delay_ms=0)

        assert [o.source_url for o in result] == [urls[0], urls[2]]

    @pytest.mark.asyncio
    async def test_search_page_failure_raises(self, site, fetcher):
        site.searches["løg"] = (503, "unavailable")

        with pytest.raises(UpstreamError) as excinfo:
            await fetcher.search_offers("løg", limit=40, delay_ms=0)
        assert excinfo.value.reason == "HTTP 503"

    @pytest.mark.asyncio
    async def test_search_page_timeout_raises(self, site, fetcher):
        site.add_search("løg", {})
        site.timeouts.add(site.search_url("løg"))

        with pytest.raises(UpstreamError) as excinfo:
            await fetcher.search_offers("løg", limit=40, delay_ms=0)
        assert excinfo.value.reason == "timeout"

    @pytest.mark.asyncio
    async def test_blank_term(self, site, fetcher):
        assert await fetcher.search_offers("   ", limit=40, delay_ms=0) == []
        assert site.requests == []


class TestCaching:
    """Tests for the per-term result cache."""

    @pytest.mark.asyncio
    async def test_repeat_within_ttl_does_not_fetch(self, site, fetcher):
        site.add_search("løg", _onion_offers())

        first = await fetcher.search_offers("løg", limit=40, delay_ms=0)
        count = len(site.requests)
        second = await fetcher.search_offers("løg", limit=40, delay_ms=0)

        assert second == first
        assert len(site.requests) == count

    @pytest.mark.asyncio
    async def test_key_includes_limit_and_delay(self, site, fetcher):
        site.add_search("løg", _onion_offers())

        await fetcher.search_offers("løg", limit=40, delay_ms=0)
        await fetcher.search_offers("løg", limit=2, delay_ms=0)
        await fetcher.search_offers("løg", limit=40, delay_ms=5)

        assert len(site.search_requests()) == 3

    @pytest.mark.asyncio
    async def test_failures_are_not_cached(self, site, fetcher):
        site.searches["løg"] = (500, "boom")
        with pytest.raises(UpstreamError):
            await fetcher.search_offers("løg", limit=40, delay_ms=0)

        site.add_search("løg", _onion_offers())
        offers = await fetcher.search_offers("løg", limit=40, delay_ms=0)
        assert len(offers) == 3


class TestTransportErrors:
    """Tests for network-level failures."""

    @pytest.mark.asyncio
    async def test_connect_error_on_search_page(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        fetcher = EtaFetcher(base_url=BASE_URL, transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamError):
            await fetcher.search_offers("løg", limit=40, delay_ms=0)

    @pytest.mark.asyncio
    async def test_slow_offer_page_is_skipped(self):
        good = offer_url("netto", "p1", "o1")
        slow = offer_url("lidl", "p2", "o2")

        async def handler(request):
            url = str(request.url)
            if "/soeg/" in url:
                return httpx.Response(200, text=search_page([slow, good]))
            if url == slow:
                await asyncio.sleep(5)
            return httpx.Response(200, text=offer_page({"name": "Løg", "price": 10}))

        fetcher = EtaFetcher(base_url=BASE_URL, timeout=0.05, transport=httpx.MockTransport(handler))
        offers = await fetcher.search_offers("løg", limit=40, delay_ms=0)

        assert [o.source_url for o in offers] == [good]

    @pytest.mark.asyncio
    async def test_slow_search_page_raises_timeout(self):
        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, text=search_page([]))

        fetcher = EtaFetcher(base_url=BASE_URL, timeout=0.05, transport=httpx.MockTransport(handler))
        with pytest.raises(UpstreamError) as excinfo:
            await fetcher.search_offers("løg", limit=40, delay_ms=0)
        assert excinfo.value.reason == "timeout"
