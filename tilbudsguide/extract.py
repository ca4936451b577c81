from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from html import unescape
from html.parser import HTMLParser
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlparse

from tilbudsguide.config import ETA_BASE_URL

logger = logging.getLogger(__name__)

REQUIRED_OFFER_PARAMS = ("publication", "offer")

# Where an ItemList entry may keep its URL, in order of preference.
ITEM_URL_PATHS: Tuple[Tuple[str, ...], ...] = (("item", "url"), ("item", "@id"), ("url",), ("@id",))

ABSOLUTE_OFFER_URL_PATTERN = re.compile(
    r"(https?://[^\s\"'<>]+publication=[^\"'<>]+offer=[^\"'<>]+)", re.IGNORECASE
)
RELATIVE_OFFER_URL_PATTERN = re.compile(
    r"(?<![\w:/])(/[^\s\"'<>]+\?[^\"'<>]*publication=[^\"'<>]+offer=[^\"'<>]+)", re.IGNORECASE
)

OFFER_RECORD_KEY = "offer"

UrlStrategy = Callable[[str], Iterable[str]]


class SearchPageParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__()
        self.ldjson_blocks: List[str] = []
        self.hrefs: List[str] = []
        self._in_ldjson_script = False
        self._script_chunks: List[str] = []

    def handle_starttag(self, tag: str, attrs: List[tuple[str, Optional[str]]]) -> None:
        attrs_map = {str(k).lower(): (v or "") for k, v in attrs}
        tag_l = tag.lower()

        if tag_l == "a":
            href = attrs_map.get("href", "").strip()
            if href:
                self.hrefs.append(href)
            return

        if tag_l == "script":
            script_type = attrs_map.get("type", "").lower()
            if "application/ld+json" in script_type:
                self._in_ldjson_script = True
                self._script_chunks = []

    def handle_data(self, data: str) -> None:
        if self._in_ldjson_script:
            self._script_chunks.append(data)

    def handle_endtag(self, tag: str) -> None:
        if tag.lower() == "script" and self._in_ldjson_script:
            block = "".join(self._script_chunks).strip()
            if block:
                self.ldjson_blocks.append(unescape(block))
            self._in_ldjson_script = False
            self._script_chunks = []


class AppDataParser(HTMLParser):
    """Collects (data-key, body) pairs of ``<app-data>`` elements."""

    def __init__(self) -> None:
        super().__init__()
        self.elements: List[Tuple[str, str]] = []
        self._key: Optional[str] = None
        self._chunks: List[str] = []

    def handle_starttag(self, tag: str, attrs: List[tuple[str, Optional[str]]]) -> None:
        if tag.lower() != "app-data":
            return
        attrs_map = {str(k).lower(): (v or "") for k, v in attrs}
        self._key = attrs_map.get("data-key", "").strip()
        self._chunks = []

    def handle_data(self, data: str) -> None:
        if self._key is not None:
            self._chunks.append(data)

    def handle_endtag(self, tag: str) -> None:
        if tag.lower() != "app-data" or self._key is None:
            return
        if self._key:
            self.elements.append((self._key, "".join(self._chunks).strip()))
        self._key = None
        self._chunks = []


def normalize_offer_url(raw: str, base_url: str = ETA_BASE_URL) -> Optional[str]:
    if not raw:
        return None
    url = str(raw).strip().replace("&amp;", "&")
    if url.startswith("//"):
        url = "https:" + url
    elif url.startswith("/"):
        url = base_url + url

    if not url.startswith(base_url + "/"):
        return None

    query = parse_qs(urlparse(url).query)
    if not all(query.get(param) for param in REQUIRED_OFFER_PARAMS):
        return None
    return url


def _iter_ldjson_nodes(data: Any) -> Iterable[Dict[str, Any]]:
    nodes = data if isinstance(data, list) else [data]
    for node in nodes:
        if not isinstance(node, dict):
            continue
        yield node
        graph = node.get("@graph")
        if isinstance(graph, list):
            for child in graph:
                if isinstance(child, dict):
                    yield child


def _item_url(entry: Any) -> Optional[str]:
    for path in ITEM_URL_PATHS:
        node = entry
        for key in path:
            node = node.get(key) if isinstance(node, dict) else None
        if isinstance(node, str) and node:
            return node
    return None


def urls_from_ldjson(html: str) -> List[str]:
    parser = SearchPageParser()
    parser.feed(html)
    parser.close()

    urls: List[str] = []
    for block in parser.ldjson_blocks:
        try:
            data = json.loads(block)
        except ValueError:
            continue
        for node in _iter_ldjson_nodes(data):
            items = node.get("itemListElement")
            if not isinstance(items, list):
                continue
            for entry in items:
                url = _item_url(entry)
                if url:
                    urls.append(url)
    return urls


def urls_from_anchors(html: str) -> List[str]:
    parser = SearchPageParser()
    parser.feed(html)
    parser.close()
    return [href for href in parser.hrefs if "publication=" in href and "offer=" in href]


def urls_from_raw_text(html: str) -> List[str]:
    urls = [m.group(1) for m in ABSOLUTE_OFFER_URL_PATTERN.finditer(html)]
    urls.extend(m.group(1) for m in RELATIVE_OFFER_URL_PATTERN.finditer(html))
    return urls


# Most precise first. The raw-text scan keeps discovery working if the markup
# changes completely.
URL_STRATEGIES: Tuple[UrlStrategy, ...] = (urls_from_ldjson, urls_from_anchors, urls_from_raw_text)


def extract_offer_urls(
    html: str,
    strategies: Sequence[UrlStrategy] = URL_STRATEGIES,
    base_url: str = ETA_BASE_URL,
) -> List[str]:
    out: List[str] = []
    seen: set[str] = set()
    if not html:
        return out

    for strategy in strategies:
        try:
            candidates = list(strategy(html))
        except Exception as exc:
            logger.debug("Offer URL strategy %s failed: %s", getattr(strategy, "__name__", strategy), exc)
            continue
        for candidate in candidates:
            url = normalize_offer_url(candidate, base_url=base_url)
            if url and url not in seen:
                seen.add(url)
                out.append(url)
    return out


def decode_data_key(data_key: str) -> Optional[Any]:
    padded = data_key.replace("-", "+").replace("_", "/")
    padded += "=" * (-len(padded) % 4)
    try:
        decoded = base64.b64decode(padded, validate=True).decode("utf-8")
        return json.loads(decoded)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return None


def is_offer_key(key: Any) -> bool:
    return isinstance(key, list) and len(key) >= 1 and key[0] == OFFER_RECORD_KEY


def extract_offer_payload(html: str) -> Optional[Any]:
    if not html:
        return None
    parser = AppDataParser()
    try:
        parser.feed(html)
        parser.close()
    except Exception as exc:
        logger.debug("Offer page could not be parsed: %s", exc)
        return None

    for data_key, body in parser.elements:
        if not body or not is_offer_key(decode_data_key(data_key)):
            continue
        try:
            return json.loads(body)
        except (ValueError, RecursionError):
            continue
    return None
