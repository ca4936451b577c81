from __future__ import annotations

import math
import re
from typing import Any, Callable, Iterable, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlparse

from tilbudsguide.config import DEFAULT_CURRENCY
from tilbudsguide.models import Offer

# Field paths tried in order against the decoded payload. The first present
# value wins, so upstream schema drift only ever touches these tables.
NAME_PATHS: Tuple[Tuple[str, ...], ...] = (("name",), ("title",))
PRICE_PATHS: Tuple[Tuple[str, ...], ...] = (("price",), ("pricing", "price"), ("price", "value"))
CURRENCY_PATHS: Tuple[Tuple[str, ...], ...] = (("currency",), ("priceCurrency",), ("pricing", "currency"))
VALID_FROM_PATHS: Tuple[Tuple[str, ...], ...] = (("validFrom",), ("validStart",), ("validity", "from"))
VALID_THROUGH_PATHS: Tuple[Tuple[str, ...], ...] = (
    ("validThrough",),
    ("priceValidUntil",),
    ("validTo",),
    ("validity", "to"),
)
SELLER_PATHS: Tuple[Tuple[str, ...], ...] = (("seller",), ("business",), ("store",))
IMAGE_PATHS: Tuple[Tuple[str, ...], ...] = (("image",), ("images",), ("product", "image"))
UNIT_PRICE_PATHS: Tuple[Tuple[str, ...], ...] = (("unitPrice",), ("pricing", "unitPrice"))


def parse_localized_price(value: str) -> Optional[float]:
    cleaned = re.sub(r"[^0-9,.-]", "", value).strip()
    cleaned = re.sub(r"^[,.]+|[,.]+$", "", cleaned)
    if not cleaned:
        return None

    if "," in cleaned and "." in cleaned:
        # Use the right-most separator as decimal marker and strip thousands separators.
        if cleaned.rfind(",") > cleaned.rfind("."):
            cleaned = cleaned.replace(".", "").replace(",", ".")
        else:
            cleaned = cleaned.replace(",", "")
    elif cleaned.count(",") == 1 and cleaned.count(".") == 0:
        cleaned = cleaned.replace(",", ".")
    elif cleaned.count(",") > 1 and cleaned.count(".") == 0:
        cleaned = cleaned.replace(",", "")
    elif cleaned.count(".") > 1 and cleaned.count(",") == 0:
        cleaned = cleaned.replace(".", "")

    try:
        parsed = float(cleaned)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def to_float(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        try:
            value = float(raw)
        except OverflowError:
            return None
        return value if math.isfinite(value) else None
    if isinstance(raw, str):
        return parse_localized_price(raw)
    return None


def to_text(raw: Any) -> Optional[str]:
    if raw is None or isinstance(raw, (dict, list, bool)):
        return None
    text = str(raw).strip()
    return text or None


def deep_get(node: Any, path: Sequence[str]) -> Any:
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node


def coalesce(
    node: Any,
    paths: Iterable[Sequence[str]],
    convert: Optional[Callable[[Any], Any]] = None,
) -> Any:
    # A value that convert maps to None falls through to the next path.
    for path in paths:
        value = deep_get(node, path)
        if convert is not None:
            value = convert(value)
        if value is not None:
            return value
    return None


def params_from_url(url: str) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """Return ``(publication, offer_id, store_slug)`` read from an offer URL."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return None, None, None
    query = parse_qs(parsed.query)
    publication = (query.get("publication") or [None])[0]
    offer_id = (query.get("offer") or [None])[0]
    segments = [s for s in parsed.path.split("/") if s]
    store_slug = segments[0] if segments else None
    return publication, offer_id, store_slug


def normalize_store(payload: Any, store_slug: Optional[str]) -> Optional[str]:
    seller = coalesce(payload, SELLER_PATHS)
    if isinstance(seller, dict):
        name = to_text(seller.get("name"))
        if name:
            return name
    elif isinstance(seller, str) and seller.strip():
        return seller.strip()
    return store_slug


def normalize_image(payload: Any) -> Optional[str]:
    img = coalesce(payload, IMAGE_PATHS)
    if isinstance(img, str):
        return img.strip() or None
    if isinstance(img, list):
        first = img[0] if img else None
        if isinstance(first, str):
            return first.strip() or None
        if isinstance(first, dict):
            return to_text(first.get("url")) or to_text(first.get("src"))
        return None
    if isinstance(img, dict):
        return to_text(img.get("url")) or to_text(img.get("src"))
    return None


def normalize_unit_price(payload: Any) -> tuple[Optional[float], Optional[str]]:
    up = coalesce(payload, UNIT_PRICE_PATHS)
    if isinstance(up, dict):
        price = to_float(up.get("price"))
        if price is None:
            price = to_float(up.get("value"))
        unit = to_text(up.get("unit")) or to_text(up.get("unitText"))
        return price, unit
    return to_float(up), None


def normalize_offer_payload(payload: Any, source_url: str) -> Offer:
    """Map a decoded offer payload of any shape onto an ``Offer``.

    Identifiers come from the URL query string since payload field names for
    them vary. Missing or malformed fields become ``None``; this never raises
    for a non-empty ``source_url``.
    """
    publication, offer_id, store_slug = params_from_url(source_url)
    if not isinstance(payload, dict):
        payload = {}

    unit_price, unit_price_unit = normalize_unit_price(payload)

    return Offer(
        source_url=source_url,
        store=normalize_store(payload, store_slug),
        publication=publication,
        offer_id=offer_id,
        public_id=to_text(payload.get("publicId")),
        name=coalesce(payload, NAME_PATHS, to_text),
        price=coalesce(payload, PRICE_PATHS, to_float),
        currency=coalesce(payload, CURRENCY_PATHS, to_text) or DEFAULT_CURRENCY,
        unit_price=unit_price,
        unit_price_unit=unit_price_unit,
        valid_from=coalesce(payload, VALID_FROM_PATHS, to_text),
        valid_through=coalesce(payload, VALID_THROUGH_PATHS, to_text),
        image=normalize_image(payload),
    )
