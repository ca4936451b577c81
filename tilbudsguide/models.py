from __future__ import annotations

import re
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel

from tilbudsguide.config import DEFAULT_CURRENCY

DISCOUNT_PATTERN = re.compile(r"(\d{1,3})\s*%")


def parse_discount_percent(name: Optional[str]) -> Optional[int]:
    if not name:
        return None
    match = DISCOUNT_PATTERN.search(name)
    if not match:
        return None
    value = int(match.group(1))
    if 0 < value <= 100:
        return value
    return None


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Offer(ApiModel):
    """One normalized listing from the deals site.

    ``kind`` and ``discount_percent`` are derived from ``price`` and ``name`` so
    they can never disagree with the fields they describe.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    source_url: str = Field(min_length=1)
    store: Optional[str] = None
    publication: Optional[str] = None
    offer_id: Optional[str] = None
    public_id: Optional[str] = None
    name: Optional[str] = None
    price: Optional[float] = None
    currency: str = DEFAULT_CURRENCY
    unit_price: Optional[float] = None
    unit_price_unit: Optional[str] = None
    valid_from: Optional[str] = None
    valid_through: Optional[str] = None
    image: Optional[str] = None

    @computed_field
    @property
    def kind(self) -> Literal["offer", "promotion"]:
        return "offer" if self.price is not None else "promotion"

    @computed_field(alias="discountPercent")
    @property
    def discount_percent(self) -> Optional[int]:
        if self.kind != "promotion":
            return None
        return parse_discount_percent(self.name)


class SampleOffer(ApiModel):
    name: Optional[str] = None
    price: Optional[float] = None
    currency: str = DEFAULT_CURRENCY
    valid_through: Optional[str] = None
    source_url: str
    image: Optional[str] = None

    @classmethod
    def from_offer(cls, offer: Offer) -> "SampleOffer":
        return cls(
            name=offer.name,
            price=offer.price,
            currency=offer.currency or DEFAULT_CURRENCY,
            valid_through=offer.valid_through,
            source_url=offer.source_url,
            image=offer.image,
        )


class StoreRow(ApiModel):
    store: str
    coverage_count: int = Field(ge=0)
    coverage_pct: int = Field(ge=0, le=100)
    matched_items: List[str]
    best_price: Optional[float] = None
    sample_offers: List[SampleOffer]


class SearchCounts(ApiModel):
    total: int = 0
    offers: int = 0
    promotions: int = 0


class SearchResponse(ApiModel):
    q: str
    cached: bool = False
    counts: SearchCounts = Field(default_factory=SearchCounts)
    offers: List[Offer] = Field(default_factory=list)
    promotions: List[Offer] = Field(default_factory=list)


class GuideResponse(ApiModel):
    queries: List[str] = Field(default_factory=list)
    total_queries: int = 0
    stores: List[StoreRow] = Field(default_factory=list)
