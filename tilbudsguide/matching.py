from __future__ import annotations

import re
import unicodedata
from typing import Iterable, List, Optional, Sequence

from tilbudsguide.models import Offer

KEEP_LETTERS = frozenset("æøå")

# Cross-border and health-food chains that carry grocery-like offers.
DENIED_STORES = ("fleggaard", "calle", "bordershop", "border shop", "helsam")

ALLOWED_STORES = (
    "føtex",
    "fotex",
    "bilka",
    "netto",
    "rema",
    "rema 1000",
    "lidl",
    "aldi",
    "meny",
    "spar",
    "min købmand",
    "min kobmand",
    "superbrugsen",
    "kvickly",
    "brugsen",
    "dagli brugsen",
    "dagli'brugsen",
    "365discount",
    "365 discount",
    "coop",
    "abc lavpris",
    "løvbjerg",
    "lovbjerg",
    "nemlig",
    "nemlig com",
)

# Matched as plain substrings of the normalized name.
JUNK_NAME_SUBSTRINGS = (
    "saftevand",
    "sodavand",
    "cola",
    "lemonade",
    "energidrik",
    "energy drink",
    "proteinbar",
    "protein bar",
    "bar ",
    " müeslibar",
    "müeslibar",
    "snackbar",
    "slik",
    "chokolade",
    "chips",
    "kiks",
    "bolche",
    "vin",
    "øl",
    "spiritus",
    "cocktail",
)
JUICE_NAME_SUBSTRINGS = ("juice", "saft")

MILK_QUERIES = ("mælk", "milk")
MILK_WORD = "mælk"
MILK_VARIANTS = (
    "mælk",
    "skummetmælk",
    "skummemælk",
    "letmælk",
    "sødmælk",
    "minimælk",
    "kærnemælk",
    "økologisk mælk",
)
FLAVORED_MILK_SUBSTRINGS = ("kakao", "chokolade", "jordbær", "vanil", "protein", "shake")

RAW_FRUIT_JUICE_EXPANSIONS = {
    "lime": ("lime", "limes", "limefrugt"),
}

MIN_TOKEN_LENGTH = 3

ITEM_SEPARATORS = re.compile(r"\s+(?:&|and|og|y|et|und|e)\s+|[\n;|/+,]+", re.IGNORECASE)


def fold_diacritics(text: str) -> str:
    out: List[str] = []
    for ch in text:
        if ch in KEEP_LETTERS:
            out.append(ch)
            continue
        decomposed = unicodedata.normalize("NFKD", ch)
        out.append("".join(c for c in decomposed if not unicodedata.combining(c)))
    return "".join(out)


def normalize_text(value: Optional[str]) -> str:
    text = fold_diacritics(str(value or "").lower())
    text = re.sub(r"\([^)]*\)", " ", text)
    text = re.sub(r"[^a-z0-9æøå\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def tokenize_query(query: str) -> List[str]:
    return [t for t in normalize_text(query).split(" ") if len(t) >= MIN_TOKEN_LENGTH]


def contains_word(normalized: str, word: str) -> bool:
    return f" {word} " in f" {normalized} "


def is_allowed_store(store: Optional[str]) -> bool:
    s = normalize_text(store)
    if not s:
        return False
    if any(normalize_text(d) in s for d in DENIED_STORES):
        return False
    return any(normalize_text(a) in s for a in ALLOWED_STORES)


def is_junk_offer_name(name: Optional[str]) -> bool:
    n = normalize_text(name)
    if not n:
        return False
    if any(normalize_text(d) in n for d in JUNK_NAME_SUBSTRINGS):
        return True
    return any(j in n for j in JUICE_NAME_SUBSTRINGS)


def is_milk_query(query: str) -> bool:
    return normalize_text(query) in MILK_QUERIES


def is_flavored_milk_name(name: Optional[str]) -> bool:
    n = normalize_text(name)
    if MILK_WORD not in n:
        return False
    return any(d in n for d in FLAVORED_MILK_SUBSTRINGS)


def expand_query(query: str) -> List[str]:
    """Return the upstream search terms for one caller query.

    Plain milk returns nothing useful upstream, so it fans out into the fat
    variants. Juice of a known fruit searches for the raw fruit instead.
    """
    if is_milk_query(query):
        return list(MILK_VARIANTS)

    qn = normalize_text(query)
    if any(j in qn for j in JUICE_NAME_SUBSTRINGS):
        for fruit, terms in RAW_FRUIT_JUICE_EXPANSIONS.items():
            if fruit in qn:
                return list(terms)

    return [query.strip()]


def milk_name_matches(name: Optional[str]) -> bool:
    n = normalize_text(name)
    if not n or is_flavored_milk_name(n):
        return False
    words = n.split(" ")
    return any(variant in words for variant in MILK_VARIANTS) or contains_word(n, MILK_WORD)


def offer_matches_query(name: Optional[str], query: str, *, whole_word: bool = False) -> bool:
    if is_milk_query(query):
        return milk_name_matches(name)

    n = normalize_text(name)
    if not n:
        return False
    for token in tokenize_query(query):
        if contains_word(n, token):
            return True
        if not whole_word and token in n:
            return True
    return False


def score_milk_offer(name: Optional[str]) -> int:
    """Relevance of a plain-milk result; higher sorts first."""
    n = normalize_text(name)
    score = 0
    if "skummet" in n or "skumme" in n:
        score += 4
    if "letmælk" in n or "let mæl" in n:
        score += 3
    if "sødmælk" in n or "sød mæl" in n:
        score += 2
    if "kærnemælk" in n or "kaernemaelk" in n:
        score += 3
    if "økologisk" in n or "oekologisk" in n:
        score += 1
    if any(p in n for p in ("havre", "soja", "mandel", "kokos")):
        score -= 1
    return score


def uniq_by_source_url(offers: Iterable[Offer]) -> List[Offer]:
    out: List[Offer] = []
    seen: set[str] = set()
    for offer in offers:
        key = offer.source_url.strip()
        if not key or key in seen:
            continue
        seen.add(key)
        out.append(offer)
    return out


def uniq_strings(values: Iterable[str]) -> List[str]:
    out: List[str] = []
    seen: set[str] = set()
    for value in values:
        s = str(value or "").strip()
        if s and s not in seen:
            seen.add(s)
            out.append(s)
    return out


def split_items(text: str) -> List[str]:
    """Split a free-text shopping list into items, case-insensitively deduplicated."""
    parts = ITEM_SEPARATORS.split(str(text or "").strip())
    out: List[str] = []
    seen: set[str] = set()
    for part in parts:
        item = part.strip() if part else ""
        if not item or item.lower() in seen:
            continue
        seen.add(item.lower())
        out.append(item)
    return out


def parse_query_list(qs: Optional[str], q: Sequence[str], text: Optional[str], max_queries: int) -> List[str]:
    if qs and qs.strip():
        candidates = qs.split(",")
    elif any(x.strip() for x in q):
        candidates = list(q)
    elif text and text.strip():
        candidates = split_items(text)
    else:
        candidates = []
    return uniq_strings(candidates)[:max_queries]
