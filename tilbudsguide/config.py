from __future__ import annotations

import os


def env_int(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if min_value is not None:
        value = max(min_value, value)
    if max_value is not None:
        value = min(max_value, value)
    return value


def clamp(value: int, min_value: int, max_value: int) -> int:
    return max(min_value, min(max_value, value))


ETA_BASE_URL = os.getenv("ETA_BASE_URL", "https://etilbudsavis.dk").rstrip("/")
ETA_SEARCH_PATH = "/soeg/"
ETA_USER_AGENT = os.getenv("ETA_USER_AGENT", "QuartigoBot/1.0")
REQUEST_TIMEOUT_SECONDS = env_int("REQUEST_TIMEOUT_SECONDS", 12, min_value=1, max_value=60)

DEFAULT_CURRENCY = "DKK"
CACHE_TTL_SECONDS = env_int("CACHE_TTL_SECONDS", 300, min_value=1, max_value=86400)
CACHE_MAX_ENTRIES = env_int("CACHE_MAX_ENTRIES", 512, min_value=16, max_value=100000)

SEARCH_MAX_LIMIT = 80
SEARCH_MAX_DELAY_MS = 1000
SEARCH_DEFAULT_LIMIT = env_int("SEARCH_DEFAULT_LIMIT", 40, min_value=1, max_value=SEARCH_MAX_LIMIT)
SEARCH_DEFAULT_DELAY_MS = env_int("SEARCH_DEFAULT_DELAY_MS", 120, min_value=0, max_value=SEARCH_MAX_DELAY_MS)
MAX_RESULTS = 80

GUIDE_LIMIT = env_int("GUIDE_LIMIT", 40, min_value=1, max_value=SEARCH_MAX_LIMIT)
GUIDE_DELAY_MS = env_int("GUIDE_DELAY_MS", 120, min_value=0, max_value=SEARCH_MAX_DELAY_MS)
GUIDE_MAX_QUERIES = 10
GUIDE_MAX_STORES = 10
GUIDE_SAMPLE_OFFERS = 4

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
GIT_COMMIT_SHA = os.getenv("GIT_COMMIT_SHA", "") or "unknown"
