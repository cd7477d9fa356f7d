# Overview: Bounded, time-expiring read cache for paginated product searches.

"""
Read cache in front of products_service.query_products().

Keys are built only from parameters that differ from their defaults, so
equivalent searches collide and the unfiltered first page always maps to
the shared key "default".

The cache never touches storage itself: callers hand it a loader and it
decides whether to call it.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Iterable

from flask import current_app

from ..errors import TillcoreError
from .results import BestEffortResult

logger = logging.getLogger(__name__)

CACHE_EXTENSION_KEY = "tillcore.product_cache"

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 50
DEFAULT_SORT_BY = "name"
DEFAULT_SORT_ORDER = "asc"
DEFAULT_KEY = "default"


@dataclass(frozen=True)
class ProductSearchParams:
    query: str | None = None
    category: str | None = None
    brand: str | None = None
    min_price: float | None = None
    max_price: float | None = None
    in_stock_only: bool = False
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_PAGE_SIZE
    sort_by: str = DEFAULT_SORT_BY
    sort_order: str = DEFAULT_SORT_ORDER

    def is_general_listing(self) -> bool:
        """No text/category/brand narrowing: any product write can change it."""
        return not ((self.query or "").strip() or self.category or self.brand)


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("|", "\\|")


def canonical_key(params: ProductSearchParams, page_size: int = DEFAULT_PAGE_SIZE) -> str:
    """
    Free-text values are escaped so a "|" inside them cannot forge another
    search's key. page_size is the limit that counts as "not given".
    """
    parts: list[str] = []
    query = (params.query or "").strip()
    if query:
        parts.append(f"q:{_quote(query)}")
    if params.category:
        parts.append(f"cat:{_quote(params.category)}")
    if params.brand:
        parts.append(f"brand:{_quote(params.brand)}")
    if params.min_price is not None:
        parts.append(f"minP:{float(params.min_price)}")
    if params.max_price is not None:
        parts.append(f"maxP:{float(params.max_price)}")
    if params.in_stock_only:
        parts.append("inStock:true")
    if params.page != DEFAULT_PAGE:
        parts.append(f"p:{params.page}")
    if params.limit != page_size:
        parts.append(f"l:{params.limit}")
    if params.sort_by != DEFAULT_SORT_BY:
        parts.append(f"sort:{params.sort_by}")
    if params.sort_order.lower() != DEFAULT_SORT_ORDER:
        parts.append(f"order:{params.sort_order.lower()}")
    return "|".join(parts) if parts else DEFAULT_KEY


@dataclass
class CacheEntry:
    params: ProductSearchParams
    result: dict
    created_at: float

    @property
    def products(self) -> list[dict]:
        return self.result.get("products", [])


class ProductCache:
    def __init__(
        self,
        ttl_seconds: float = 300,
        max_entries: int = 100,
        page_size: int = DEFAULT_PAGE_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.page_size = page_size
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        # bumped by every invalidate()/clear(); loads that straddle a bump are not stored
        self._generation = 0
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def key(self, params: ProductSearchParams) -> str:
        return canonical_key(params, self.page_size)

    def default_params(self, **overrides) -> ProductSearchParams:
        return ProductSearchParams(limit=self.page_size, **overrides)

    def _expired(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at > self.ttl_seconds

    def get(self, params: ProductSearchParams) -> dict | None:
        key = self.key(params)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.misses += 1
                return None
            if self._expired(entry, self._clock()):
                del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry.result

    def put(self, params: ProductSearchParams, result: dict, generation: int | None = None) -> bool:
        """
        Store a result. When generation is given and an invalidation has
        happened since it was read, the result is dropped and False returned.
        """
        key = self.key(params)
        with self._lock:
            if generation is not None and generation != self._generation:
                logger.debug("Discarding cached load for %s: invalidated while loading", key)
                return False
            now = self._clock()
            if key not in self._entries and len(self._entries) >= self.max_entries:
                self._evict(now)
            self._entries[key] = CacheEntry(params=params, result=result, created_at=now)
            return True

    def get_or_load(self, params: ProductSearchParams, loader: Callable[[ProductSearchParams], dict]) -> dict:
        with self._lock:
            cached = self.get(params)
            generation = self._generation
        if cached is not None:
            return cached
        result = loader(params)
        self.put(params, result, generation=generation)
        return result

    def _evict(self, now: float) -> None:
        for key in [k for k, e in self._entries.items() if self._expired(e, now)]:
            del self._entries[key]

        keep = self.max_entries // 2
        if len(self._entries) > keep:
            oldest_first = sorted(self._entries.items(), key=lambda item: item[1].created_at)
            for key, _ in oldest_first[: len(self._entries) - keep]:
                del self._entries[key]

    def invalidate(
        self,
        product_id: str | None = None,
        categories: Iterable[str | None] = (),
        brands: Iterable[str | None] = (),
    ) -> int:
        """
        Drop entries a product write may have made stale.

        An entry goes if it is a general listing, if it filters on one of
        the given categories/brands, or if its page contains product_id.
        Returns the number of entries dropped.
        """
        categories = {c for c in categories if c}
        brands = {b for b in brands if b}
        with self._lock:
            self._generation += 1
            stale = []
            for key, entry in self._entries.items():
                params = entry.params
                if params.is_general_listing():
                    stale.append(key)
                elif params.category in categories or params.brand in brands:
                    stale.append(key)
                elif product_id and any(p.get("id") == product_id for p in entry.products):
                    stale.append(key)
            for key in stale:
                del self._entries[key]
        if stale:
            logger.debug("Invalidated %d cached product pages", len(stale))
        return len(stale)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._entries.clear()

    def stats(self) -> dict:
        with self._lock:
            now = self._clock()
            expired = sum(1 for e in self._entries.values() if self._expired(e, now))
            return {
                "size": len(self._entries),
                "valid_entries": len(self._entries) - expired,
                "expired_entries": expired,
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "hits": self.hits,
                "misses": self.misses,
            }

    def preload(
        self,
        loader: Callable[[ProductSearchParams], dict],
        categories: Iterable[str] = (),
    ) -> BestEffortResult:
        """Warm the common first-paint queries through the normal cached path."""
        queries = [
            self.default_params(),
            self.default_params(sort_by="created_at", sort_order="desc"),
            *(self.default_params(category=c) for c in categories),
            self.default_params(in_stock_only=True),
        ]
        result = BestEffortResult(operation="cache_preload")
        for params in queries:
            try:
                self.get_or_load(params, loader)
                result.record_success()
            except TillcoreError as exc:
                logger.warning("Cache preload failed for %s: %s", self.key(params), exc)
                result.record_failure(f"{self.key(params)}: {exc}")
        return result


def get_product_cache() -> ProductCache:
    return current_app.extensions[CACHE_EXTENSION_KEY]
