"""
Search capability.

Keyword search through a pluggable provider. The ``mock`` provider returns
deterministic placeholder results and needs no network; ``brave`` calls the
Brave Search API over aiohttp.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import aiohttp

from ..exceptions import CapabilityExecutionError
from . import Capability, CapabilitySchema

BRAVE_URL = "https://api.search.brave.com/res/v1/web/search"
MOCK_RESULT_LIMIT = 5


@dataclass
class SearchResult:
    """A single search result."""
    title: str
    url: str
    snippet: str
    rank: int
    relevance: float = 1.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "snippet": self.snippet,
            "rank": self.rank,
            "relevance": self.relevance,
        }


@dataclass
class SearchCacheEntry:
    results: List[SearchResult]
    timestamp: datetime
    ttl_seconds: int

    def is_expired(self) -> bool:
        return datetime.now() - self.timestamp > timedelta(seconds=self.ttl_seconds)


class SearchCapability(Capability):
    """Keyword search for function-call tasks.

    Usage from a task's process field::

        search(query="vector databases", limit=3)
    """

    PROVIDERS = ("mock", "brave")

    def __init__(
        self,
        provider: str = "mock",
        api_key: Optional[str] = None,
        max_results: int = 10,
        cache_ttl_seconds: int = 3600,
        timeout: float = 10.0,
    ):
        super().__init__(
            name="search",
            description="Search the web for information using keywords",
        )
        if provider not in self.PROVIDERS:
            raise ValueError(f"Unknown search provider: {provider}")
        self.provider = provider
        self.api_key = api_key
        self.max_results = max_results
        self.cache_ttl_seconds = cache_ttl_seconds
        self.timeout = timeout

        self._cache: Dict[str, SearchCacheEntry] = {}
        self._session: Optional[aiohttp.ClientSession] = None

    def get_schema(self) -> CapabilitySchema:
        return CapabilitySchema(
            name=self.name,
            description=self.description,
            parameters={
                "query": {"type": "string", "description": "Search query"},
                "limit": {"type": "integer", "description": "Maximum number of results"},
            },
            required=["query"],
        )

    async def execute(self, **kwargs: Any) -> Dict[str, Any]:
        query = str(kwargs.get("query", "")).strip()
        if not query:
            raise CapabilityExecutionError("Empty search query")
        limit = max(1, min(int(kwargs.get("limit", self.max_results)), self.max_results))

        cached = self._get_from_cache(query, limit)
        if cached is not None:
            results, from_cache = cached, True
        else:
            if self.provider == "brave":
                results = await self._search_brave(query, limit)
            else:
                results = self._search_mock(query, limit)
            self._add_to_cache(query, limit, results)
            from_cache = False

        selected = results[:limit]
        return {
            "query": query,
            "results": [r.to_dict() for r in selected],
            "count": len(selected),
            "cached": from_cache,
        }

    def _search_mock(self, query: str, limit: int) -> List[SearchResult]:
        return [
            SearchResult(
                title=f"Result {i + 1} for '{query}'",
                url=f"https://example.com/result{i + 1}",
                snippet=f"This is a snippet for search result {i + 1} related to {query}...",
                rank=i + 1,
                relevance=round(1.0 - i * 0.1, 2),
            )
            for i in range(min(limit, MOCK_RESULT_LIMIT))
        ]

    async def _search_brave(self, query: str, limit: int) -> List[SearchResult]:
        if not self.api_key:
            raise CapabilityExecutionError("Brave Search API key required", error_code="NO_API_KEY")

        session = await self._get_session()
        headers = {"X-Subscription-Token": self.api_key, "Accept": "application/json"}
        params = {"q": query, "count": limit}

        try:
            async with session.get(
                BRAVE_URL,
                headers=headers,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            ) as resp:
                if resp.status != 200:
                    raise CapabilityExecutionError(f"Brave API error: HTTP {resp.status}")
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise CapabilityExecutionError(f"Search request failed: {e}") from e

        items = data.get("web", {}).get("results", [])
        return [
            SearchResult(
                title=item.get("title", ""),
                url=item.get("url", ""),
                snippet=item.get("description", ""),
                rank=i + 1,
            )
            for i, item in enumerate(items)
        ]

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    def _cache_key(self, query: str, limit: int) -> str:
        return hashlib.md5(f"{query.lower()}|{limit}".encode()).hexdigest()

    def _get_from_cache(self, query: str, limit: int) -> Optional[List[SearchResult]]:
        key = self._cache_key(query, limit)
        entry = self._cache.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._cache[key]
            return None
        return entry.results

    def _add_to_cache(self, query: str, limit: int, results: List[SearchResult]) -> None:
        if self.cache_ttl_seconds <= 0:
            return
        self._cache[self._cache_key(query, limit)] = SearchCacheEntry(
            results=results,
            timestamp=datetime.now(),
            ttl_seconds=self.cache_ttl_seconds,
        )

    def clear_cache(self) -> None:
        self._cache.clear()

    async def close(self) -> None:
        """Close the HTTP session."""
        if self._session and not self._session.closed:
            await self._session.close()
