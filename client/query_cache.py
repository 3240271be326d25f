"""
client/query_cache.py
Keyed request cache for API consumers.

Keys are tuples whose first two parts name the resource, e.g.
("availability", guide_id, from, to, status). Mutations drop every entry
under a prefix; a response superseded by a newer fetch of the same resource
with different parameters, or one still in flight when a mutation
invalidated its prefix, comes back marked stale and is not stored.
"""

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Optional, Tuple

logger = logging.getLogger(__name__)

CacheKey = Tuple[Hashable, ...]

RESOURCE_KEY_LENGTH = 2


@dataclass(frozen=True)
class QueryResult:
    data: Any = None
    error: Optional[str] = None
    status_code: Optional[int] = None
    stale: bool = False
    from_cache: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.stale


class QueryError(Exception):
    """Raised by loaders to report a failed request with the server's message."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class QueryCache:
    def __init__(self):
        self._entries: Dict[CacheKey, Any] = {}
        self._latest: Dict[CacheKey, Tuple[int, CacheKey]] = {}
        # prefix -> counter value at its most recent invalidation
        self._invalidated: Dict[CacheKey, int] = {}
        self._counter = 0

    def __contains__(self, key: CacheKey) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: CacheKey) -> Any:
        return self._entries.get(key)

    def set(self, key: CacheKey, value: Any) -> None:
        self._entries[key] = value

    def invalidate(self, prefix: CacheKey) -> int:
        """Drop every entry whose key starts with prefix. Returns the count dropped."""
        self._counter += 1
        self._invalidated[prefix] = self._counter
        size = len(prefix)
        doomed = [k for k in self._entries if k[:size] == prefix]
        for key in doomed:
            del self._entries[key]
        if doomed:
            logger.debug(f"Invalidated {len(doomed)} cache entries under {prefix}")
        return len(doomed)

    def clear(self) -> None:
        self._entries.clear()
        self._latest.clear()
        self._invalidated.clear()

    # ── Request tokens ───────────────────────────────────────
    @staticmethod
    def resource_of(key: CacheKey) -> CacheKey:
        return key[:RESOURCE_KEY_LENGTH]

    def begin(self, key: CacheKey) -> int:
        """Record a new request for key's resource and return its token."""
        self._counter += 1
        self._latest[self.resource_of(key)] = (self._counter, key)
        return self._counter

    def is_superseded(self, key: CacheKey, token: int) -> bool:
        """True when a newer request for the same resource asked for different parameters."""
        latest = self._latest.get(self.resource_of(key))
        if latest is None:
            return False
        latest_token, latest_key = latest
        return latest_token != token and latest_key != key

    def invalidated_since(self, key: CacheKey, token: int) -> bool:
        """True when an invalidate() covering key ran after the request holding token began."""
        return any(
            key[:len(prefix)] == prefix and counter > token
            for prefix, counter in self._invalidated.items()
        )

    async def fetch(self, key: CacheKey, loader: Callable[[], Awaitable[Any]]) -> QueryResult:
        """
        Serve key from the cache or run loader.
        Failures are returned, not raised, and are never cached. No retry.
        """
        token = self.begin(key)
        if key in self._entries:
            return QueryResult(data=self._entries[key], from_cache=True)

        try:
            data = await loader()
        except QueryError as e:
            if self.is_superseded(key, token):
                return QueryResult(error=e.message, status_code=e.status_code, stale=True)
            return QueryResult(error=e.message, status_code=e.status_code)

        if self.is_superseded(key, token):
            logger.debug(f"Discarding superseded response for {key}")
            return QueryResult(data=data, stale=True)
        if self.invalidated_since(key, token):
            logger.debug(f"Discarding response for {key} invalidated while in flight")
            return QueryResult(data=data, stale=True)

        self._entries[key] = data
        return QueryResult(data=data)
