"""
Session-scoped caches for discovery and oracle lookups.

A SessionCache lives as long as the BridgeSession that owns it and never
evicts on its own; entries go away only through ``invalidate`` or ``flush``.
Negative results are cached like any other value, so ``get`` signals a miss
with the ``MISSING`` sentinel rather than ``None``.

Key schema (tuples, first element is the namespace):
    ("canister", contract, chain_key)           -> mirror canister or NO_MIRROR
    ("token", contract, chain_key, token_id)    -> mirror owner or NOT_MINTED
    ("bridge-addresses", contract, chain_key)   -> frozenset of approval addresses
"""

from typing import Any, Hashable, Optional

from cknft_bridge.utils.logging import get_logger

logger = get_logger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


class SessionCache:
    """In-memory cache with hit/miss stats and explicit invalidation."""

    def __init__(self, name: str = "session"):
        self.name = name
        self._entries: dict[tuple, Any] = {}
        self._hits = 0
        self._misses = 0

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: tuple) -> bool:
        return key in self._entries

    def get(self, key: tuple) -> Any:
        """Cached value, or MISSING."""
        if key in self._entries:
            self._hits += 1
            return self._entries[key]
        self._misses += 1
        return MISSING

    def set(self, key: tuple, value: Any) -> None:
        self._entries[key] = value

    def invalidate(self, *prefix: Hashable) -> int:
        """
        Drop every entry whose key starts with ``prefix``.

        Returns:
            Number of entries removed
        """
        stale = [k for k in self._entries if k[:len(prefix)] == prefix]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("Cache invalidated", cache=self.name, prefix=prefix, removed=len(stale))
        return len(stale)

    def flush(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def cache_stats(self, namespace: Optional[str] = None) -> dict:
        """Get cache hit/miss statistics."""
        total = self._hits + self._misses
        entries = self._entries if namespace is None else [k for k in self._entries if k[0] == namespace]
        return {
            "entries": len(entries),
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }
