"""
Per-run cache of postal code -> city/neighborhood lookups.
"""
import asyncio
import re
from typing import Awaitable, Callable, Dict, Optional

from loguru import logger

from bulk_add.models import GeographyEntry

LookupFn = Callable[[str], Awaitable[Optional[GeographyEntry]]]

_NON_DIGITS = re.compile(r"\D")


def normalize_postal_code(postal_code: Optional[str]) -> Optional[str]:
    """
    Normalize a postal code to its 5-digit US ZIP key.

    Args:
        postal_code (Optional[str]): Raw postal code, e.g. "10014-1234".

    Returns:
        Optional[str]: The first five digits, or None if fewer than five are present.
    """
    digits = _NON_DIGITS.sub("", postal_code or "")
    if len(digits) < 5:
        return None
    return digits[:5]


class GeographyCache:
    """
    Memoizes geography lookups for the duration of one pipeline run.

    Negative results are cached too. Concurrent first lookups for the same key
    share a single in-flight request. Failed lookups are not cached.
    """

    def __init__(
        self,
        lookup_fn: LookupFn,
        key_fn: Callable[[Optional[str]], Optional[str]] = normalize_postal_code,
    ):
        self._lookup_fn = lookup_fn
        self._key_fn = key_fn
        self._entries: Dict[str, Optional[GeographyEntry]] = {}
        self._inflight: Dict[str, asyncio.Future] = {}
        self.hits = 0
        self.misses = 0

    def __contains__(self, postal_code: str) -> bool:
        return self._key_fn(postal_code) in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, postal_code: str) -> Optional[GeographyEntry]:
        """Return an already-cached entry without calling the service."""
        key = self._key_fn(postal_code)
        return self._entries.get(key) if key else None

    async def lookup(self, postal_code: Optional[str]) -> Optional[GeographyEntry]:
        """
        Look up geography for a postal code, calling the service at most once per key.

        Args:
            postal_code (Optional[str]): Raw postal code.

        Returns:
            Optional[GeographyEntry]: The entry, or None when there is no match.
        """
        key = self._key_fn(postal_code)
        if key is None:
            logger.debug(f"📮 Unusable postal code '{postal_code}', skipping geography lookup")
            return None

        if key in self._entries:
            self.hits += 1
            logger.debug(f"📦 Geography cache hit for {key}")
            return self._entries[key]

        future = self._inflight.get(key)
        if future is None:
            self.misses += 1
            future = asyncio.ensure_future(self._fetch(key))
            self._inflight[key] = future
        else:
            self.hits += 1
        return await asyncio.shield(future)

    async def _fetch(self, key: str) -> Optional[GeographyEntry]:
        try:
            logger.debug(f"🌍 Fetching geography for postal code {key}")
            entry = await self._lookup_fn(key)
            self._entries[key] = entry
            if entry is None:
                logger.debug(f"🌍 No geography found for postal code {key}")
            return entry
        finally:
            self._inflight.pop(key, None)

    def clear(self) -> None:
        """Drop all entries and cancel lookups still in flight."""
        for future in self._inflight.values():
            future.cancel()
        self._inflight.clear()
        self._entries.clear()
        logger.debug(f"🧹 Geography cache cleared (hits={self.hits}, misses={self.misses})")
        self.hits = 0
        self.misses = 0
