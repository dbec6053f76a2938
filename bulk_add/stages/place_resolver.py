import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from loguru import logger

from bulk_add.config import AMBIGUITY_THRESHOLD, MAX_CANDIDATES, RESOLVE_CONCURRENCY
from bulk_add.geography_cache import GeographyCache
from bulk_add.models import ItemKind, ItemRecord, ItemStatus, PlaceCandidate, ResolvedPlace
from bulk_add.stages.candidate_ranker import (
    build_query,
    extract_postal_code,
    pick_confident,
    rank_candidates,
)


@dataclass
class ParentLookup:
    """Shared place search outcome for every dish with the same parent restaurant."""
    candidates: List[PlaceCandidate] = field(default_factory=list)
    choice: Optional[PlaceCandidate] = None
    error: Optional[str] = None


def parent_key(name: str) -> str:
    return " ".join(name.lower().split())


class PlaceResolver:
    """
    Resolves items to real places through place search, then enriches them with
    geography from the run's GeographyCache.

    Restaurants are searched directly. Dishes are resolved through their parent
    restaurant name, with one search per unique parent name per run.
    """

    def __init__(
        self,
        places,
        geography_cache: GeographyCache,
        concurrency: int = RESOLVE_CONCURRENCY,
        ambiguity_threshold: float = AMBIGUITY_THRESHOLD,
        max_candidates: int = MAX_CANDIDATES,
    ):
        self.places = places
        self.geography_cache = geography_cache
        self.ambiguity_threshold = ambiguity_threshold
        self.max_candidates = max_candidates
        self.concurrency = max(1, concurrency)
        self._semaphore: Optional[asyncio.Semaphore] = None
        self._parent_lookups: Dict[str, asyncio.Future] = {}
        self._parent_selections: Dict[str, PlaceCandidate] = {}

    async def _search(self, query: str) -> List[PlaceCandidate]:
        # Created on first use so it binds to the loop that runs the searches
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.concurrency)
        async with self._semaphore:
            logger.debug(f"🔎 Place search for '{query}'")
            candidates = await self.places.search(query)
        return list(candidates or [])[: self.max_candidates]

    async def resolve(self, item: ItemRecord) -> ItemRecord:
        """
        Resolve one item that is in the `resolving` state.

        Args:
            item (ItemRecord): Item to resolve; mutated in place.

        Returns:
            ItemRecord: The same item, now ready, review_needed, awaiting_selection or error.
        """
        if item.kind is ItemKind.DISH:
            return await self._resolve_dish(item)

        query = build_query(item.name, item.location_hint)
        try:
            candidates = await self._search(query)
        except Exception as e:
            logger.debug(f"⚠️ Place search failed for line {item.line_number} '{query}': {e}")
            return item.transition(ItemStatus.REVIEW_NEEDED, f"Place search failed: {e}")

        if not candidates:
            return item.transition(ItemStatus.REVIEW_NEEDED, f"No places found for '{query}'")

        ranked = rank_candidates(item.name, item.location_hint, candidates)
        item.candidates = [candidate for candidate, _ in ranked]
        choice = pick_confident(ranked, self.ambiguity_threshold)
        if choice is None:
            return item.transition(
                ItemStatus.AWAITING_SELECTION,
                f"{len(candidates)} places found. Please select one.",
            )
        return await self.apply_candidate(item, choice)

    async def _lookup_parent(self, key: str, parent_name: str) -> ParentLookup:
        future = self._parent_lookups.get(key)
        if future is None:
            future = asyncio.ensure_future(self._search_parent(parent_name))
            self._parent_lookups[key] = future
        else:
            logger.debug(f"♻️ Reusing place search for parent restaurant '{parent_name}'")
        return await asyncio.shield(future)

    async def _search_parent(self, parent_name: str) -> ParentLookup:
        try:
            candidates = await self._search(parent_name)
        except Exception as e:
            logger.debug(f"⚠️ Place search failed for parent restaurant '{parent_name}': {e}")
            return ParentLookup(error=str(e))
        ranked = rank_candidates(parent_name, None, candidates)
        return ParentLookup(
            candidates=[candidate for candidate, _ in ranked],
            choice=pick_confident(ranked, self.ambiguity_threshold),
        )

    async def _resolve_dish(self, item: ItemRecord) -> ItemRecord:
        parent_name = item.location_hint
        if not parent_name:
            return item.transition(ItemStatus.ERROR, "Restaurant name is required for dishes")

        key = parent_key(parent_name)
        lookup = await self._lookup_parent(key, parent_name)

        if key in self._parent_selections:
            return await self.apply_candidate(item, self._parent_selections[key])
        if lookup.error:
            return item.transition(ItemStatus.REVIEW_NEEDED, f"Place search failed: {lookup.error}")
        if not lookup.candidates:
            return item.transition(ItemStatus.REVIEW_NEEDED, f'Restaurant "{parent_name}" not found')

        item.candidates = list(lookup.candidates)
        if lookup.choice is None:
            return item.transition(
                ItemStatus.AWAITING_SELECTION,
                f'{len(lookup.candidates)} restaurants found for "{parent_name}". Please select one.',
            )
        return await self.apply_candidate(item, lookup.choice)

    def remember_parent_selection(self, item: ItemRecord, candidate: PlaceCandidate) -> None:
        """Record an operator's choice so later dishes with the same parent reuse it."""
        if item.kind is ItemKind.DISH and item.location_hint:
            self._parent_selections[parent_key(item.location_hint)] = candidate

    async def apply_candidate(self, item: ItemRecord, candidate: PlaceCandidate) -> ItemRecord:
        """
        Attach a chosen place to an item and look up its geography.

        A missing postal code or an unknown neighborhood still leaves the item
        ready, with a warning in its message. A failing geography service sends
        the item to review.

        Args:
            item (ItemRecord): Item being resolved; mutated in place.
            candidate (PlaceCandidate): The place chosen automatically or by the operator.

        Returns:
            ItemRecord: The same item.
        """
        postal_code = extract_postal_code(candidate)
        warnings = []
        geography = None
        if postal_code:
            try:
                geography = await self.geography_cache.lookup(postal_code)
            except Exception as e:
                logger.debug(f"⚠️ Geography lookup failed for line {item.line_number} ({postal_code}): {e}")
                return item.transition(ItemStatus.REVIEW_NEEDED, f"Geography lookup failed: {e}")
            if geography is None:
                warnings.append(f"no neighborhood found for postal code {postal_code}")
        else:
            warnings.append("no postal code found in address")

        item.resolved = ResolvedPlace(
            address=candidate.formatted_address,
            place_id=candidate.place_id,
            place_name=candidate.name,
            lat=candidate.lat,
            lng=candidate.lng,
            postal_code=postal_code,
            city_id=geography.city_id if geography else None,
            city_name=geography.city_name if geography else None,
            neighborhood_id=geography.neighborhood_id if geography else None,
            neighborhood_name=geography.neighborhood_name if geography else None,
        )

        if item.kind is ItemKind.DISH:
            message = f"Dish will be added to {candidate.name}"
        else:
            area = item.resolved.neighborhood_name or item.resolved.city_name or candidate.formatted_address
            message = f"Ready to add {item.name} in {area}"
        if warnings:
            message += f" (warning: {'; '.join(warnings)})"

        logger.debug(f"📍 Line {item.line_number} resolved to {candidate.place_id}")
        return item.transition(ItemStatus.READY, message)
