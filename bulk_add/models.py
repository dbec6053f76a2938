"""
Typed data models for the bulk add pipeline.
All data structures used throughout the codebase should be defined here.
"""
import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from bulk_add.errors import InvalidTransitionError


class ItemKind(str, Enum):
    RESTAURANT = "restaurant"
    DISH = "dish"
    UNKNOWN = "unknown"


class ItemStatus(str, Enum):
    PENDING = "pending"
    RESOLVING = "resolving"
    READY = "ready"
    REVIEW_NEEDED = "review_needed"
    AWAITING_SELECTION = "awaiting_selection"
    DUPLICATE = "duplicate"
    ADDED = "added"
    SKIPPED = "skipped"
    ERROR = "error"


class RunStatus(str, Enum):
    IDLE = "idle"
    PARSING = "parsing"
    RESOLVING = "resolving"
    AWAITING_SELECTION = "awaiting_selection"
    CLASSIFYING = "classifying"
    SUBMITTING = "submitting"
    DONE = "done"


ALLOWED_TRANSITIONS = {
    ItemStatus.PENDING: {ItemStatus.RESOLVING, ItemStatus.ERROR},
    ItemStatus.RESOLVING: {
        ItemStatus.READY,
        ItemStatus.REVIEW_NEEDED,
        ItemStatus.AWAITING_SELECTION,
        ItemStatus.SKIPPED,
        ItemStatus.ERROR,
    },
    ItemStatus.AWAITING_SELECTION: {ItemStatus.READY, ItemStatus.SKIPPED, ItemStatus.REVIEW_NEEDED},
    ItemStatus.READY: {ItemStatus.READY, ItemStatus.DUPLICATE, ItemStatus.ADDED, ItemStatus.ERROR},
    ItemStatus.DUPLICATE: {ItemStatus.ADDED, ItemStatus.DUPLICATE, ItemStatus.ERROR},
    ItemStatus.REVIEW_NEEDED: {ItemStatus.READY, ItemStatus.SKIPPED, ItemStatus.REVIEW_NEEDED},
    ItemStatus.ADDED: set(),
    ItemStatus.SKIPPED: set(),
    ItemStatus.ERROR: set(),
}

# Items in these states are still moving through resolution
IN_FLIGHT_STATUSES = frozenset({ItemStatus.PENDING, ItemStatus.RESOLVING, ItemStatus.AWAITING_SELECTION})


@dataclass
class PlaceCandidate:
    """Read-only result returned by the place search service."""
    place_id: str
    name: str
    formatted_address: str = ""
    lat: Optional[float] = None
    lng: Optional[float] = None
    rating: Optional[float] = None
    price_level: Optional[int] = None
    neighborhood_hint: Optional[str] = None
    postal_code: Optional[str] = None


@dataclass
class GeographyEntry:
    """City and neighborhood identifiers for one postal code."""
    city_id: Optional[int] = None
    city_name: Optional[str] = None
    neighborhood_id: Optional[int] = None
    neighborhood_name: Optional[str] = None


@dataclass
class ResolvedPlace:
    """Address and geography attached to an item once a place is chosen."""
    address: str
    place_id: str
    place_name: str
    lat: Optional[float] = None
    lng: Optional[float] = None
    postal_code: Optional[str] = None
    city_id: Optional[int] = None
    city_name: Optional[str] = None
    neighborhood_id: Optional[int] = None
    neighborhood_name: Optional[str] = None


@dataclass
class DuplicateInfo:
    is_duplicate: bool = False
    existing_id: Optional[int] = None
    force_submit: bool = False


@dataclass
class ItemRecord:
    """One line of bulk input, tracked through the whole run by its line number."""
    line_number: int
    raw_line: str
    kind: ItemKind
    name: str
    location_hint: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    resolved: Optional[ResolvedPlace] = None
    duplicate: DuplicateInfo = field(default_factory=DuplicateInfo)
    status: ItemStatus = ItemStatus.PENDING
    message: Optional[str] = None
    final_id: Optional[int] = None
    candidates: List[PlaceCandidate] = field(default_factory=list)

    def transition(self, status: ItemStatus, message: Optional[str] = None) -> "ItemRecord":
        """
        Move the item to `status`, enforcing the per-item state machine.

        Args:
            status (ItemStatus): Target status.
            message (Optional[str]): New human-readable message; keeps the old one when None.

        Returns:
            ItemRecord: The same record, for chaining.

        Raises:
            InvalidTransitionError: If the transition is not allowed from the current status.
        """
        if status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Line {self.line_number}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if message is not None:
            self.message = message
        return self

    @property
    def is_eligible(self) -> bool:
        """Whether the item may be included in a submission chunk."""
        if self.status is ItemStatus.READY:
            return True
        return self.status is ItemStatus.DUPLICATE and self.duplicate.force_submit

    def check_key(self) -> Dict[str, Any]:
        """Key sent to the catalog duplicate check."""
        return {
            "name": self.name,
            "kind": self.kind.value,
            "cityId": self.resolved.city_id if self.resolved else None,
            "lineNumber": self.line_number,
        }

    def to_payload(self) -> Dict[str, Any]:
        """Resolved item payload for the catalog bulk create call."""
        resolved = self.resolved
        payload = {
            "lineNumber": self.line_number,
            "name": self.name,
            "type": self.kind.value,
            "tags": list(self.tags),
            "address": resolved.address if resolved else "",
            "placeId": resolved.place_id if resolved else None,
            "latitude": resolved.lat if resolved else None,
            "longitude": resolved.lng if resolved else None,
            "zipcode": resolved.postal_code if resolved else None,
            "cityId": resolved.city_id if resolved else None,
            "cityName": resolved.city_name if resolved else None,
            "neighborhoodId": resolved.neighborhood_id if resolved else None,
            "neighborhoodName": resolved.neighborhood_name if resolved else None,
            "forceSubmit": self.duplicate.force_submit,
        }
        if self.kind is ItemKind.DISH:
            payload["restaurantName"] = resolved.place_name if resolved else self.location_hint
        return payload

    def snapshot(self) -> "ItemRecord":
        """Shallow copy that freezes the current status and message for reporting."""
        return copy.copy(self)


@dataclass
class ExistingMatch:
    """One row of the duplicate check response."""
    line_number: int
    existing_id: Optional[int] = None


@dataclass
class SubmissionOutcome:
    """One row of the bulk create response."""
    outcome: str  # "added", "duplicate" or "error"
    line_number: Optional[int] = None
    final_id: Optional[int] = None
    message: Optional[str] = None
    name: Optional[str] = None  # Only used when the backend omits line numbers


@dataclass
class RunSummary:
    total: int = 0
    added: int = 0
    duplicates: int = 0
    errors: int = 0
    skipped: int = 0

    @classmethod
    def from_items(cls, items: Iterable[ItemRecord]) -> "RunSummary":
        """Recompute the summary from scratch over the given items."""
        summary = cls()
        for item in items:
            summary.total += 1
            if item.status is ItemStatus.ADDED:
                summary.added += 1
            elif item.status is ItemStatus.DUPLICATE:
                summary.duplicates += 1
            elif item.status is ItemStatus.ERROR:
                summary.errors += 1
            elif item.status is ItemStatus.SKIPPED:
                summary.skipped += 1
        return summary


@dataclass
class SubmissionProgress:
    """Progress update emitted after every submitted chunk."""
    progress: float
    summary: RunSummary
    chunk_index: int = 0
    chunk_count: int = 0
