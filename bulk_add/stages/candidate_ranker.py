import re
from typing import List, Optional, Tuple

from rapidfuzz import fuzz

from bulk_add.config import AMBIGUITY_THRESHOLD, LOCATION_WEIGHT, NAME_WEIGHT
from bulk_add.models import PlaceCandidate

# US ZIP, optionally ZIP+4; the last match in an address is the postal code
_POSTAL_CODE_RE = re.compile(r"\b(\d{5})(?:-\d{4})?\b")


def build_query(name: str, location_hint: Optional[str] = None) -> str:
    """Build the place search query from an item name and optional location."""
    if location_hint:
        return f"{name} {location_hint}".strip()
    return name.strip()


def score_candidate(
    name: str,
    location_hint: Optional[str],
    candidate: PlaceCandidate,
    name_weight: float = NAME_WEIGHT,
    location_weight: float = LOCATION_WEIGHT,
) -> float:
    """
    Score how well a place candidate matches an item, from 0 to 100.

    Args:
        name (str): Item name (or parent restaurant name for dishes).
        location_hint (Optional[str]): City name, if known.
        candidate (PlaceCandidate): Candidate returned by place search.
        name_weight (float): Weight for the name similarity score.
        location_weight (float): Weight for the location similarity score.

    Returns:
        float: Weighted similarity score.
    """
    name_score = fuzz.token_set_ratio(name.lower(), (candidate.name or "").lower())
    if not location_hint:
        return float(name_score)

    address = candidate.formatted_address or ""
    location_score = fuzz.partial_ratio(location_hint.lower(), address.lower()) if address else 0
    return (name_weight * name_score) + (location_weight * location_score)


def rank_candidates(
    name: str,
    location_hint: Optional[str],
    candidates: List[PlaceCandidate],
) -> List[Tuple[PlaceCandidate, float]]:
    """Return candidates with their scores, best first. Ties keep search order."""
    scored = [(candidate, score_candidate(name, location_hint, candidate)) for candidate in candidates]
    return sorted(scored, key=lambda pair: pair[1], reverse=True)


def pick_confident(
    ranked: List[Tuple[PlaceCandidate, float]],
    threshold: float = AMBIGUITY_THRESHOLD,
) -> Optional[PlaceCandidate]:
    """
    Pick the top candidate when the choice is unambiguous.

    Args:
        ranked (List[Tuple[PlaceCandidate, float]]): Output of rank_candidates.
        threshold (float): Score gap the top candidate needs over the runner-up.

    Returns:
        Optional[PlaceCandidate]: The winner, or None if the operator has to choose.
    """
    if not ranked:
        return None
    if len(ranked) == 1:
        return ranked[0][0]

    (top, top_score), (_, second_score) = ranked[0], ranked[1]
    if top_score - second_score >= threshold:
        return top
    return None


def extract_postal_code(candidate: PlaceCandidate) -> Optional[str]:
    """Postal code from structured components, falling back to the formatted address."""
    if candidate.postal_code:
        return candidate.postal_code
    matches = _POSTAL_CODE_RE.findall(candidate.formatted_address or "")
    return matches[-1] if matches else None
