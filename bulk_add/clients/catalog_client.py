"""
Singleton catalog client for duplicate checks and bulk creation.
"""
import asyncio
from typing import Any, Dict, List, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from aiolimiter import AsyncLimiter
from loguru import logger

from bulk_add.config import CATALOG_API_TOKEN, CATALOG_API_URL, REQUEST_TIMEOUT, REQUESTS_PER_SECOND
from bulk_add.errors import ClassificationServiceError, SubmissionTransportError
from bulk_add.models import ExistingMatch, SubmissionOutcome

AUTH_STATUSES = (401, 403)


def _results(payload: Any) -> List[Dict[str, Any]]:
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        data = payload.get("data", payload)
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            return data.get("results", [])
    return []


def match_from_row(row: Dict[str, Any]) -> ExistingMatch:
    return ExistingMatch(line_number=row.get("lineNumber"), existing_id=row.get("existingId"))


def outcome_from_row(row: Dict[str, Any]) -> SubmissionOutcome:
    return SubmissionOutcome(
        outcome=row.get("outcome", "error"),
        line_number=row.get("lineNumber"),
        final_id=row.get("finalId", row.get("id")),
        message=row.get("message"),
        name=row.get("name"),
    )


class CatalogClient:
    """
    Singleton client for the catalog admin bulk-add API.
    Uses AsyncLimiter for rate limiting.
    """
    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not CatalogClient._initialized:
            self.base_url = CATALOG_API_URL.rstrip("/")
            self.token = CATALOG_API_TOKEN
            self.rate_limiter = AsyncLimiter(max_rate=REQUESTS_PER_SECOND, time_period=1.0)
            self._session: Optional[ClientSession] = None
            CatalogClient._initialized = True

    async def _get_session(self) -> ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
            self._session = ClientSession(timeout=ClientTimeout(total=REQUEST_TIMEOUT), headers=headers)
        return self._session

    async def _post(self, path: str, body: Dict[str, Any]) -> Any:
        """
        POST a JSON body to the catalog and return the decoded JSON response.

        Raises:
            ClientError / asyncio.TimeoutError: On transport failure.
            SubmissionTransportError: On a non-2xx status (callers re-wrap as needed).
        """
        async with self.rate_limiter:
            session = await self._get_session()
            async with session.post(f"{self.base_url}{path}", json=body) as resp:
                if resp.status >= 400:
                    detail = await resp.text()
                    raise SubmissionTransportError(
                        f"Catalog API error {resp.status}: {detail[:200]}",
                        status=resp.status,
                        systemic=resp.status in AUTH_STATUSES,
                    )
                return await resp.json()

    async def check_existing(self, keys: List[Dict[str, Any]]) -> List[ExistingMatch]:
        """
        Ask the catalog which items already exist.

        Args:
            keys: One {name, kind, cityId, lineNumber} dict per item.

        Returns:
            One ExistingMatch per item the backend reported on.

        Raises:
            ClassificationServiceError: If the call itself fails.
        """
        try:
            payload = await self._post("/admin/bulk-add/check-existing", {"items": keys})
        except (ClientError, asyncio.TimeoutError, SubmissionTransportError) as e:
            logger.debug(f"⚠️ Duplicate check request failed: {e}")
            raise ClassificationServiceError(f"Duplicate check failed: {e}") from e
        return [match_from_row(row) for row in _results(payload) if row.get("lineNumber") is not None]

    async def bulk_create(self, items: List[Dict[str, Any]]) -> List[SubmissionOutcome]:
        """
        Create a chunk of items in the catalog.

        Args:
            items: Resolved item payloads, each carrying its lineNumber.

        Returns:
            One SubmissionOutcome per item the backend reported on.

        Raises:
            SubmissionTransportError: If the chunk call fails as a whole.
        """
        try:
            payload = await self._post("/admin/bulk-add", {"items": items})
        except asyncio.TimeoutError as e:
            logger.debug(f"⏱️ TIMEOUT submitting {len(items)} items")
            raise SubmissionTransportError("Submission timed out") from e
        except ClientError as e:
            logger.debug(f"⚠️ Submission request failed: {e}")
            raise SubmissionTransportError(f"Submission request failed: {e}") from e
        return [outcome_from_row(row) for row in _results(payload)]

    async def close(self):
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
