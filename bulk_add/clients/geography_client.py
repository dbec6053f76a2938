"""
Singleton geography client: postal code -> city and neighborhood.
"""
import asyncio
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from aiolimiter import AsyncLimiter
from loguru import logger

from bulk_add.config import CATALOG_API_TOKEN, CATALOG_API_URL, REQUEST_TIMEOUT, REQUESTS_PER_SECOND
from bulk_add.errors import ResolutionError
from bulk_add.models import GeographyEntry


def entry_from_payload(payload: Dict[str, Any]) -> Optional[GeographyEntry]:
    """Build a GeographyEntry from the neighborhood lookup response body."""
    data = payload.get("data", payload) if isinstance(payload, dict) else None
    if not data:
        return None
    neighborhood_id = data.get("neighborhoodId", data.get("id"))
    city_id = data.get("cityId", data.get("city_id"))
    if neighborhood_id is None and city_id is None:
        return None
    return GeographyEntry(
        city_id=city_id,
        city_name=data.get("cityName", data.get("city_name")),
        neighborhood_id=neighborhood_id,
        neighborhood_name=data.get("neighborhoodName", data.get("name")),
    )


class GeographyClient:
    """
    Singleton client for the catalog's neighborhood-by-zipcode endpoint.
    """
    _instance = None
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not GeographyClient._initialized:
            self.base_url = CATALOG_API_URL.rstrip("/")
            self.token = CATALOG_API_TOKEN
            self.rate_limiter = AsyncLimiter(max_rate=REQUESTS_PER_SECOND, time_period=1.0)
            self._session: Optional[ClientSession] = None
            GeographyClient._initialized = True

    async def _get_session(self) -> ClientSession:
        """Get or create the aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
            self._session = ClientSession(timeout=ClientTimeout(total=REQUEST_TIMEOUT), headers=headers)
        return self._session

    async def lookup(self, postal_code: str) -> Optional[GeographyEntry]:
        """
        Find the city and neighborhood for a postal code.

        Args:
            postal_code: Normalized 5-digit postal code.

        Returns:
            GeographyEntry, or None when the catalog has no neighborhood for the code.

        Raises:
            ResolutionError: On network failure, timeout or an unexpected status.
        """
        url = f"{self.base_url}/neighborhoods/zipcode/{postal_code}"
        async with self.rate_limiter:
            session = await self._get_session()
            try:
                async with session.get(url) as resp:
                    if resp.status == 404:
                        return None
                    if resp.status >= 400:
                        raise ResolutionError(f"Geography lookup failed with status {resp.status}")
                    payload = await resp.json()
            except asyncio.TimeoutError as e:
                logger.debug(f"⏱️ TIMEOUT geography lookup for {postal_code}")
                raise ResolutionError(f"Geography lookup timed out for {postal_code}") from e
            except ClientError as e:
                logger.debug(f"⚠️ Geography lookup failed for {postal_code}: {e}")
                raise ResolutionError(f"Geography lookup request failed: {e}") from e

        return entry_from_payload(payload)

    async def close(self):
        """Close the aiohttp session."""
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None
