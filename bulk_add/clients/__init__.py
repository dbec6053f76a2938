"""Client singletons for external API interactions."""
from bulk_add.clients.places_client import PlacesClient
from bulk_add.clients.geography_client import GeographyClient
from bulk_add.clients.catalog_client import CatalogClient

__all__ = ["PlacesClient", "GeographyClient", "CatalogClient"]
