"""
Coarse geo lookup for anonymized addresses.

Resolution is pluggable: ``StaticGeoResolver`` answers "Unknown" for
every address (no third-party lookups), ``IpApiGeoResolver`` queries an
ipapi-style JSON endpoint. Both skip addresses that can never resolve
(private, loopback, reserved, unparseable).
"""

import ipaddress
from dataclasses import dataclass
from typing import Optional

import httpx
import structlog

from pulse.core.config import settings
from pulse.services.ip import UNKNOWN_IP

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GeoLocation:
    country: str
    city: Optional[str] = None
    region: Optional[str] = None
    timezone: Optional[str] = None


UNKNOWN_LOCATION = GeoLocation(country="Unknown")


def is_resolvable(ip: str) -> bool:
    """False for empty/unknown, unparseable, private, loopback and reserved addresses."""
    if not ip or ip == UNKNOWN_IP:
        return False
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return False
    return not (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


class GeoResolver:
    """Base resolver. Subclasses implement ``_resolve`` for public addresses."""

    async def lookup(self, ip: str) -> GeoLocation:
        if not is_resolvable(ip):
            return UNKNOWN_LOCATION
        return await self._resolve(ip)

    async def _resolve(self, ip: str) -> GeoLocation:
        raise NotImplementedError

    async def aclose(self) -> None:
        pass


class StaticGeoResolver(GeoResolver):
    """Resolver that never leaves the process."""

    async def _resolve(self, ip: str) -> GeoLocation:
        return UNKNOWN_LOCATION


class IpApiGeoResolver(GeoResolver):
    """
    Lookup through an ipapi.co compatible endpoint.

    Expects ``country_name``, ``city``, ``region`` and ``timezone`` keys.
    Any HTTP, network or payload failure degrades to Unknown.
    """

    def __init__(
        self,
        url_template: str = "https://ipapi.co/{ip}/json/",
        timeout: float = 2.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url_template = url_template
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def _resolve(self, ip: str) -> GeoLocation:
        try:
            response = await self._client.get(self.url_template.format(ip=ip))
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Geo lookup failed", ip=ip, error=str(e))
            return UNKNOWN_LOCATION

        if not isinstance(data, dict) or data.get("error"):
            return UNKNOWN_LOCATION

        return GeoLocation(
            country=data.get("country_name") or "Unknown",
            city=data.get("city") or None,
            region=data.get("region") or None,
            timezone=data.get("timezone") or None,
        )

    async def aclose(self) -> None:
        await self._client.aclose()


def get_geo_resolver() -> GeoResolver:
    """Build the resolver selected by GEO_PROVIDER."""
    if settings.GEO_PROVIDER == "ipapi":
        return IpApiGeoResolver(settings.GEO_API_URL, timeout=settings.GEO_TIMEOUT_SECONDS)
    if settings.GEO_PROVIDER not in ("", "none"):
        logger.warning("Unknown GEO_PROVIDER, falling back to static", provider=settings.GEO_PROVIDER)
    return StaticGeoResolver()
