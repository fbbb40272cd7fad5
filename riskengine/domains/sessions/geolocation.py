"""Network address to approximate location resolution.

Resolution is best-effort: an unknown or private address resolves to None,
which downstream detection treats as "cannot assess". Transport failures
raise GeolocationUnavailable so callers can log and retry.
"""

import ipaddress
from abc import ABC, abstractmethod
from collections import OrderedDict
from collections.abc import Mapping

import httpx
import structlog

from .errors import GeolocationUnavailable
from .models import GeoLocation

logger = structlog.get_logger()


def is_public_address(ip_address: str) -> bool:
    try:
        addr = ipaddress.ip_address(ip_address)
    except ValueError:
        return False
    return addr.is_global


class GeolocationResolver(ABC):
    @abstractmethod
    async def resolve(self, ip_address: str) -> GeoLocation | None: ...

    async def close(self) -> None:
        return None


class StaticGeolocationResolver(GeolocationResolver):
    """Resolver over a fixed address table."""

    def __init__(self, table: Mapping[str, GeoLocation] | None = None) -> None:
        self._table = dict(table or {})

    def add(self, ip_address: str, location: GeoLocation) -> None:
        self._table[ip_address] = location

    async def resolve(self, ip_address: str) -> GeoLocation | None:
        return self._table.get(ip_address)


class HttpGeolocationResolver(GeolocationResolver):
    """Resolver backed by an ip-api style JSON endpoint.

    ``GET {base_url}/{ip}`` is expected to return ``status``, ``city``,
    ``countryCode``, ``lat`` and ``lon``. Successful lookups, including
    misses, are kept in an LRU of at most ``cache_size`` addresses.
    """

    def __init__(
        self,
        base_url: str,
        timeout_seconds: float = 1.5,
        client: httpx.AsyncClient | None = None,
        cache_size: int = 4096,
    ) -> None:
        if cache_size <= 0:
            raise ValueError(f"cache_size must be positive, got {cache_size}")
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self._cache_size = cache_size
        self._cache: OrderedDict[str, GeoLocation | None] = OrderedDict()

    def _remember(self, ip_address: str, location: GeoLocation | None) -> None:
        self._cache[ip_address] = location
        self._cache.move_to_end(ip_address)
        while len(self._cache) > self._cache_size:
            self._cache.popitem(last=False)

    async def resolve(self, ip_address: str) -> GeoLocation | None:
        if ip_address in self._cache:
            self._cache.move_to_end(ip_address)
            return self._cache[ip_address]

        if not is_public_address(ip_address):
            self._remember(ip_address, None)
            return None

        try:
            response = await self._client.get(f"{self._base_url}/{ip_address}")
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("geolocation_lookup_failed", ip_address=ip_address, error=str(exc))
            raise GeolocationUnavailable(ip_address, exc) from exc

        location = None
        if body.get("status", "success") == "success" and body.get("lat") is not None:
            location = GeoLocation(
                city=body.get("city"),
                country=body.get("countryCode") or body.get("country"),
                latitude=float(body["lat"]),
                longitude=float(body["lon"]),
            )
        else:
            logger.debug("geolocation_unknown", ip_address=ip_address, message=body.get("message"))

        self._remember(ip_address, location)
        return location

    async def close(self) -> None:
        await self._client.aclose()
