"""
GeoIP resolution — cascading providers behind a TTL cache.

Priority chain (first usable answer wins wholesale, no field merging):
  1. ipwho.is
  2. ipapi.co
  3. ip-api.com

A provider answer is usable only if it signals success AND carries a
non-empty country code. Private/loopback addresses never leave the box.
If every provider fails the caller gets the "Unknown" record (XX); this
path never raises.
"""

import ipaddress
import time
from dataclasses import asdict, dataclass
from typing import Callable, Protocol

import httpx

from trafficgate.core.rwlock import AsyncReadWriteLock

import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class GeoRecord:
    success: bool = False
    country: str = "Unknown"
    country_code: str = "XX"
    region: str = ""          # region code
    region_name: str = ""
    city: str = ""
    isp: str = ""
    org: str = ""
    as_info: str = ""
    proxy: bool = False
    hosting: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


UNKNOWN_GEO = GeoRecord()

LOCAL_GEO = GeoRecord(
    success=True,
    country="Local",
    country_code="LO",
    city="Localhost",
    isp="Local Network",
)


def is_local_ip(ip: str) -> bool:
    try:
        addr = ipaddress.ip_address((ip or "").strip())
    except ValueError:
        return False
    return addr.is_private or addr.is_loopback or addr.is_link_local


_MOJIBAKE_MARKERS = ("Ã", "Â", "�")


def _mojibake_score(text: str) -> int:
    return sum(text.count(m) for m in _MOJIBAKE_MARKERS)


def fix_mojibake(text: str) -> str:
    """
    Repair UTF-8 text that was decoded as Latin-1 somewhere upstream
    ("SÃ£o Paulo" -> "São Paulo"). Text without the telltale characters, or
    that doesn't round-trip cleanly, comes back unchanged.
    """
    if not text or not any(m in text for m in _MOJIBAKE_MARKERS):
        return text
    try:
        fixed = text.encode("latin-1").decode("utf-8")
    except UnicodeError:
        return text
    if not fixed or _mojibake_score(fixed) > _mojibake_score(text):
        return text
    return fixed


def _s(value) -> str:
    return value.strip() if isinstance(value, str) else ""


def _b(value) -> bool:
    return value is True


class GeoProvider(Protocol):
    name: str

    async def fetch(self, ip: str) -> GeoRecord | None:
        ...


class HttpGeoProvider:
    """Base for JSON-over-HTTP providers. Subclasses map the payload."""

    name = "http"
    url_template = ""

    def __init__(self, client: httpx.AsyncClient, timeout: float = 3.0):
        self._client = client
        self._timeout = timeout

    async def fetch(self, ip: str) -> GeoRecord | None:
        url = self.url_template.format(ip=ip)
        try:
            resp = await self._client.get(url, timeout=self._timeout)
            resp.raise_for_status()
            payload = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("geo_provider_error", provider=self.name, ip=ip, error=str(e))
            return None

        if not isinstance(payload, dict):
            return None
        return self.parse(payload)

    def parse(self, payload: dict) -> GeoRecord | None:
        raise NotImplementedError


class IpWhoProvider(HttpGeoProvider):
    name = "ipwho.is"
    url_template = "https://ipwho.is/{ip}"

    def parse(self, payload: dict) -> GeoRecord | None:
        country_code = _s(payload.get("country_code"))
        if payload.get("success") is not True or not country_code:
            return None

        conn = payload.get("connection") or {}
        sec = payload.get("security") or {}
        if not isinstance(conn, dict):
            conn = {}
        if not isinstance(sec, dict):
            sec = {}

        asn = conn.get("asn")
        return GeoRecord(
            success=True,
            country=_s(payload.get("country")),
            country_code=country_code,
            region=_s(payload.get("region_code")),
            region_name=_s(payload.get("region")),
            city=_s(payload.get("city")),
            isp=_s(conn.get("isp")),
            org=_s(conn.get("org")),
            as_info=str(asn) if asn is not None else "",
            proxy=_b(sec.get("proxy")) or _b(sec.get("tor")) or _b(sec.get("anonymous")),
            hosting=_b(sec.get("hosting")),
        )


class IpApiCoProvider(HttpGeoProvider):
    name = "ipapi.co"
    url_template = "https://ipapi.co/{ip}/json/"

    def parse(self, payload: dict) -> GeoRecord | None:
        country_code = _s(payload.get("country"))
        if payload.get("error") is True or not country_code:
            return None

        org = _s(payload.get("org"))
        # No anonymity signals from this provider
        return GeoRecord(
            success=True,
            country=_s(payload.get("country_name")),
            country_code=country_code,
            region=_s(payload.get("region_code")),
            region_name=_s(payload.get("region")),
            city=_s(payload.get("city")),
            isp=org,
            org=org,
            as_info=_s(payload.get("asn")),
            proxy=False,
            hosting=False,
        )


class IpApiComProvider(HttpGeoProvider):
    name = "ip-api.com"
    url_template = "http://ip-api.com/json/{ip}?fields=66842623"

    def parse(self, payload: dict) -> GeoRecord | None:
        country_code = _s(payload.get("countryCode"))
        if payload.get("status") != "success" or not country_code:
            return None

        return GeoRecord(
            success=True,
            country=_s(payload.get("country")),
            country_code=country_code,
            region=_s(payload.get("region")),
            region_name=_s(payload.get("regionName")),
            city=_s(payload.get("city")),
            isp=_s(payload.get("isp")),
            org=_s(payload.get("org")),
            as_info=_s(payload.get("as")),
            proxy=_b(payload.get("proxy")),
            hosting=_b(payload.get("hosting")),
        )


def default_providers(client: httpx.AsyncClient, timeout: float = 3.0) -> list[GeoProvider]:
    return [
        IpWhoProvider(client, timeout),
        IpApiCoProvider(client, timeout),
        IpApiComProvider(client, timeout),
    ]


@dataclass
class _CacheEntry:
    record: GeoRecord
    expires: float


class GeoResolver:
    def __init__(
        self,
        providers: list[GeoProvider],
        ttl_seconds: int = 600,
        clock: Callable[[], float] = time.time,
    ):
        self._providers = list(providers)
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}
        self._lock = AsyncReadWriteLock()

    async def resolve(self, ip: str) -> GeoRecord:
        ip = (ip or "").strip()
        if is_local_ip(ip):
            return LOCAL_GEO
        if not ip:
            return UNKNOWN_GEO

        cached = await self.get(ip)
        if cached is not None:
            return cached

        for provider in self._providers:
            try:
                record = await provider.fetch(ip)
            except Exception as e:
                # A misbehaving provider must not take the request down
                logger.warning("geo_provider_failed", provider=getattr(provider, "name", "?"),
                               ip=ip, error=str(e))
                continue
            if record is not None and record.success and record.country_code:
                await self.put(ip, record)
                return record

        logger.warning("geo_all_providers_failed", ip=ip)
        return UNKNOWN_GEO

    async def get(self, ip: str) -> GeoRecord | None:
        async with self._lock.read():
            entry = self._cache.get(ip)
            if entry is not None and self._clock() < entry.expires:
                return entry.record
        return None

    async def put(self, ip: str, record: GeoRecord) -> None:
        async with self._lock.write():
            self._cache[ip] = _CacheEntry(record=record, expires=self._clock() + self._ttl_seconds)

    async def evict(self, ip: str) -> None:
        async with self._lock.write():
            self._cache.pop(ip, None)

    async def sweep(self) -> int:
        now = self._clock()
        async with self._lock.write():
            expired = [k for k, v in self._cache.items() if v.expires <= now]
            for key in expired:
                del self._cache[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._cache)
