"""Tests for the GeoIP provider chain + cache."""

import asyncio

import httpx
import pytest
from trafficgate.core.geoip import (
    LOCAL_GEO,
    UNKNOWN_GEO,
    GeoRecord,
    GeoResolver,
    IpApiComProvider,
    IpApiCoProvider,
    IpWhoProvider,
    default_providers,
    fix_mojibake,
    is_local_ip,
)

from conftest import BR_GEO, StaticProvider

US_GEO = GeoRecord(success=True, country="United States", country_code="US")


class RaisingProvider:
    name = "raising"

    def __init__(self):
        self.calls = 0

    async def fetch(self, ip):
        self.calls += 1
        raise RuntimeError("provider exploded")


# ---------------------------------------------------------------------------
# Resolver behaviour
# ---------------------------------------------------------------------------

class TestLocalAddresses:
    @pytest.mark.parametrize("ip", ["127.0.0.1", "::1", "10.1.2.3", "192.168.0.10", "172.16.5.4"])
    def test_local_short_circuits(self, ip):
        provider = StaticProvider(BR_GEO)
        resolver = GeoResolver([provider])
        assert asyncio.run(resolver.resolve(ip)) == LOCAL_GEO
        assert provider.calls == []

    def test_public_address_is_not_local(self):
        assert is_local_ip("8.8.8.8") is False
        assert is_local_ip("not-an-ip") is False


class TestCascade:
    def test_first_usable_provider_wins_wholesale(self):
        first = StaticProvider(BR_GEO, "a")
        second = StaticProvider(US_GEO, "b")
        resolver = GeoResolver([first, second])

        assert asyncio.run(resolver.resolve("200.1.2.3")) == BR_GEO
        assert second.calls == []

    def test_falls_through_failed_and_unusable_providers(self):
        failing = StaticProvider(None, "a")
        no_country = StaticProvider(GeoRecord(success=True, country_code=""), "b")
        exploding = RaisingProvider()
        good = StaticProvider(US_GEO, "c")
        resolver = GeoResolver([failing, no_country, exploding, good])

        assert asyncio.run(resolver.resolve("8.8.8.8")) == US_GEO
        assert failing.calls == ["8.8.8.8"]
        assert exploding.calls == 1

    def test_all_providers_fail_returns_unknown(self):
        resolver = GeoResolver([StaticProvider(None), RaisingProvider()])
        record = asyncio.run(resolver.resolve("8.8.8.8"))
        assert record == UNKNOWN_GEO
        assert record.country_code == "XX"

    def test_unknown_result_not_cached(self):
        provider = StaticProvider(None)
        resolver = GeoResolver([provider])

        async def scenario():
            await resolver.resolve("8.8.8.8")
            await resolver.resolve("8.8.8.8")

        asyncio.run(scenario())
        assert len(provider.calls) == 2


class TestCache:
    def test_second_lookup_within_ttl_hits_cache(self, clock):
        provider = StaticProvider(BR_GEO)
        resolver = GeoResolver([provider], ttl_seconds=600, clock=clock)

        async def scenario():
            first = await resolver.resolve("200.1.2.3")
            clock.advance(599)
            second = await resolver.resolve("200.1.2.3")
            return first, second

        first, second = asyncio.run(scenario())
        assert first == second
        assert provider.calls == ["200.1.2.3"]

    def test_expired_entry_never_served(self, clock):
        provider = StaticProvider(BR_GEO)
        resolver = GeoResolver([provider], ttl_seconds=600, clock=clock)

        async def scenario():
            await resolver.resolve("200.1.2.3")
            clock.advance(600)
            assert await resolver.get("200.1.2.3") is None
            await resolver.resolve("200.1.2.3")

        asyncio.run(scenario())
        assert len(provider.calls) == 2

    def test_sweep_removes_only_expired(self, clock):
        resolver = GeoResolver([], ttl_seconds=600, clock=clock)

        async def scenario():
            await resolver.put("1.1.1.1", BR_GEO)
            clock.advance(300)
            await resolver.put("2.2.2.2", US_GEO)
            clock.advance(301)
            removed = await resolver.sweep()
            return removed, await resolver.get("1.1.1.1"), await resolver.get("2.2.2.2")

        removed, old, fresh = asyncio.run(scenario())
        assert removed == 1
        assert old is None
        assert fresh == US_GEO
        assert len(resolver) == 1


# ---------------------------------------------------------------------------
# Provider payload normalization (httpx.MockTransport)
# ---------------------------------------------------------------------------

def _client(payload=None, status=200, exc=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if exc is not None:
            raise exc
        return httpx.Response(status, json=payload)
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _fetch(provider_cls, payload=None, status=200, exc=None):
    async def scenario():
        async with _client(payload, status, exc) as client:
            return await provider_cls(client).fetch("200.1.2.3")
    return asyncio.run(scenario())


class TestIpWhoProvider:
    PAYLOAD = {
        "success": True,
        "country": "Brazil",
        "country_code": "BR",
        "region": "Sao Paulo",
        "region_code": "SP",
        "city": "Campinas",
        "connection": {"asn": 28573, "org": "Claro NXT", "isp": "Claro S.A."},
        "security": {"anonymous": False, "proxy": False, "tor": True, "hosting": False},
    }

    def test_normalizes_fields(self):
        record = _fetch(IpWhoProvider, self.PAYLOAD)
        assert record.success is True
        assert record.country_code == "BR"
        assert record.region == "SP"
        assert record.region_name == "Sao Paulo"
        assert record.isp == "Claro S.A."
        assert record.org == "Claro NXT"
        assert record.as_info == "28573"
        assert record.proxy is True     # tor counts as proxy
        assert record.hosting is False

    def test_unsuccessful_rejected(self):
        assert _fetch(IpWhoProvider, {"success": False, "message": "Invalid IP"}) is None

    def test_missing_country_code_rejected(self):
        assert _fetch(IpWhoProvider, {"success": True, "country_code": ""}) is None


class TestIpApiCoProvider:
    def test_normalizes_fields_without_proxy_signals(self):
        record = _fetch(IpApiCoProvider, {
            "country": "US",
            "country_name": "United States",
            "region": "California",
            "region_code": "CA",
            "city": "Mountain View",
            "org": "GOOGLE",
            "asn": "AS15169",
        })
        assert record.country_code == "US"
        assert record.country == "United States"
        assert record.isp == "GOOGLE"
        assert record.org == "GOOGLE"
        assert record.proxy is False

    def test_error_payload_rejected(self):
        assert _fetch(IpApiCoProvider, {"error": True, "reason": "RateLimited", "country": "US"}) is None


class TestIpApiComProvider:
    def test_normalizes_camel_case(self):
        record = _fetch(IpApiComProvider, {
            "status": "success",
            "country": "Brazil",
            "countryCode": "BR",
            "region": "RJ",
            "regionName": "Rio de Janeiro",
            "city": "Rio de Janeiro",
            "isp": "Vivo",
            "org": "Telefonica Brasil",
            "as": "AS26599 TELEFONICA BRASIL S.A",
            "proxy": False,
            "hosting": True,
        })
        assert record.country_code == "BR"
        assert record.region_name == "Rio de Janeiro"
        assert record.as_info.startswith("AS26599")
        assert record.hosting is True

    def test_fail_status_rejected(self):
        assert _fetch(IpApiComProvider, {"status": "fail", "message": "private range"}) is None


class TestProviderTransportFailures:
    def test_http_error_status_returns_none(self):
        assert _fetch(IpWhoProvider, {"success": True, "country_code": "BR"}, status=429) is None

    def test_network_error_returns_none(self):
        assert _fetch(IpApiCoProvider, exc=httpx.ConnectTimeout("timed out")) is None

    def test_non_json_body_returns_none(self):
        def handler(request):
            return httpx.Response(200, text="<html>nope</html>")

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await IpApiComProvider(client).fetch("200.1.2.3")

        assert asyncio.run(scenario()) is None


class TestDefaultChain:
    def test_priority_order(self):
        async def scenario():
            async with httpx.AsyncClient() as client:
                return [p.name for p in default_providers(client)]

        assert asyncio.run(scenario()) == ["ipwho.is", "ipapi.co", "ip-api.com"]

    def test_end_to_end_falls_back_to_third_provider(self):
        def handler(request: httpx.Request) -> httpx.Response:
            host = request.url.host
            if host == "ipwho.is":
                return httpx.Response(200, json={"success": False})
            if host == "ipapi.co":
                return httpx.Response(503)
            return httpx.Response(200, json={"status": "success", "countryCode": "AR", "country": "Argentina"})

        async def scenario():
            async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
                return await GeoResolver(default_providers(client)).resolve("181.1.2.3")

        record = asyncio.run(scenario())
        assert record.country_code == "AR"


class TestFixMojibake:
    @pytest.mark.parametrize("raw, expected", [
        ("SÃ£o Paulo", "São Paulo"),
        ("TelefÃ´nica Brasil S.A", "Telefônica Brasil S.A"),
        ("São Paulo", "São Paulo"),
        ("Claro S.A.", "Claro S.A."),
        ("", ""),
    ])
    def test_repairs_latin1_decoded_utf8(self, raw, expected):
        assert fix_mojibake(raw) == expected

    def test_text_that_does_not_round_trip_is_kept(self):
        # Marker present but not valid UTF-8 once re-encoded
        assert fix_mojibake("Ã and ü") == "Ã and ü"
        # Characters outside Latin-1 can't be re-encoded
        assert fix_mojibake("Ã 東京") == "Ã 東京"
