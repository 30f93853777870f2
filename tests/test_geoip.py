"""
Tests for the GeoIP lookup module.
"""

import httpx
import pytest

from bastion.geoip.lookup import UNKNOWN_COUNTRY, GeoLocator, GeoResult

PARIS = {
    "status": "success",
    "countryCode": "FR",
    "country": "France",
    "city": "Paris",
    "lat": 48.8566,
    "lon": 2.3522,
    "as": "AS3215 Orange",
    "org": "Orange",
    "proxy": False,
    "hosting": True,
}


def _locator(config, handler):
    config.geo_api_url = "http://geo.test/json/{ip}"
    calls = []

    def counting(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(counting))
    return GeoLocator(config, client=client), calls


async def test_private_addresses_skip_lookup(config):
    locator, calls = _locator(config, lambda r: httpx.Response(200, json=PARIS))
    for ip in ("10.1.2.3", "127.0.0.1", "192.168.0.5", "::1"):
        result = await locator.lookup(ip)
        assert result.is_private
        assert not result.known
    assert calls == []


async def test_invalid_address(config):
    locator, calls = _locator(config, lambda r: httpx.Response(200, json=PARIS))
    result = await locator.lookup("not-an-ip")
    assert result.country_code == UNKNOWN_COUNTRY
    assert calls == []


async def test_http_lookup(config):
    locator, calls = _locator(config, lambda r: httpx.Response(200, json=PARIS))
    result = await locator.lookup("203.0.113.10")
    assert calls == ["/json/203.0.113.10"]
    assert result.country_code == "FR"
    assert result.city == "Paris"
    assert result.has_coordinates
    assert result.is_hosting
    assert not result.is_proxy
    assert result.to_dict()["asn"] == "AS3215 Orange"


async def test_results_are_cached(config):
    locator, calls = _locator(config, lambda r: httpx.Response(200, json=PARIS))
    await locator.lookup("203.0.113.10")
    await locator.lookup("203.0.113.10")
    assert len(calls) == 1


@pytest.mark.parametrize("response", [
    httpx.Response(500),
    httpx.Response(200, json={"status": "fail", "message": "reserved range"}),
    httpx.Response(200, text="not json"),
])
async def test_failures_yield_unknown(config, response):
    locator, _ = _locator(config, lambda r: response)
    result = await locator.lookup("203.0.113.10")
    assert not result.known
    assert not result.is_private


async def test_transport_error_yields_unknown(config):
    def down(request):
        raise httpx.ConnectError("unreachable", request=request)

    locator, _ = _locator(config, down)
    assert not (await locator.lookup("203.0.113.10")).known


async def test_no_source_configured(config):
    locator = GeoLocator(config)
    assert (await locator.lookup("203.0.113.10")) == GeoResult.unknown()
    await locator.close()


def test_database_not_configured(config):
    locator = GeoLocator(config)
    assert locator.init_database() is False
    assert locator.init_database("/nonexistent/GeoLite2-City.mmdb") is False
    assert not locator.has_database


async def test_close_leaves_injected_client_open(config):
    locator, _ = _locator(config, lambda r: httpx.Response(200, json=PARIS))
    client = locator._client
    await locator.close()
    assert not client.is_closed
    await client.aclose()
