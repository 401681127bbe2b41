import asyncio

import httpx

from camp_finder.geocoding import NominatimClient, city_from_address, suggestion_label
from camp_finder.models import Coordinate
from camp_finder.throttle import RequestThrottle


def _client(handler) -> NominatimClient:
    return NominatimClient(
        httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        base_url="https://nominatim.test",
        user_agent="CampFinderTests/1.0",
        throttle=RequestThrottle(0),
    )


def test_geocode_returns_first_hit_and_sends_user_agent():
    seen = {}

    def handler(request):
        seen["ua"] = request.headers["User-Agent"]
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=[{"lat": "51.0650", "lon": "3.1000"}, {"lat": "0", "lon": "0"}])

    async def scenario():
        async with _client(handler) as geocoder:
            return await geocoder.geocode("Torhout, België")

    assert asyncio.run(scenario()) == Coordinate(lat=51.065, lon=3.1)
    assert seen["ua"] == "CampFinderTests/1.0"
    assert seen["params"]["q"] == "Torhout, België"
    assert seen["params"]["limit"] == "1"


def test_geocode_empty_result_is_none():
    async def scenario():
        async with _client(lambda request: httpx.Response(200, json=[])) as geocoder:
            return await geocoder.geocode("Nowhere")

    assert asyncio.run(scenario()) is None


def test_geocode_fails_soft_on_server_error():
    async def scenario():
        async with _client(lambda request: httpx.Response(503)) as geocoder:
            return await geocoder.geocode("Torhout")

    assert asyncio.run(scenario()) is None


def test_geocode_fails_soft_on_network_error():
    def handler(request):
        raise httpx.ConnectTimeout("slow", request=request)

    async def scenario():
        async with _client(handler) as geocoder:
            return await geocoder.geocode("Torhout")

    assert asyncio.run(scenario()) is None


def test_geocode_blank_query_makes_no_request():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json=[])

    async def scenario():
        async with _client(handler) as geocoder:
            return await geocoder.geocode("   ")

    assert asyncio.run(scenario()) is None
    assert calls == []


def test_search_requests_details_and_filters_non_objects():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(200, json=[{"place_id": 1}, "junk"])

    async def scenario():
        async with _client(handler) as geocoder:
            return await geocoder.search("Chiro Torhout")

    assert asyncio.run(scenario()) == [{"place_id": 1}]
    assert seen["params"]["addressdetails"] == "1"
    assert seen["params"]["extratags"] == "1"
    assert seen["params"]["limit"] == "15"


def test_reverse_returns_address_block():
    def handler(request):
        assert request.url.path == "/reverse"
        return httpx.Response(200, json={"address": {"town": "Torhout", "country": "België"}})

    async def scenario():
        async with _client(handler) as geocoder:
            return await geocoder.reverse(51.065, 3.1)

    address = asyncio.run(scenario())
    assert city_from_address(address) == "Torhout"


def test_city_from_address_prefers_city():
    assert city_from_address({"village": "Wijnendale", "city": "Brugge"}) == "Brugge"
    assert city_from_address({}) == ""


def test_suggest_labels_hits_and_limits_to_five():
    seen = {}

    def handler(request):
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json=[
                {
                    "lat": "51.0650",
                    "lon": "3.1000",
                    "display_name": "Torhout, West-Vlaanderen, Vlaanderen, België",
                    "type": "town",
                    "address": {"town": "Torhout", "state": "Vlaanderen", "country": "België"},
                },
                {"display_name": "Broken hit"},
            ],
        )

    async def scenario():
        async with _client(handler) as geocoder:
            return await geocoder.suggest(" Torh ")

    suggestions = asyncio.run(scenario())
    assert suggestions == [
        {
            "label": "Torhout, Vlaanderen",
            "displayName": "Torhout, West-Vlaanderen, Vlaanderen, België",
            "lat": 51.065,
            "lon": 3.1,
            "type": "town",
        }
    ]
    assert seen["params"]["limit"] == "5"
    assert seen["params"]["addressdetails"] == "1"
    assert seen["params"]["q"] == "Torh"


def test_suggest_skips_short_queries():
    def handler(request):
        raise AssertionError("no request expected")

    async def scenario():
        async with _client(handler) as geocoder:
            return await geocoder.suggest("T")

    assert asyncio.run(scenario()) == []


def test_suggestion_label_fallbacks():
    assert suggestion_label({"address": {"state": "Limburg", "country": "België"}}) == "Limburg, België"
    assert suggestion_label({"address": {"village": "Wijnendale"}}) == "Wijnendale"
    assert suggestion_label({"display_name": "Kempen, Antwerpen, België"}) == "Kempen, Antwerpen"
