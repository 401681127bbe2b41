import asyncio
import json
from urllib.parse import parse_qs

import httpx
import pytest

from camp_finder.discovery_overpass import (
    FEATURE_SELECTORS,
    build_query,
    classify,
    element_to_accommodation,
    group_suitability,
    normalize_website,
    parse_elements,
    search_tagged_features,
)
from camp_finder.models import AccommodationType, Coordinate
from camp_finder.throttle import RequestThrottle

ORIGIN = Coordinate(lat=51.065, lon=3.1)


def _element(element_id=1, *, lat=51.066, lon=3.101, **tags):
    return {"type": "node", "id": element_id, "lat": lat, "lon": lon, "tags": tags}


def test_build_query_covers_every_selector():
    query = build_query(ORIGIN, 10)
    assert query.startswith("[out:json][timeout:30];")
    assert "out center meta;" in query
    assert "(around:10000,51.065,3.1)" in query
    for selector in FEATURE_SELECTORS:
        for element_type in ("node", "way", "relation"):
            assert f"{element_type}{selector}" in query


def test_build_query_rejects_non_positive_radius():
    with pytest.raises(ValueError):
        build_query(ORIGIN, 0)


class TestGroupSuitability:
    def test_group_flag_wins(self):
        assert group_suitability({"group_accommodation": "yes", "capacity": "2"}) == (True, "group_flag")

    def test_large_capacity_accepted(self):
        assert group_suitability({"amenity": "community_centre", "capacity": "40 beds"}) == (
            True,
            "group_capacity",
        )

    def test_unrestricted_campsite_accepted(self):
        assert group_suitability({"tourism": "camp_site"}) == (True, "campsite_accepts_groups")

    def test_group_only_hostel_rejected(self):
        accepted, _ = group_suitability({"tourism": "hostel", "group_only": "yes"})
        assert accepted is False

    def test_scout_community_centre_accepted(self):
        assert group_suitability({"amenity": "community_centre", "scout": "yes"}) == (
            True,
            "scout_or_youth_venue",
        )

    def test_small_capacity_without_flag_rejected(self):
        assert group_suitability({"leisure": "club", "capacity": "3"}) == (False, "small_capacity")

    def test_no_rule_rejects(self):
        assert group_suitability({"amenity": "community_centre"}) == (False, None)


class TestClassify:
    def test_campsite(self):
        assert classify({"tourism": "camp_site"}, "De Lage Venn") is AccommodationType.CAMPING

    def test_hostel(self):
        assert classify({"hostel": "yes"}, "De Valk") is AccommodationType.HOSTEL

    def test_scout_leisure(self):
        assert classify({"leisure": "scout"}, "Lokaal") is AccommodationType.YOUTH_MOVEMENT

    def test_name_keyword_fallback(self):
        tags = {"amenity": "community_centre"}
        assert classify(tags, "Chiro Torhout") is AccommodationType.YOUTH_MOVEMENT

    def test_default_is_hostel(self):
        assert classify({"tourism": "group_accommodation"}, "Groepshuis") is AccommodationType.HOSTEL

    def test_same_input_same_answer(self):
        tags = {"amenity": "community_centre", "youth_centre": "yes"}
        assert {classify(dict(tags), "KSA Torhout") for _ in range(5)} == {
            AccommodationType.YOUTH_MOVEMENT
        }


class TestElementToAccommodation:
    def test_unnamed_is_dropped(self):
        element = _element(
            name="Unnamed",
            tourism="hostel",
            group_accommodation="yes",
            website="https://hostel.be",
        )
        assert element_to_accommodation(element, ORIGIN) is None

    def test_small_capacity_is_dropped(self):
        element = _element(name="Clubhuis", leisure="club", capacity="3", phone="+32 50 00 00 00")
        assert element_to_accommodation(element, ORIGIN) is None

    def test_hostel_without_contact_is_dropped(self):
        assert element_to_accommodation(_element(name="De Valk", tourism="hostel"), ORIGIN) is None

    def test_youth_venue_needs_address(self):
        element = _element(name="Scouts Torhout", leisure="scout", scout="yes", website="https://scouts.be")
        assert element_to_accommodation(element, ORIGIN) is None

    def test_builds_accommodation(self):
        element = _element(
            42,
            name="Camping Groenhove",
            tourism="camp_site",
            website="www.groenhove.be",
            phone="+32 50 21 21 21",
            **{"addr:street": "Bruggestraat", "addr:housenumber": "190", "addr:postcode": "8820", "addr:city": "Torhout"},
        )
        item = element_to_accommodation(element, ORIGIN)
        assert item is not None
        assert item.id == "node-42"
        assert item.type is AccommodationType.CAMPING
        assert item.website == "https://www.groenhove.be"
        assert item.address == "Bruggestraat 190, 8820 Torhout"
        assert item.city == "Torhout"
        assert item.source == "overpass"
        assert item.distance == pytest.approx(0.13, abs=0.05)

    def test_way_uses_center(self):
        element = {
            "type": "way",
            "id": 7,
            "center": {"lat": 51.07, "lon": 3.11},
            "tags": {"name": "Hostel Oost", "tourism": "hostel", "phone": "123"},
        }
        item = element_to_accommodation(element, ORIGIN)
        assert item is not None
        assert (item.latitude, item.longitude) == (51.07, 3.11)


def test_parse_elements_skips_malformed_and_sorts():
    elements = [
        "garbage",
        _element(1, lat=51.2, lon=3.1, name="Far Hostel", tourism="hostel", phone="1"),
        {"type": "node", "id": 2, "lat": "not-a-number", "lon": 3.1, "tags": {"name": "Bad", "tourism": "hostel", "phone": "1"}},
        _element(3, lat=51.066, lon=3.1, name="Near Hostel", tourism="hostel", phone="2"),
    ]
    results = parse_elements(elements, ORIGIN)
    assert [item.name for item in results] == ["Near Hostel", "Far Hostel"]


class TestNormalizeWebsite:
    def test_adds_scheme(self):
        assert normalize_website("kampplaats.be") == "https://kampplaats.be"

    def test_protocol_relative(self):
        assert normalize_website("//kampplaats.be") == "https://kampplaats.be"

    def test_keeps_http(self):
        assert normalize_website(" http://kampplaats.be ") == "http://kampplaats.be"

    def test_rejects_placeholders(self):
        assert normalize_website("https://www.example.com/camp") is None
        assert normalize_website("https://placeholder-site.be") is None

    def test_blank_is_none(self):
        assert normalize_website("   ") is None
        assert normalize_website(None) is None


def _run_search(handler):
    async def scenario():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await search_tagged_features(
                ORIGIN,
                5,
                client=client,
                overpass_urls=["https://one.test/api", "https://two.test/api"],
                throttle=RequestThrottle(0),
            )

    return asyncio.run(scenario())


def test_search_returns_empty_when_every_endpoint_fails():
    seen = []

    def handler(request):
        seen.append(str(request.url))
        return httpx.Response(504, text="timeout")

    assert _run_search(handler) == []
    assert seen == ["https://one.test/api", "https://two.test/api"]


def test_search_falls_back_to_next_endpoint():
    payload = {"elements": [_element(5, name="Hostel Zuid", tourism="hostel", phone="050")]}

    def handler(request):
        if request.url.host == "one.test":
            raise httpx.ConnectError("refused", request=request)
        assert "around:5000" in parse_qs(request.content.decode())["data"][0]
        return httpx.Response(200, text=json.dumps(payload))

    results = _run_search(handler)
    assert [item.id for item in results] == ["node-5"]


def test_search_returns_empty_on_invalid_json():
    assert _run_search(lambda request: httpx.Response(200, text="<html>busy</html>")) == []
