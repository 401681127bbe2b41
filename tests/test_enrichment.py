import asyncio
import json

import pytest
from conftest import TORHOUT, FakeGeocoder, FakeLLM

from camp_finder.discovery_generative import GenerativeError
from camp_finder.enrichment import (
    extract_website,
    fetch_more_info,
    find_website,
    search_more,
    verify_website,
)
from camp_finder.errors import EnrichmentError
from camp_finder.models import AccommodationType, Coordinate

NEARBY = Coordinate(lat=51.07, lon=3.11)


class TestFetchMoreInfo:
    def test_fills_missing_fields_and_keeps_existing(self, make_accommodation):
        reply = json.dumps(
            {
                "description": "Groepshuis aan de rand van het bos",
                "amenities": ["keuken", "slaapzalen"],
                "priceRange": "",
                "additionalInfo": "Sleutel af te halen bij de conciërge",
            }
        )
        original = make_accommodation(price_range="€12 pp")

        updated, info = asyncio.run(fetch_more_info(original, llm=FakeLLM([reply])))

        assert updated.description == "Groepshuis aan de rand van het bos"
        assert updated.amenities == ["keuken", "slaapzalen"]
        assert updated.price_range == "€12 pp"
        assert updated.type is original.type
        assert info.additional_info == "Sleutel af te halen bij de conciërge"
        assert info.to_dict()["priceRange"] is None

    def test_fenced_reply(self, make_accommodation):
        reply = '```json\n{"description": "Camping", "amenities": "not a list"}\n```'
        updated, info = asyncio.run(fetch_more_info(make_accommodation(), llm=FakeLLM([reply])))
        assert updated.description == "Camping"
        assert info.amenities == []

    def test_unreadable_reply_raises(self, make_accommodation):
        with pytest.raises(EnrichmentError):
            asyncio.run(fetch_more_info(make_accommodation(), llm=FakeLLM(["Sorry, no idea."])))

    def test_model_failure_raises(self, make_accommodation):
        llm = FakeLLM([GenerativeError("quota exceeded")])
        with pytest.raises(EnrichmentError):
            asyncio.run(fetch_more_info(make_accommodation(), llm=llm))


class TestWebsiteLookups:
    def test_extract_website(self):
        assert extract_website("https://www.valk.be.") == "https://www.valk.be"
        assert extract_website("NIET_GEVONDEN") is None
        assert extract_website("Try https://example.com") is None
        assert extract_website("no url here") is None

    def test_find_website(self, make_accommodation):
        llm = FakeLLM(["De website is https://www.devalk.be"])
        assert asyncio.run(find_website(make_accommodation(), llm=llm)) == "https://www.devalk.be"
        assert "NIET_GEVONDEN" in llm.prompts[0]

    def test_verify_correct(self, make_accommodation):
        item = make_accommodation(website="https://devalk.be")
        check = asyncio.run(verify_website(item, llm=FakeLLM(["CORRECT"])))
        assert (check.status, check.website) == ("correct", "https://devalk.be")

    def test_verify_updated(self, make_accommodation):
        item = make_accommodation(website="https://devalk.com")
        check = asyncio.run(verify_website(item, llm=FakeLLM(["https://www.devalk.be"])))
        assert (check.status, check.website) == ("updated", "https://www.devalk.be")

    def test_verify_not_found(self, make_accommodation):
        item = make_accommodation(website="https://devalk.com")
        check = asyncio.run(verify_website(item, llm=FakeLLM(["NIET_GEVONDEN"])))
        assert (check.status, check.website) == ("not_found", None)

    def test_verify_without_website_raises(self, make_accommodation):
        with pytest.raises(EnrichmentError):
            asyncio.run(verify_website(make_accommodation(), llm=FakeLLM()))


class TestSearchMore:
    def test_hostel_prompt_lists_known_names_and_skips_them(self, make_accommodation):
        existing = [make_accommodation(name="De Valk"), make_accommodation(name="Chiro Torhout", type=AccommodationType.YOUTH_MOVEMENT)]
        reply = json.dumps(
            [
                {"name": "de valk"},
                {"name": "Hostel Groenhove", "address": "Bruggestraat 1, Torhout"},
                {"name": "Hostel Nergens"},
            ]
        )
        llm = FakeLLM([reply])
        geocoder = FakeGeocoder(places={"Bruggestraat 1, Torhout": NEARBY})
        queries = []

        results = asyncio.run(
            search_more(
                "hostel",
                existing,
                "Torhout, België",
                TORHOUT,
                5,
                llm=llm,
                geocoder=geocoder,
                on_query=lambda term, response: queries.append(term),
            )
        )

        assert [item.name for item in results] == ["Hostel Groenhove"]
        item = results[0]
        assert item.type is AccommodationType.HOSTEL
        assert item.source == "extra"
        assert item.id.startswith("extra-hostel-hostel-groenhove-")
        assert item.country == "België"
        assert "De Valk" in llm.prompts[0]
        assert "Chiro Torhout" not in llm.prompts[0]
        assert queries == ["Extra hostel search"]

    def test_youth_movement_runs_type_and_general_strategies(self):
        def reply(prompt):
            if prompt.startswith("Research which types"):
                return '["KSA", "Chiro"]'
            if prompt.startswith("Search for KSA groups"):
                return json.dumps([{"name": "KSA Torhout", "address": "Markt 1, Torhout"}])
            return "[]"

        llm = FakeLLM(reply)
        geocoder = FakeGeocoder(places={"Markt 1, Torhout": NEARBY})

        results = asyncio.run(
            search_more("youth_movement", [], "Torhout, België", TORHOUT, 5, llm=llm, geocoder=geocoder)
        )

        assert [item.name for item in results] == ["KSA Torhout"]
        assert results[0].type is AccommodationType.YOUTH_MOVEMENT
        assert len(llm.prompts) == 1 + 2 + 2

    def test_model_errors_are_reported_not_raised(self):
        llm = FakeLLM([GenerativeError("down")])
        queries = []
        results = asyncio.run(
            search_more(
                AccommodationType.CAMPING,
                [],
                "Torhout",
                TORHOUT,
                5,
                llm=llm,
                geocoder=FakeGeocoder(),
                on_query=lambda term, response: queries.append(response),
            )
        )
        assert results == []
        assert queries[0].startswith("Error:")
