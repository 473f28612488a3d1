from __future__ import annotations

import pytest
from jobintel.regions import (
    WORLDWIDE,
    detect_remote_type_from_text,
    location_codes,
    locations_overlap,
    normalize_location_preferences,
    parse_remote_region_eligibility,
    parse_remote_region_eligibility_to_allowed_countries,
)

pytestmark = pytest.mark.unit


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Fully remote, work from anywhere", "remote"),
        ("This is a hybrid role with flexible hours", "hybrid"),
        ("Must be on-site in Austin three days a week", "onsite"),
        ("Remote friendly but candidates must work in our office", "onsite"),
        ("", "unknown"),
        ("Great benefits and a friendly team", "unknown"),
    ],
)
def test_detect_remote_type_from_text(text: str, expected: str) -> None:
    assert detect_remote_type_from_text(text) == expected


def test_location_codes_split_multi_part_fields() -> None:
    assert location_codes("US, Canada") == ["US", "CA"]
    assert location_codes("Remote - LATAM") == ["LATAM"]
    assert location_codes("North America") == ["US", "CA"]
    assert location_codes(None) == []


def test_region_parsing_prefers_structured_location() -> None:
    assert parse_remote_region_eligibility("Anywhere in the world", "USA Only") == "US"


def test_region_parsing_does_not_tag_company_nationality() -> None:
    assert parse_remote_region_eligibility("We are a US company hiring engineers") is None


def test_region_parsing_reads_restriction_phrases() -> None:
    assert parse_remote_region_eligibility("Open to candidates in Brazil or Mexico") == "BR, MX"


def test_allowed_countries_from_prose() -> None:
    assert parse_remote_region_eligibility_to_allowed_countries("US and Canada only") == [
        "US",
        "CA",
    ]


@pytest.mark.parametrize("text", [None, "", "   "])
def test_allowed_countries_empty_input_is_unknown(text: str | None) -> None:
    assert parse_remote_region_eligibility_to_allowed_countries(text) == []


def test_normalize_location_preferences_dedupes_codes() -> None:
    assert normalize_location_preferences(["Brazil", "latam", "BR"]) == ["BR", "LATAM"]
    assert normalize_location_preferences(["Worldwide"]) == [WORLDWIDE]


@pytest.mark.parametrize(
    ("job_codes", "user_codes", "expected"),
    [
        (["LATAM"], ["BR"], True),
        (["BR"], ["LATAM"], True),
        (["Europe"], ["DE"], True),
        ([WORLDWIDE], ["BR"], True),
        (["US"], [WORLDWIDE], True),
        (["US", "CA"], ["CA"], True),
        (["US"], ["BR"], False),
        (["Europe"], ["US"], False),
    ],
)
def test_locations_overlap_honors_region_membership(
    job_codes: list[str], user_codes: list[str], expected: bool
) -> None:
    assert locations_overlap(job_codes, user_codes) is expected
