from __future__ import annotations

from typing import Any

import pytest
from jobintel.models import RawJobPosting
from jobintel.normalizer import (
    canonical_company,
    canonical_title,
    detect_language,
    extract_domain,
    normalize,
    normalize_seniority,
    parse_salary_text,
    strip_html,
)

pytestmark = pytest.mark.unit

FETCHED_AT = "2026-10-02T08:00:00+00:00"


def raw_posting(source: str, raw_data: dict[str, Any], source_job_id: str = "1") -> RawJobPosting:
    return RawJobPosting(
        source=source,
        source_job_id=source_job_id,
        raw_data=raw_data,
        fetched_at=FETCHED_AT,
    )


@pytest.mark.parametrize(
    ("title", "expected"),
    [
        ("Sr. Product Manager (Remote)", "senior product manager"),
        ("Senior Software Engineer - Payments", "senior software engineer"),
        ("SWE II @ Acme", "software engineer ii"),
        ("Jr Frontend Dev", "junior frontend developer"),
        ("Gerente de Produto Sênior", "gerente de produto senior"),
    ],
)
def test_canonical_title(title: str, expected: str) -> None:
    assert canonical_title(title) == expected


def test_canonical_company_drops_legal_suffixes() -> None:
    assert canonical_company("Acme Inc.") == "acme"
    assert canonical_company("The Widget Company, LLC") == "widget company"
    assert canonical_company("Globex") == "globex"


def test_extract_domain() -> None:
    assert extract_domain("https://www.acme.io/careers") == "acme.io"
    assert extract_domain("acme.io") == "acme.io"
    assert extract_domain("not a domain") is None
    assert extract_domain(None) is None


def test_normalize_seniority_aliases_and_inference() -> None:
    assert normalize_seniority("senior") == "Senior"
    assert normalize_seniority("Mid-Level") == "Mid"
    assert normalize_seniority("Head of Engineering") == "Executive"
    assert normalize_seniority("") is None


def test_strip_html_extracts_text() -> None:
    assert strip_html("<p>Build <b>APIs</b></p>") == "Build APIs"
    assert strip_html("plain   text") == "plain text"
    assert strip_html(None) == ""


def test_parse_salary_text() -> None:
    assert parse_salary_text("$120k - $150k") == (120000.0, 150000.0, "USD", "year")
    assert parse_salary_text("EUR 4,000 - 5,000 per month") == (4000.0, 5000.0, "EUR", "month")
    assert parse_salary_text("Competitive") == (None, None, None, None)


def test_detect_language() -> None:
    assert detect_language("Buscamos uma pessoa para a vaga com experiência em equipe") == "pt-BR"
    assert detect_language("We are hiring a backend engineer") == "en"
    assert detect_language("   ") is None


def test_normalize_remotive_posting() -> None:
    raw = raw_posting(
        "remotive",
        {
            "kind": "remotive",
            "id": 101,
            "url": "https://remotive.com/jobs/101",
            "title": "Sr. Product Manager (Remote)",
            "company_name": "Acme Inc.",
            "tags": ["Roadmapping"],
            "job_type": "full_time",
            "publication_date": "2026-10-01T10:00:00",
            "candidate_required_location": "USA Only",
            "salary": "$120k - $150k",
            "description": (
                "<p>We use <b>Python</b> and SQL.</p>"
                "<h3>Requirements:</h3><p>5 years of experience</p>"
            ),
        },
    )

    job, error = normalize(raw)

    assert error is None
    assert job is not None
    assert job.normalized_title == "senior product manager"
    assert job.seniority == "Senior"
    assert job.job_function == "product"
    assert job.company_key == "acme"
    assert job.remote_type == "remote"
    assert job.allowed_countries == ["US"]
    assert job.remote_region_eligibility == "US"
    assert job.skills == ["python", "roadmapping", "sql"]
    assert job.requirements_text == "5 years of experience"
    assert "<" not in job.description_text
    assert (job.compensation_min, job.compensation_max) == (120000.0, 150000.0)
    assert job.compensation_currency == "USD"
    assert job.compensation_period == "year"
    assert job.employment_type == "full_time"
    assert job.language == "en"
    assert job.posted_at == "2026-10-01T10:00:00+00:00"
    assert job.source_url == "https://remotive.com/jobs/101"


def test_normalize_adzuna_defaults_to_onsite_in_country() -> None:
    raw = raw_posting(
        "adzuna",
        {
            "kind": "adzuna",
            "id": "a-1",
            "title": "Data Analyst",
            "description": "Join our London team analysing customer data.",
            "company": {"display_name": "Initech Ltd"},
            "location": {"display_name": "London, UK", "area": ["UK", "London"]},
            "salary_min": 50000,
            "salary_max": 60000,
            "contract_time": "full_time",
            "redirect_url": "https://adzuna.example/a-1",
            "country": "gb",
        },
    )

    job, error = normalize(raw)

    assert error is None
    assert job is not None
    assert job.remote_type == "onsite"
    assert job.allowed_countries == ["GB"]
    assert job.locations == ["London, UK", "UK", "London"]
    assert job.compensation_currency == "GBP"
    assert job.company_key == "initech"
    assert job.job_function == "data"


def test_normalize_generic_swaps_inverted_salary_and_keeps_explicit_fields() -> None:
    raw = raw_posting(
        "partner_feed",
        {
            "kind": "generic",
            "external_id": "ext-9",
            "title": "Backend Engineer",
            "company": "Globex",
            "company_domain": "https://globex.com",
            "remote_type": "Fully Remote",
            "allowed_countries": ["Brazil", "latam"],
            "seniority": "mid level",
            "salary_min": "9,000",
            "salary_max": "7000",
            "salary_currency": "brl",
            "salary_period": "month",
            "language": "Portuguese",
        },
    )

    job, error = normalize(raw)

    assert error is None
    assert job is not None
    assert job.remote_type == "remote"
    assert job.allowed_countries == ["BR", "LATAM"]
    assert job.seniority == "Mid"
    assert (job.compensation_min, job.compensation_max) == (7000.0, 9000.0)
    assert job.compensation_currency == "BRL"
    assert job.compensation_period == "month"
    assert job.language == "pt-BR"
    assert job.company_domain == "globex.com"
    assert job.company_name == "Globex"


def test_normalize_unknown_eligibility_stays_empty() -> None:
    raw = raw_posting(
        "partner_feed",
        {"kind": "generic", "title": "Support Specialist", "description": "Help our customers."},
    )

    job, error = normalize(raw)

    assert error is None
    assert job is not None
    assert job.allowed_countries == []
    assert job.remote_type == "unknown"
    assert job.company_name == "Unknown"


def test_normalize_rejects_title_without_words() -> None:
    raw = raw_posting("partner_feed", {"kind": "generic", "title": "!!!"}, source_job_id="bad")

    job, error = normalize(raw)

    assert job is None
    assert error is not None
    assert error.startswith("partner_feed:bad:")
