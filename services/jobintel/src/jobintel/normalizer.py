from __future__ import annotations

import json
import logging
import re
import unicodedata
from collections.abc import Callable
from typing import Any
from urllib.parse import urlsplit

from bs4 import BeautifulSoup
from common.utils import normalize_text, normalize_whitespace, parse_iso_datetime, tokenize

from jobintel.models import (
    AdzunaPayload,
    GenericPayload,
    NormalizedJob,
    RawJobPosting,
    RemoteOKPayload,
    RemotivePayload,
    RemoteType,
)
from jobintel.regions import (
    detect_remote_type_from_text,
    normalize_location_preferences,
    parse_remote_region_eligibility,
    parse_remote_region_eligibility_to_allowed_countries,
)

LOGGER = logging.getLogger("jobintel.normalizer")

MAX_DESCRIPTION_CHARS = 20000
MAX_SKILLS = 30

TITLE_ABBREVIATIONS = {
    "sr": "senior",
    "snr": "senior",
    "jr": "junior",
    "jnr": "junior",
    "pm": "product manager",
    "swe": "software engineer",
    "sde": "software engineer",
    "eng": "engineer",
    "engr": "engineer",
    "mgr": "manager",
    "dev": "developer",
    "vp": "vice president",
    "dir": "director",
    "assoc": "associate",
    "ml": "machine learning",
}
TITLE_SUFFIX_SPLIT = re.compile(r"\s+[-|@\u2013\u2014]\s+")
TITLE_BRACKETS = re.compile(r"\([^)]*\)|\[[^\]]*\]")
GENDER_MARKER = re.compile(r"\b[mfwdx]\s*/\s*[mfwdx](\s*/\s*[mfwdx])?\b")

SENIORITY_LEVELS = {"Intern": 0, "Junior": 1, "Mid": 2, "Senior": 3, "Executive": 4}
SENIORITY_PATTERNS = [
    ("Intern", re.compile(r"\b(intern|internship|trainee)\b")),
    (
        "Executive",
        re.compile(r"\b(chief|cto|ceo|cpo|coo|vice president|head of|director)\b"),
    ),
    ("Senior", re.compile(r"\b(senior|staff|principal|lead)\b")),
    ("Junior", re.compile(r"\b(junior|entry level|graduate|associate)\b")),
    ("Mid", re.compile(r"\b(mid|mid level|intermediate)\b")),
]
SENIORITY_ALIASES = {
    "intern": "Intern",
    "internship": "Intern",
    "junior": "Junior",
    "entry": "Junior",
    "entry level": "Junior",
    "mid": "Mid",
    "mid level": "Mid",
    "middle": "Mid",
    "intermediate": "Mid",
    "senior": "Senior",
    "lead": "Senior",
    "staff": "Senior",
    "principal": "Senior",
    "executive": "Executive",
    "director": "Executive",
}

JOB_FUNCTIONS = [
    ("design", re.compile(r"\b(designer|design|ux|ui)\b")),
    ("product", re.compile(r"\b(product manager|product owner|product lead|head of product)\b")),
    (
        "data",
        re.compile(r"\b(data|machine learning|analytics|analyst|scientist|bi)\b"),
    ),
    (
        "engineering",
        re.compile(r"\b(engineer|engineering|developer|programmer|sre|devops|architect)\b"),
    ),
    ("marketing", re.compile(r"\b(marketing|growth|seo|content|brand)\b")),
    ("sales", re.compile(r"\b(sales|account executive|business development|bdr|sdr)\b")),
    ("customer_success", re.compile(r"\b(customer success|customer support|support)\b")),
    ("people", re.compile(r"\b(recruiter|recruiting|talent|people|hr)\b")),
    ("operations", re.compile(r"\b(operations|ops|project manager|program manager)\b")),
]

SKILLS_DICTIONARY = (
    "javascript",
    "typescript",
    "python",
    "react",
    "node.js",
    "nodejs",
    "sql",
    "aws",
    "graphql",
    "docker",
    "kubernetes",
    "terraform",
    "ci/cd",
    "devops",
    "product management",
    "agile",
    "scrum",
    "user research",
    "roadmapping",
    "figma",
    "llm",
    "machine learning",
    "data analysis",
    "postgresql",
    "mongodb",
    "redis",
    "next.js",
    "vue",
    "angular",
    "golang",
    "rust",
    "java",
    "kotlin",
    "swift",
    "ruby",
    "rails",
    "php",
    "laravel",
    "html",
    "css",
    "tailwind",
    "jest",
    "cypress",
    "gcp",
    "azure",
    "linux",
    "git",
    "jira",
    "fastapi",
    "django",
    "flask",
    "pandas",
    "spark",
    "airflow",
    "kafka",
    "saas",
    "b2b",
    "fintech",
)
SKILL_PATTERNS = [
    (skill, re.compile(r"(?<![a-z0-9])" + re.escape(skill) + r"(?![a-z0-9])"))
    for skill in SKILLS_DICTIONARY
]

EMPLOYMENT_TYPES = [
    ("internship", re.compile(r"intern")),
    ("part_time", re.compile(r"part[\s_-]?time")),
    ("contract", re.compile(r"contract|freelance|contractor")),
    ("temporary", re.compile(r"temp")),
    ("full_time", re.compile(r"full[\s_-]?time|permanent")),
]

CURRENCY_CODES = ("USD", "EUR", "GBP", "BRL", "CAD", "AUD")
CURRENCY_SYMBOLS = (("R$", "BRL"), ("€", "EUR"), ("£", "GBP"), ("$", "USD"))
ADZUNA_CURRENCIES = {
    "us": "USD",
    "gb": "GBP",
    "ca": "CAD",
    "au": "AUD",
    "br": "BRL",
    "de": "EUR",
    "fr": "EUR",
    "es": "EUR",
    "nl": "EUR",
    "it": "EUR",
}
SALARY_NUMBER = re.compile(r"(\d+(?:[.,]\d{3})*(?:\.\d+)?)\s*(k\b)?", re.IGNORECASE)
HOURLY = re.compile(r"(/\s*h(ou)?r|per hour|hourly|an hour)", re.IGNORECASE)
MONTHLY = re.compile(r"(/\s*mo(nth)?|per month|monthly|a month)", re.IGNORECASE)

PORTUGUESE_MARKERS = {
    "você",
    "vaga",
    "experiência",
    "desenvolvimento",
    "trabalho",
    "conhecimento",
    "equipe",
    "benefícios",
    "salário",
    "somos",
}
SPANISH_MARKERS = {
    "experiencia",
    "trabajo",
    "desarrollo",
    "conocimientos",
    "equipo",
    "beneficios",
    "salario",
    "nosotros",
    "buscamos",
}
LANGUAGE_ALIASES = {
    "en": "en",
    "english": "en",
    "pt": "pt-BR",
    "pt-br": "pt-BR",
    "portuguese": "pt-BR",
    "es": "es",
    "spanish": "es",
}

REQUIREMENTS_HEADING = re.compile(
    r"(requirements|qualifications|what you(?:'|\u2019)?ll need|what we(?:'|\u2019)?re looking for"
    r"|must[- ]haves?|you have)\s*:?",
    re.IGNORECASE,
)

COMPANY_SUFFIXES = {
    "inc",
    "incorporated",
    "llc",
    "ltd",
    "limited",
    "corp",
    "corporation",
    "co",
    "gmbh",
    "sa",
    "srl",
    "plc",
    "ag",
    "bv",
}


def fold_accents(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def strip_html(text: str | None) -> str:
    if not text:
        return ""
    if "<" in text and ">" in text:
        text = BeautifulSoup(text, "html.parser").get_text(" ")
    return normalize_whitespace(text)[:MAX_DESCRIPTION_CHARS]


def canonical_title(title: str) -> str:
    """Lowercase, drop suffixes and noise, expand common abbreviations."""
    text = fold_accents(title).lower()
    text = TITLE_SUFFIX_SPLIT.split(text, maxsplit=1)[0]
    text = TITLE_BRACKETS.sub(" ", text)
    text = GENDER_MARKER.sub(" ", text)
    text = re.sub(r"[^a-z0-9+#\s]", " ", text)
    expanded = [TITLE_ABBREVIATIONS.get(token, token) for token in text.split()]
    return normalize_whitespace(" ".join(expanded))


def canonical_company(name: str) -> str:
    tokens = normalize_text(fold_accents(name)).split()
    while len(tokens) > 1 and tokens[-1] in COMPANY_SUFFIXES:
        tokens.pop()
    if tokens and tokens[0] == "the" and len(tokens) > 1:
        tokens = tokens[1:]
    return " ".join(tokens)


def extract_domain(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    raw = value.strip().lower()
    if "://" not in raw:
        raw = f"//{raw}"
    host = urlsplit(raw).hostname or ""
    if host.startswith("www."):
        host = host[4:]
    return host if "." in host else None


def infer_seniority(text: str) -> str | None:
    canonical = canonical_title(text)
    for label, pattern in SENIORITY_PATTERNS:
        if pattern.search(canonical):
            return label
    return None


def normalize_seniority(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    key = normalize_text(value)
    if key in SENIORITY_ALIASES:
        return SENIORITY_ALIASES[key]
    return infer_seniority(value)


def detect_job_function(normalized_title: str) -> str | None:
    for label, pattern in JOB_FUNCTIONS:
        if pattern.search(normalized_title):
            return label
    return None


def normalize_employment_type(value: str | None) -> str | None:
    if not value:
        return None
    lowered = value.lower()
    for label, pattern in EMPLOYMENT_TYPES:
        if pattern.search(lowered):
            return label
    return None


def normalize_remote_type(value: str | None) -> RemoteType | None:
    if not value:
        return None
    key = normalize_text(value).replace(" ", "")
    if key in ("remote", "fullyremote", "remoteonly"):
        return "remote"
    if key == "hybrid":
        return "hybrid"
    if key in ("onsite", "office", "inoffice", "inperson"):
        return "onsite"
    return None


def clean_skill(value: str) -> str | None:
    skill = normalize_whitespace(value.lower()).strip(" .,;:")
    if 2 <= len(skill) <= 40:
        return skill
    return None


def extract_skills(tags: list[str], text: str) -> list[str]:
    skills = {skill for skill in (clean_skill(tag) for tag in tags) if skill}
    lowered = text.lower()
    for skill, pattern in SKILL_PATTERNS:
        if pattern.search(lowered):
            skills.add(skill)
    return sorted(skills)[:MAX_SKILLS]


def parse_salary_text(
    text: str | None,
) -> tuple[float | None, float | None, str | None, str | None]:
    """Parse "$120k - $150k" style text into (min, max, currency, period)."""
    if not text or not text.strip():
        return None, None, None, None
    amounts: list[float] = []
    for number, thousands in SALARY_NUMBER.findall(text):
        try:
            amount = float(number.replace(",", ""))
        except ValueError:
            continue
        if thousands:
            amount *= 1000
        if amount > 0:
            amounts.append(amount)
    if not amounts:
        return None, None, None, None

    currency: str | None = None
    upper = text.upper()
    for code in CURRENCY_CODES:
        if code in upper:
            currency = code
            break
    if currency is None:
        for symbol, code in CURRENCY_SYMBOLS:
            if symbol in text:
                currency = code
                break

    period = "year"
    if HOURLY.search(text):
        period = "hour"
    elif MONTHLY.search(text):
        period = "month"

    low = min(amounts[:2])
    high = max(amounts[:2])
    return low, high, currency, period


def detect_language(text: str) -> str | None:
    if not text.strip():
        return None
    tokens = tokenize(text[:4000])
    portuguese = len(tokens & PORTUGUESE_MARKERS)
    spanish = len(tokens & SPANISH_MARKERS)
    if portuguese >= 2 and portuguese >= spanish:
        return "pt-BR"
    if spanish >= 2:
        return "es"
    return "en"


def normalize_language(value: str | None) -> str | None:
    if not value or not value.strip():
        return None
    return LANGUAGE_ALIASES.get(value.strip().lower(), value.strip())


def extract_requirements(description: str) -> str | None:
    match = REQUIREMENTS_HEADING.search(description)
    if match is None:
        return None
    section = description[match.end() : match.end() + 1500].strip()
    return section or None


def _iso_or_none(value: str | None) -> str | None:
    parsed = parse_iso_datetime(value)
    return parsed.isoformat() if parsed else None


def _map_remotive(data: RemotivePayload) -> dict[str, Any]:
    return {
        "title": data.title,
        "company_name": data.company_name,
        "description": data.description,
        "tags": data.tags,
        "employment_type": data.job_type,
        "remote_type": "remote",
        "location": data.candidate_required_location,
        "salary_text": data.salary,
        "apply_url": data.url,
        "posted_at": data.publication_date,
    }


def _map_remoteok(data: RemoteOKPayload) -> dict[str, Any]:
    has_salary = bool(data.salary_min or data.salary_max)
    return {
        "title": data.position,
        "company_name": data.company,
        "description": data.description,
        "tags": data.tags,
        "remote_type": "remote",
        "location": data.location,
        "compensation_min": data.salary_min or None,
        "compensation_max": data.salary_max or None,
        "compensation_currency": "USD" if has_salary else None,
        "compensation_period": "year" if has_salary else None,
        "apply_url": data.apply_url or data.url,
        "posted_at": data.date,
    }


def _map_adzuna(data: AdzunaPayload) -> dict[str, Any]:
    country = (data.country or "").lower()
    location = data.location.display_name
    detected = detect_remote_type_from_text(f"{data.title} {data.description}", location)
    has_salary = bool(data.salary_min or data.salary_max)
    return {
        "title": data.title,
        "company_name": data.company.display_name,
        "description": data.description,
        "employment_type": data.contract_time or data.contract_type,
        "remote_type": "onsite" if detected == "unknown" else detected,
        "location": location,
        "extra_locations": data.location.area,
        "default_countries": [country.upper()] if country else [],
        "compensation_min": data.salary_min,
        "compensation_max": data.salary_max,
        "compensation_currency": ADZUNA_CURRENCIES.get(country) if has_salary else None,
        "compensation_period": "year" if has_salary else None,
        "apply_url": data.redirect_url,
        "posted_at": data.created,
    }


def _map_generic(data: GenericPayload) -> dict[str, Any]:
    return {
        "title": data.title,
        "company_name": data.company,
        "company_domain": data.company_domain,
        "description": data.description,
        "requirements": data.requirements,
        "tags": data.skills,
        "seniority": data.seniority,
        "employment_type": data.employment_type,
        "remote_type": normalize_remote_type(data.remote_type),
        "remote_region": data.remote_region,
        "allowed_countries": data.allowed_countries,
        "location": data.location,
        "salary_text": data.salary,
        "compensation_min": data.salary_min,
        "compensation_max": data.salary_max,
        "compensation_currency": data.salary_currency,
        "compensation_period": data.salary_period,
        "language": data.language,
        "apply_url": data.apply_url,
        "posted_at": data.posted_at,
    }


MAPPERS: dict[str, Callable[[Any], dict[str, Any]]] = {
    "remotive": _map_remotive,
    "remoteok": _map_remoteok,
    "adzuna": _map_adzuna,
    "generic": _map_generic,
}


def _build(raw: RawJobPosting, fields: dict[str, Any]) -> NormalizedJob:
    title = strip_html(fields.get("title"))
    if not title:
        raise ValueError("missing title")
    normalized_title = canonical_title(title)
    if not normalized_title:
        raise ValueError(f"title has no usable words: {title!r}")

    company_name = normalize_whitespace(fields.get("company_name") or "") or "Unknown"
    description = strip_html(fields.get("description"))
    location = normalize_whitespace(fields.get("location") or "") or None
    locations = [location] if location else []
    for extra in fields.get("extra_locations") or []:
        cleaned = normalize_whitespace(extra)
        if cleaned and cleaned not in locations:
            locations.append(cleaned)

    remote_type = fields.get("remote_type") or detect_remote_type_from_text(description, location)
    remote_region = normalize_whitespace(fields.get("remote_region") or "") or None
    if remote_region is None:
        remote_region = parse_remote_region_eligibility(description, location)
    explicit_countries = fields.get("allowed_countries")
    if explicit_countries:
        allowed_countries = normalize_location_preferences(explicit_countries)
    else:
        allowed_countries = parse_remote_region_eligibility_to_allowed_countries(remote_region)
    if not allowed_countries:
        allowed_countries = list(fields.get("default_countries") or [])

    compensation_min = fields.get("compensation_min")
    compensation_max = fields.get("compensation_max")
    currency = fields.get("compensation_currency")
    period = fields.get("compensation_period")
    if compensation_min is None and compensation_max is None:
        parsed_min, parsed_max, parsed_currency, parsed_period = parse_salary_text(
            fields.get("salary_text")
        )
        compensation_min, compensation_max = parsed_min, parsed_max
        currency = currency or parsed_currency
        period = period or parsed_period
    if compensation_min is not None and compensation_min < 0:
        compensation_min = None
    if compensation_max is not None and compensation_max < 0:
        compensation_max = None
    if (
        compensation_min is not None
        and compensation_max is not None
        and compensation_min > compensation_max
    ):
        compensation_min, compensation_max = compensation_max, compensation_min
    if (compensation_min is not None or compensation_max is not None) and period is None:
        period = "year"

    requirements = normalize_whitespace(fields.get("requirements") or "") or None
    apply_url = (fields.get("apply_url") or "").strip()

    return NormalizedJob(
        source=raw.source,
        source_job_id=raw.source_job_id,
        source_url=raw.source_url or apply_url or None,
        title=title,
        normalized_title=normalized_title,
        company_name=company_name,
        company_key=canonical_company(company_name),
        company_domain=extract_domain(fields.get("company_domain")),
        description_text=description,
        requirements_text=requirements or extract_requirements(description),
        skills=extract_skills(fields.get("tags") or [], f"{title} {description}"),
        job_function=detect_job_function(normalized_title),
        seniority=normalize_seniority(fields.get("seniority")) or infer_seniority(title),
        employment_type=normalize_employment_type(fields.get("employment_type")),
        remote_type=remote_type,
        remote_region_eligibility=remote_region,
        allowed_countries=allowed_countries,
        locations=locations,
        compensation_min=compensation_min,
        compensation_max=compensation_max,
        compensation_currency=currency.upper() if currency else None,
        compensation_period=period,
        language=normalize_language(fields.get("language")) or detect_language(description),
        apply_url=apply_url,
        posted_at=_iso_or_none(fields.get("posted_at")),
        fetched_at=raw.fetched_at,
    )


def normalize(raw: RawJobPosting) -> tuple[NormalizedJob | None, str | None]:
    """Map a raw posting to the canonical shape. Never raises."""
    mapper = MAPPERS.get(raw.raw_data.kind)
    if mapper is None:
        return None, f"{raw.source}:{raw.source_job_id}: unsupported payload {raw.raw_data.kind}"
    try:
        return _build(raw, mapper(raw.raw_data)), None
    except Exception as exc:
        LOGGER.warning(
            json.dumps(
                {
                    "event": "normalize_failed",
                    "source": raw.source,
                    "source_job_id": raw.source_job_id,
                    "error": str(exc),
                }
            )
        )
        return None, f"{raw.source}:{raw.source_job_id}: {exc}"
