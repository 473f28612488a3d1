from __future__ import annotations

import re
import unicodedata

from common.utils import normalize_text

from jobintel.models import RemoteType

WORLDWIDE = "Worldwide"

ONSITE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bin[-\s]?person\b",
        r"\bon[-\s]?site\b",
        r"\bonsite\b",
        r"\bin[-\s]?office\b",
        r"\boffice[-\s]?based\b",
        r"\bwork (in|at) (our )?office\b",
        r"\bmust (be )?(in office|on site|onsite)\b",
        r"\brelocate\s+(to|required)\b",
        r"\bno (remote|work from home)\b",
        r"\bnot (remote|eligible for remote)\b",
    )
]
HYBRID_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bhybrid\b",
        r"\bsome (days )?in office\b",
        r"\bflexible (location|remote)\b",
    )
]
REMOTE_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\bremote\b",
        r"\bwork from home\b",
        r"\bwfh\b",
        r"\bdistributed\b",
        r"\bwork from anywhere\b",
    )
]

# Restriction phrases found in free text. "We are a US company" must not tag US.
REGION_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(pattern, re.IGNORECASE), label)
    for pattern, label in (
        (r"\b(global|worldwide|anywhere|work from anywhere)\b", WORLDWIDE),
        (r"\b(us only|usa only|united states only|u\.?s\.? only|us-based only)\b", "US"),
        (r"\bmust be (based |located |residing )?in (the )?u\.?s\.?(a\.?)?\b", "US"),
        (r"\bauthorized to work (in|within) (the )?(united states|u\.?s\.?a?\.?)\b", "US"),
        (r"\bcandidates? (must be )?(in|located in|based in|residing in) (the )?u\.?s\.?\b", "US"),
        (r"\b(north america|n\.?a\.?) only\b", "US"),
        (r"\b(uk only|united kingdom only|uk-based)\b", "GB"),
        (r"\bmust be (based |located )?in the u\.?k\.?\b", "GB"),
        (r"\b(great britain|britain)\b", "GB"),
        (r"\b(eu only|europe only|european union|eea)\b", "Europe"),
        (r"\bemea\b", "Europe"),
        (r"\bmust be (based |located )?in (the )?e(u|urope)\b", "Europe"),
        (r"\b(latam|latin america)\b", "LATAM"),
        (r"\b(brazil|brasil)\b", "BR"),
        (r"\bcanada\b", "CA"),
        (r"\b(mexico|méxico)\b", "MX"),
        (r"\bargentina\b", "AR"),
        (r"\bcolombia\b", "CO"),
        (r"\bchile\b", "CL"),
        (r"\b(germany|deutschland)\b", "DE"),
        (r"\bfrance\b", "FR"),
        (r"\b(spain|españa)\b", "ES"),
        (r"\b(apac|asia pacific|australia)\b", "APAC"),
    )
]

LOCATION_ALIASES: dict[str, tuple[str, ...]] = {
    "worldwide": (WORLDWIDE,),
    "anywhere": (WORLDWIDE,),
    "global": (WORLDWIDE,),
    "international": (WORLDWIDE,),
    "us": ("US",),
    "usa": ("US",),
    "u s": ("US",),
    "u s a": ("US",),
    "united states": ("US",),
    "united states of america": ("US",),
    "north america": ("US", "CA"),
    "uk": ("GB",),
    "gb": ("GB",),
    "united kingdom": ("GB",),
    "great britain": ("GB",),
    "britain": ("GB",),
    "england": ("GB",),
    "europe": ("Europe",),
    "eu": ("Europe",),
    "eea": ("Europe",),
    "emea": ("Europe",),
    "european union": ("Europe",),
    "latam": ("LATAM",),
    "latin america": ("LATAM",),
    "south america": ("LATAM",),
    "br": ("BR",),
    "brazil": ("BR",),
    "brasil": ("BR",),
    "ca": ("CA",),
    "canada": ("CA",),
    "mx": ("MX",),
    "mexico": ("MX",),
    "ar": ("AR",),
    "argentina": ("AR",),
    "co": ("CO",),
    "colombia": ("CO",),
    "cl": ("CL",),
    "chile": ("CL",),
    "de": ("DE",),
    "germany": ("DE",),
    "deutschland": ("DE",),
    "fr": ("FR",),
    "france": ("FR",),
    "es": ("ES",),
    "spain": ("ES",),
    "espana": ("ES",),
    "pt": ("PT",),
    "portugal": ("PT",),
    "nl": ("NL",),
    "netherlands": ("NL",),
    "ie": ("IE",),
    "ireland": ("IE",),
    "in": ("IN",),
    "india": ("IN",),
    "apac": ("APAC",),
    "asia": ("APAC",),
    "asia pacific": ("APAC",),
    "australia": ("APAC",),
}

REGION_MEMBERS: dict[str, frozenset[str]] = {
    "LATAM": frozenset({"BR", "MX", "AR", "CO", "CL", "PE", "UY", "CR"}),
    "Europe": frozenset({"GB", "DE", "FR", "ES", "PT", "NL", "IE", "IT", "PL", "SE"}),
    "APAC": frozenset({"AU", "IN", "SG", "JP", "NZ", "PH"}),
}

# Words that qualify a location part without changing where it points.
LOCATION_NOISE = {
    "only",
    "based",
    "remote",
    "friendly",
    "timezone",
    "timezones",
    "time",
    "zone",
    "zones",
    "candidates",
    "residents",
    "from",
    "within",
    "the",
}
PART_SEPARATORS = re.compile(r"[,;/|&+()]| - | and | or ", re.IGNORECASE)


def _fold(text: str) -> str:
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(char for char in decomposed if not unicodedata.combining(char))


def _codes_for_part(part: str) -> tuple[str, ...]:
    words = [word for word in normalize_text(_fold(part)).split() if word not in LOCATION_NOISE]
    if not words:
        return ()
    return LOCATION_ALIASES.get(" ".join(words), ())


def _dedupe(values: list[str]) -> list[str]:
    seen: set[str] = set()
    ordered: list[str] = []
    for value in values:
        if value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered


def detect_remote_type_from_text(description: str, location: str | None = None) -> RemoteType:
    """Classify work arrangement; onsite phrases win over hybrid, hybrid over remote."""
    text = " ".join(part for part in (description, location) if part)
    if not text.strip():
        return "unknown"
    for pattern in ONSITE_PATTERNS:
        if pattern.search(text):
            return "onsite"
    for pattern in HYBRID_PATTERNS:
        if pattern.search(text):
            return "hybrid"
    for pattern in REMOTE_PATTERNS:
        if pattern.search(text):
            return "remote"
    return "unknown"


def location_codes(location: str | None) -> list[str]:
    """Map a structured location field ("US, Canada", "Remote - LATAM") to codes."""
    if not location:
        return []
    codes: list[str] = []
    for part in PART_SEPARATORS.split(location):
        codes.extend(_codes_for_part(part))
    return _dedupe(codes)


def parse_remote_region_eligibility(description: str, location: str | None = None) -> str | None:
    codes = location_codes(location)
    if not codes:
        text = " ".join(part for part in (description, location) if part)
        codes = _dedupe([label for pattern, label in REGION_PATTERNS if pattern.search(text)])
    return ", ".join(codes) if codes else None


def parse_remote_region_eligibility_to_allowed_countries(text: str | None) -> list[str]:
    """Turn free-form eligibility text into allowed country/region codes.

    Accepts stored label strings ("US, Europe") as well as prose
    ("US and Canada only"). Anything unparseable yields [] which callers
    treat as unknown eligibility, never as worldwide.
    """
    if not text or not text.strip():
        return []
    codes = location_codes(text)
    if codes:
        return codes
    return _dedupe([label for pattern, label in REGION_PATTERNS if pattern.search(text)])


def normalize_location_preference(value: str) -> list[str]:
    """Normalize a profile location entry ("Brazil", "latam") to codes."""
    codes = location_codes(value)
    if codes:
        return codes
    stripped = value.strip()
    if len(stripped) == 2 and stripped.isalpha():
        return [stripped.upper()]
    return [stripped] if stripped else []


def normalize_location_preferences(values: list[str]) -> list[str]:
    codes: list[str] = []
    for value in values:
        codes.extend(normalize_location_preference(value))
    return _dedupe(codes)


def region_covers(region: str, code: str) -> bool:
    if region == code:
        return True
    return code in REGION_MEMBERS.get(region, frozenset())


def locations_overlap(job_codes: list[str], user_codes: list[str]) -> bool:
    if WORLDWIDE in job_codes or WORLDWIDE in user_codes:
        return True
    for job_code in job_codes:
        for user_code in user_codes:
            if region_covers(job_code, user_code) or region_covers(user_code, job_code):
                return True
    return False
