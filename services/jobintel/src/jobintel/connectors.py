from __future__ import annotations

import hashlib
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx
from common.utils import now_utc_iso
from pydantic import ValidationError

from jobintel.config import PipelineSettings
from jobintel.models import SOURCE_INLINE_JSON, SOURCE_JSON_URL, RawJobPosting, SourceConfig

LOGGER = logging.getLogger("jobintel.connectors")

REMOTIVE_URL = "https://remotive.com/api/remote-jobs"
REMOTEOK_URL = "https://remoteok.com/api"
ADZUNA_URL = "https://api.adzuna.com/v1/api/jobs/{country}/search/1"
DEFAULT_ADZUNA_COUNTRIES = ("us", "gb")
USER_AGENT = "jobintel/0.1"

Sleep = Callable[[float], None]


class ConnectorError(Exception):
    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass
class FetchOutcome:
    postings: list[RawJobPosting] = field(default_factory=list)
    decode_errors: list[str] = field(default_factory=list)
    error: ConnectorError | None = None


def _retry_after_seconds(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after", "").strip()
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def fetch_json(
    client: httpx.Client,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    max_retries: int = 3,
    backoff_seconds: float = 1.0,
    backoff_max_seconds: float = 30.0,
    sleep: Sleep = time.sleep,
) -> Any:
    """GET a JSON document, retrying transport errors, 429 and 5xx.

    Other 4xx responses and unparseable bodies fail immediately.
    """
    attempt = 0
    while True:
        retry_after: float | None = None
        try:
            response = client.get(url, params=params)
        except httpx.TransportError as exc:
            error = ConnectorError(f"transport error for {url}: {exc}", transient=True)
        else:
            status = response.status_code
            if status == 429 or status >= 500:
                error = ConnectorError(f"HTTP {status} from {url}", transient=True)
                retry_after = _retry_after_seconds(response)
            elif status >= 400:
                raise ConnectorError(f"HTTP {status} from {url}", transient=False)
            else:
                try:
                    return response.json()
                except ValueError as exc:
                    raise ConnectorError(
                        f"invalid JSON from {url}: {exc}", transient=False
                    ) from exc

        if attempt >= max_retries:
            raise error
        delay = min(backoff_seconds * (2**attempt), backoff_max_seconds)
        if retry_after is not None:
            delay = max(delay, min(retry_after, backoff_max_seconds))
        attempt += 1
        LOGGER.info(
            json.dumps(
                {
                    "event": "source_fetch_retry",
                    "url": url,
                    "attempt": attempt,
                    "delay_seconds": delay,
                    "error": str(error),
                }
            )
        )
        sleep(delay)


class SourceConnector(ABC):
    """Produces RawJobPostings for one registered source."""

    payload_kind = "generic"

    def __init__(
        self,
        source: SourceConfig,
        client: httpx.Client,
        settings: PipelineSettings,
        *,
        sleep: Sleep = time.sleep,
    ) -> None:
        self.source = source
        self.client = client
        self.settings = settings
        self.sleep = sleep

    @abstractmethod
    def fetch_items(self) -> list[Any]:
        raise NotImplementedError

    def get_json(self, url: str, params: dict[str, Any] | None = None) -> Any:
        return fetch_json(
            self.client,
            url,
            params=params,
            max_retries=self.settings.source_max_retries,
            backoff_seconds=self.settings.source_backoff_seconds,
            backoff_max_seconds=self.settings.source_backoff_max_seconds,
            sleep=self.sleep,
        )

    def source_job_id(self, item: dict[str, Any]) -> str:
        value = item.get("id")
        if value is None or not str(value).strip():
            raise ValueError("posting has no id")
        return str(value).strip()

    def source_url(self, item: dict[str, Any]) -> str | None:
        value = item.get("url")
        return str(value) if value else None

    def decode(self, item: Any, *, fetched_at: str) -> RawJobPosting:
        if not isinstance(item, dict):
            raise ValueError(f"posting must be an object, got {type(item).__name__}")
        return RawJobPosting(
            source=self.source.source_id,
            source_job_id=self.source_job_id(item),
            source_url=self.source_url(item),
            raw_data={**item, "kind": self.payload_kind},
            fetched_at=fetched_at,
        )

    def fetch(self) -> FetchOutcome:
        fetched_at = now_utc_iso()
        try:
            items = self.fetch_items()
        except ConnectorError as exc:
            return FetchOutcome(error=exc)
        except Exception as exc:
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "source_fetch_crashed",
                        "source_id": self.source.source_id,
                        "error": str(exc),
                    }
                )
            )
            return FetchOutcome(error=ConnectorError(str(exc), transient=False))

        outcome = FetchOutcome()
        for index, item in enumerate(items):
            try:
                outcome.postings.append(self.decode(item, fetched_at=fetched_at))
            except (ValidationError, ValueError) as exc:
                first_line = str(exc).splitlines()[0]
                outcome.decode_errors.append(f"{self.source.source_id}[{index}]: {first_line}")
        return outcome


class RemotiveConnector(SourceConnector):
    payload_kind = "remotive"

    def fetch_items(self) -> list[Any]:
        params: dict[str, Any] = {}
        if self.source.config.get("search"):
            params["search"] = self.source.config["search"]
        payload = self.get_json(self.source.config.get("url") or REMOTIVE_URL, params or None)
        if not isinstance(payload, dict) or not isinstance(payload.get("jobs"), list):
            raise ConnectorError("Remotive payload has no jobs list", transient=False)
        return payload["jobs"]


class RemoteOKConnector(SourceConnector):
    payload_kind = "remoteok"

    def fetch_items(self) -> list[Any]:
        payload = self.get_json(self.source.config.get("url") or REMOTEOK_URL)
        if not isinstance(payload, list):
            raise ConnectorError("RemoteOK payload must be a list", transient=False)
        # The first element is a legal notice, not a posting.
        return [item for item in payload if isinstance(item, dict) and "position" in item]

    def source_url(self, item: dict[str, Any]) -> str | None:
        value = item.get("url") or item.get("apply_url")
        return str(value) if value else None


class AdzunaConnector(SourceConnector):
    payload_kind = "adzuna"

    def fetch_items(self) -> list[Any]:
        app_id = self.source.config.get("app_id") or self.settings.adzuna_app_id
        app_key = self.source.config.get("app_key") or self.settings.adzuna_app_key
        if not app_id or not app_key:
            raise ConnectorError("Adzuna credentials are not configured", transient=False)

        countries = self.source.config.get("countries") or list(DEFAULT_ADZUNA_COUNTRIES)
        items: list[Any] = []
        for country in countries:
            params: dict[str, Any] = {
                "app_id": app_id,
                "app_key": app_key,
                "results_per_page": self.source.config.get("results_per_page", 50),
            }
            if self.source.config.get("search"):
                params["what"] = self.source.config["search"]
            payload = self.get_json(ADZUNA_URL.format(country=country), params)
            results = payload.get("results") if isinstance(payload, dict) else None
            if not isinstance(results, list):
                raise ConnectorError(f"Adzuna payload for {country} has no results", transient=False)
            for item in results:
                if isinstance(item, dict):
                    items.append({**item, "country": country})
        return items

    def source_url(self, item: dict[str, Any]) -> str | None:
        value = item.get("redirect_url")
        return str(value) if value else None


class InlineJsonConnector(SourceConnector):
    def fetch_items(self) -> list[Any]:
        return postings_from_payload(self.source.config.get("postings", []))

    def source_job_id(self, item: dict[str, Any]) -> str:
        for candidate in (item.get("external_id"), item.get("id")):
            if candidate is not None and str(candidate).strip():
                return str(candidate).strip()
        # Stable fallback so re-scans of the same record do not create new provenance.
        base = "|".join(
            str(item.get(key) or "") for key in ("title", "company", "location", "apply_url")
        )
        return hashlib.sha1(base.encode()).hexdigest()[:16]

    def source_url(self, item: dict[str, Any]) -> str | None:
        value = item.get("apply_url")
        return str(value) if value else None


class JsonUrlConnector(InlineJsonConnector):
    def fetch_items(self) -> list[Any]:
        url = str(self.source.config.get("url", "")).strip()
        if not url:
            raise ConnectorError("Missing url in job source config.", transient=False)
        return postings_from_payload(self.get_json(url))


def postings_from_payload(payload: Any) -> list[Any]:
    if isinstance(payload, dict):
        raw_postings = payload.get("postings", [])
    elif isinstance(payload, list):
        raw_postings = payload
    else:
        raise ConnectorError("Source payload must be a JSON object or list.", transient=False)
    if not isinstance(raw_postings, list):
        raise ConnectorError("Source payload postings must be a list.", transient=False)
    return raw_postings


CONNECTORS: dict[str, type[SourceConnector]] = {
    "remotive": RemotiveConnector,
    "remoteok": RemoteOKConnector,
    "adzuna": AdzunaConnector,
    SOURCE_INLINE_JSON: InlineJsonConnector,
    SOURCE_JSON_URL: JsonUrlConnector,
}


def build_connector(
    source: SourceConfig,
    client: httpx.Client,
    settings: PipelineSettings,
    *,
    sleep: Sleep = time.sleep,
) -> SourceConnector:
    connector_class = CONNECTORS.get(source.source_type)
    if connector_class is None:
        raise ValueError(f"Unsupported source type: {source.source_type}")
    return connector_class(source, client, settings, sleep=sleep)
