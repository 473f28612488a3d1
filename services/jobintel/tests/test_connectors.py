from __future__ import annotations

from typing import Any

import httpx
import pytest
from jobintel.config import PipelineSettings
from jobintel.connectors import (
    AdzunaConnector,
    ConnectorError,
    InlineJsonConnector,
    JsonUrlConnector,
    RemoteOKConnector,
    RemotiveConnector,
    build_connector,
    fetch_json,
)
from jobintel.models import SourceConfig

pytestmark = pytest.mark.unit


def source_config(source_type: str, **config: Any) -> SourceConfig:
    return SourceConfig(
        source_id=f"{source_type}_source",
        name=source_type.title(),
        source_type=source_type,
        enabled=True,
        created_at="2026-10-01T00:00:00+00:00",
        updated_at="2026-10-01T00:00:00+00:00",
        config=config,
    )


class Recorder:
    def __init__(self, *responses: httpx.Response) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def client_for(handler) -> httpx.Client:
    return httpx.Client(transport=httpx.MockTransport(handler))


def test_fetch_json_retries_server_errors_with_backoff() -> None:
    recorder = Recorder(
        httpx.Response(503),
        httpx.Response(502),
        httpx.Response(200, json={"ok": True}),
    )
    delays: list[float] = []

    with client_for(recorder) as client:
        payload = fetch_json(client, "https://feed.example/jobs", sleep=delays.append)

    assert payload == {"ok": True}
    assert delays == [1.0, 2.0]
    assert len(recorder.requests) == 3


def test_fetch_json_honors_retry_after_on_429() -> None:
    recorder = Recorder(
        httpx.Response(429, headers={"retry-after": "5"}),
        httpx.Response(200, json=[]),
    )
    delays: list[float] = []

    with client_for(recorder) as client:
        assert fetch_json(client, "https://feed.example/jobs", sleep=delays.append) == []

    assert delays == [5.0]


def test_fetch_json_gives_up_after_max_retries() -> None:
    recorder = Recorder(*(httpx.Response(500) for _ in range(3)))
    delays: list[float] = []

    with client_for(recorder) as client:
        with pytest.raises(ConnectorError) as excinfo:
            fetch_json(client, "https://feed.example/jobs", max_retries=2, sleep=delays.append)

    assert excinfo.value.transient is True
    assert len(recorder.requests) == 3
    assert len(delays) == 2


def test_fetch_json_does_not_retry_client_errors() -> None:
    recorder = Recorder(httpx.Response(404))
    delays: list[float] = []

    with client_for(recorder) as client:
        with pytest.raises(ConnectorError) as excinfo:
            fetch_json(client, "https://feed.example/jobs", sleep=delays.append)

    assert excinfo.value.transient is False
    assert "HTTP 404" in str(excinfo.value)
    assert delays == []


def test_fetch_json_rejects_invalid_json() -> None:
    recorder = Recorder(httpx.Response(200, content=b"<html>oops</html>"))

    with client_for(recorder) as client:
        with pytest.raises(ConnectorError) as excinfo:
            fetch_json(client, "https://feed.example/jobs", sleep=lambda _: None)

    assert excinfo.value.transient is False
    assert "invalid JSON" in str(excinfo.value)


def test_fetch_json_retries_transport_errors() -> None:
    calls = {"count": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["count"] += 1
        if calls["count"] == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"jobs": []})

    with client_for(handler) as client:
        assert fetch_json(client, "https://feed.example/jobs", sleep=lambda _: None) == {
            "jobs": []
        }
    assert calls["count"] == 2


def test_remotive_connector_decodes_jobs() -> None:
    recorder = Recorder(
        httpx.Response(
            200,
            json={
                "jobs": [
                    {"id": 7, "url": "https://remotive.com/jobs/7", "title": "Designer"},
                    {"title": "No id"},
                ]
            },
        )
    )

    with client_for(recorder) as client:
        connector = RemotiveConnector(
            source_config("remotive", search="design"), client, PipelineSettings()
        )
        outcome = connector.fetch()

    assert outcome.error is None
    assert [posting.source_job_id for posting in outcome.postings] == ["7"]
    assert outcome.postings[0].raw_data.kind == "remotive"
    assert outcome.postings[0].source_url == "https://remotive.com/jobs/7"
    assert outcome.decode_errors == ["remotive_source[1]: posting has no id"]
    assert recorder.requests[0].url.params["search"] == "design"


def test_remotive_connector_reports_malformed_payload() -> None:
    recorder = Recorder(httpx.Response(200, json={"unexpected": True}))

    with client_for(recorder) as client:
        outcome = RemotiveConnector(
            source_config("remotive"), client, PipelineSettings()
        ).fetch()

    assert outcome.postings == []
    assert outcome.error is not None
    assert outcome.error.transient is False


def test_remoteok_connector_skips_legal_notice() -> None:
    recorder = Recorder(
        httpx.Response(
            200,
            json=[
                {"legal": "API terms of service"},
                {"id": "ok-1", "position": "Backend Engineer", "company": "Globex"},
            ],
        )
    )

    with client_for(recorder) as client:
        outcome = RemoteOKConnector(source_config("remoteok"), client, PipelineSettings()).fetch()

    assert outcome.decode_errors == []
    assert len(outcome.postings) == 1
    assert outcome.postings[0].raw_data.kind == "remoteok"
    assert outcome.postings[0].raw_data.position == "Backend Engineer"


def test_adzuna_connector_requires_credentials() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected without credentials")

    with client_for(handler) as client:
        outcome = AdzunaConnector(source_config("adzuna"), client, PipelineSettings()).fetch()

    assert outcome.error is not None
    assert outcome.error.transient is False
    assert "credentials" in str(outcome.error)


def test_adzuna_connector_queries_each_country() -> None:
    recorder = Recorder(
        httpx.Response(200, json={"results": [{"id": "a-1", "title": "Analyst"}]}),
        httpx.Response(200, json={"results": [{"id": "a-2", "title": "Analyst"}]}),
    )
    settings = PipelineSettings(adzuna_app_id="id", adzuna_app_key="key")

    with client_for(recorder) as client:
        connector = AdzunaConnector(
            source_config("adzuna", countries=["gb", "de"], search="analyst"), client, settings
        )
        outcome = connector.fetch()

    assert [posting.raw_data.country for posting in outcome.postings] == ["gb", "de"]
    assert [request.url.path for request in recorder.requests] == [
        "/v1/api/jobs/gb/search/1",
        "/v1/api/jobs/de/search/1",
    ]
    assert recorder.requests[0].url.params["what"] == "analyst"
    assert recorder.requests[0].url.params["app_id"] == "id"


def test_inline_connector_assigns_stable_ids_and_collects_decode_errors() -> None:
    postings = [
        {"title": "Support Specialist", "company": "Acme", "apply_url": "https://acme.example/1"},
        {"external_id": "ext-1", "title": "Designer"},
        "not a posting",
        {"title": ""},
    ]
    source = source_config("inline_json", postings=postings)

    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("inline sources do not make requests")

    with client_for(handler) as client:
        first = InlineJsonConnector(source, client, PipelineSettings()).fetch()
        second = InlineJsonConnector(source, client, PipelineSettings()).fetch()

    first_ids = [posting.source_job_id for posting in first.postings]
    assert first_ids == [posting.source_job_id for posting in second.postings]
    assert first_ids[1] == "ext-1"
    assert len(first_ids[0]) == 16
    assert first.postings[0].source_url == "https://acme.example/1"
    assert len(first.decode_errors) == 2
    assert first.decode_errors[0].startswith("inline_json_source[2]:")


def test_json_url_connector_accepts_wrapped_postings() -> None:
    recorder = Recorder(
        httpx.Response(200, json={"postings": [{"id": "p-1", "title": "Data Engineer"}]})
    )

    with client_for(recorder) as client:
        connector = build_connector(
            source_config("json_url", url="https://partner.example/jobs.json"),
            client,
            PipelineSettings(),
        )
        outcome = connector.fetch()

    assert isinstance(connector, JsonUrlConnector)
    assert [posting.source_job_id for posting in outcome.postings] == ["p-1"]
    assert str(recorder.requests[0].url) == "https://partner.example/jobs.json"
