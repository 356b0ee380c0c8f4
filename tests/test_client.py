from __future__ import annotations

import json

import httpx
import pytest

from visibility_tracker.client import AggregationClient
from visibility_tracker.config import Settings
from visibility_tracker.errors import DataError, NotReadyError, TransientError


def _settings() -> Settings:
    return Settings(aggregation_api_url="https://agg.example.test", aggregation_api_key="anon-key")


def _client(handler) -> AggregationClient:
    return AggregationClient(_settings(), transport=httpx.MockTransport(handler))


def _ranking_body() -> dict:
    return {
        "data": {
            "brand": {"id": "proj-acme", "name": "Acme", "percentage": 60.0, "mentions": 6, "rank": 1},
            "competitors": [
                {"name": "Globex", "percentage": 40.0, "mentions": 4, "rank": 2},
            ],
            "totalMentions": 10,
        }
    }


def test_check_progress_posts_project_id_with_api_key() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200, json={"processedPrompts": 3, "totalPrompts": 10, "allProcessed": False}
        )

    with _client(handler) as client:
        progress = client.check_progress("proj-acme")

    assert (progress.processed_units, progress.total_units, progress.all_processed) == (3, 10, False)
    request = seen[0]
    assert request.url.path == "/rest/v1/rpc/check_prompts_processed"
    assert json.loads(request.content) == {"p_project_id": "proj-acme"}
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["Authorization"] == "Bearer anon-key"


def test_check_progress_derives_completion_from_counts() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"processedPrompts": 0, "totalPrompts": 0, "allProcessed": True})

    with _client(handler) as client:
        progress = client.check_progress("proj-acme")

    assert not progress.all_processed


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(503, text="unavailable"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"processedPrompts": 11, "totalPrompts": 10}),
        httpx.Response(200, json={"totalPrompts": 10}),
    ],
)
def test_check_progress_failures_are_transient(response: httpx.Response) -> None:
    with _client(lambda request: response) as client:
        with pytest.raises(TransientError):
            client.check_progress("proj-acme")


def test_get_ranking_snapshot_maps_payload() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/rest/v1/rpc/get_onboarding_ranking"
        return httpx.Response(200, json=_ranking_body())

    with _client(handler) as client:
        snapshot = client.get_ranking_snapshot("proj-acme")

    assert snapshot.brand.count == 6
    assert snapshot.brand.percentage == 60.0
    assert snapshot.competitors[0].id == "proj-acme:0"
    assert snapshot.competitors[0].rank == 2
    assert snapshot.total_mentions == 10


def test_get_ranking_snapshot_error_payload_is_data_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"data": None, "error": "No AI responses found"})

    with _client(handler) as client:
        with pytest.raises(DataError, match="No AI responses found"):
            client.get_ranking_snapshot("proj-acme")


def test_get_ranking_snapshot_without_data_uses_default_message() -> None:
    with _client(lambda request: httpx.Response(200, json={})) as client:
        with pytest.raises(DataError, match="Failed to load ranking data"):
            client.get_ranking_snapshot("proj-acme")


def test_get_ranking_snapshot_conflict_is_not_ready() -> None:
    with _client(lambda request: httpx.Response(409, json={"message": "processing"})) as client:
        with pytest.raises(NotReadyError):
            client.get_ranking_snapshot("proj-acme")


def test_get_ranking_snapshot_server_error_is_transient() -> None:
    with _client(lambda request: httpx.Response(500)) as client:
        with pytest.raises(TransientError):
            client.get_ranking_snapshot("proj-acme")


def test_get_ranking_snapshot_rejects_out_of_range_percentages() -> None:
    body = _ranking_body()
    body["data"]["brand"]["percentage"] = 140.0

    with _client(lambda request: httpx.Response(200, json=body)) as client:
        with pytest.raises(DataError):
            client.get_ranking_snapshot("proj-acme")


def test_client_requires_api_url() -> None:
    with pytest.raises(ValueError):
        AggregationClient(Settings())
