from __future__ import annotations

import logging
from contextlib import AbstractContextManager

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from visibility_tracker.config import Settings
from visibility_tracker.errors import DataError, NotReadyError, TransientError
from visibility_tracker.models import JobProgress, RankedEntity, RankingSnapshot

logger = logging.getLogger(__name__)

PROGRESS_RPC = "check_prompts_processed"
RANKING_RPC = "get_onboarding_ranking"


class ProgressPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    processed_prompts: int = Field(alias="processedPrompts", ge=0)
    total_prompts: int = Field(alias="totalPrompts", ge=0)
    all_processed: bool = Field(default=False, alias="allProcessed")


class EntityPayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = ""
    name: str
    percentage: float = Field(ge=0.0, le=100.0)
    mentions: int = Field(ge=0)
    rank: int = Field(ge=1)

    def to_entity(self, fallback_id: str) -> RankedEntity:
        return RankedEntity(
            id=self.id or fallback_id,
            name=self.name,
            percentage=self.percentage,
            count=self.mentions,
            rank=self.rank,
        )


class RankingData(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    brand: EntityPayload
    competitors: list[EntityPayload] = Field(default_factory=list)
    total_mentions: int = Field(alias="totalMentions", ge=0)


class RankingPayload(BaseModel):
    data: RankingData | None = None
    error: str | None = None


@retry(
    stop=stop_after_attempt(3),
    wait=wait_fixed(1),
    retry=retry_if_exception_type(httpx.TransportError),
    reraise=True,
)
def _post_rpc(client: httpx.Client, name: str, project_id: str) -> httpx.Response:
    return client.post(f"/rest/v1/rpc/{name}", json={"p_project_id": project_id})


class AggregationClient(AbstractContextManager["AggregationClient"]):

    def __init__(self, settings: Settings, *, transport: httpx.BaseTransport | None = None):
        if not settings.aggregation_api_url:
            raise ValueError("AGGREGATION_API_URL is not configured")
        headers = {
            "User-Agent": settings.user_agent,
            "apikey": settings.aggregation_api_key,
            "Authorization": f"Bearer {settings.aggregation_api_key}",
        }
        self._client = httpx.Client(
            base_url=settings.aggregation_api_url,
            headers=headers,
            timeout=settings.request_timeout_seconds,
            transport=transport,
        )

    def check_progress(self, project_id: str) -> JobProgress:
        try:
            response = _post_rpc(self._client, PROGRESS_RPC, project_id)
            response.raise_for_status()
            payload = ProgressPayload.model_validate(response.json())
        except (httpx.HTTPError, ValidationError, ValueError) as exc:
            logger.warning("progress check for %s failed: %s", project_id, exc)
            raise TransientError(f"progress check failed: {exc}") from exc

        if payload.processed_prompts > payload.total_prompts:
            raise TransientError(
                f"backend reported {payload.processed_prompts}/{payload.total_prompts} prompts processed"
            )
        if payload.all_processed != (
            payload.total_prompts > 0 and payload.processed_prompts == payload.total_prompts
        ):
            logger.warning("backend allProcessed flag disagrees with counts for %s", project_id)
        return JobProgress.from_counts(payload.processed_prompts, payload.total_prompts)

    def get_ranking_snapshot(self, project_id: str) -> RankingSnapshot:
        try:
            response = _post_rpc(self._client, RANKING_RPC, project_id)
        except httpx.HTTPError as exc:
            raise TransientError(f"ranking request failed: {exc}") from exc

        if response.status_code == httpx.codes.CONFLICT:
            raise NotReadyError(f"ranking for {project_id} is not ready")
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransientError(f"ranking request failed: {exc}") from exc

        try:
            payload = RankingPayload.model_validate(response.json())
        except (ValidationError, ValueError) as exc:
            raise DataError(f"malformed ranking payload: {exc}") from exc

        if payload.error or payload.data is None:
            raise DataError(payload.error or "Failed to load ranking data")

        data = payload.data
        return RankingSnapshot(
            brand=data.brand.to_entity(project_id),
            competitors=tuple(
                competitor.to_entity(f"{project_id}:{index}")
                for index, competitor in enumerate(data.competitors)
            ),
            total_mentions=data.total_mentions,
        )

    def close(self) -> None:
        self._client.close()

    def __exit__(self, exc_type, exc, exc_tb) -> None:
        self.close()
