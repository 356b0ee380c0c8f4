from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum


@dataclass(frozen=True)
class MissingResponse:
    prompt_id: str
    missing_platforms: tuple[str, ...]


@dataclass(frozen=True)
class JobProgress:
    processed_units: int
    total_units: int
    all_processed: bool
    missing: tuple[MissingResponse, ...] = ()

    def __post_init__(self) -> None:
        if self.processed_units < 0 or self.total_units < 0:
            raise ValueError("unit counts must be non-negative")
        if self.processed_units > self.total_units:
            raise ValueError(f"processed units {self.processed_units} exceed total {self.total_units}")
        # A job with no units is still waiting, never complete.
        complete = self.total_units > 0 and self.processed_units == self.total_units
        if self.all_processed != complete:
            raise ValueError(
                f"all_processed={self.all_processed} contradicts "
                f"{self.processed_units}/{self.total_units} units processed"
            )

    @classmethod
    def from_counts(
        cls,
        processed_units: int,
        total_units: int,
        missing: tuple[MissingResponse, ...] = (),
    ) -> JobProgress:
        return cls(
            processed_units=processed_units,
            total_units=total_units,
            all_processed=total_units > 0 and processed_units == total_units,
            missing=missing,
        )


@dataclass(frozen=True)
class RankedEntity:
    id: str
    name: str
    percentage: float
    count: int
    rank: int


@dataclass(frozen=True)
class RankingSnapshot:
    brand: RankedEntity
    competitors: tuple[RankedEntity, ...]
    total_mentions: int

    @property
    def entities(self) -> tuple[RankedEntity, ...]:
        return (self.brand, *self.competitors)


class Phase(str, Enum):
    LOADING = "loading"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class PollFailure:
    kind: str
    message: str


@dataclass(frozen=True)
class PollState:
    phase: Phase = Phase.LOADING
    attempt_count: int = 0
    displayed_progress: float = 0.0
    status_message: str = "Initializing analysis..."
    finalizing: bool = False
    snapshot: RankingSnapshot | None = None
    failure: PollFailure | None = None

    @property
    def is_terminal(self) -> bool:
        return self.phase is not Phase.LOADING


@dataclass(frozen=True)
class DateRange:
    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError("date range start must not be after its end")

    @property
    def duration(self) -> timedelta:
        return self.end - self.start


@dataclass(frozen=True)
class QueryFilters:
    date_range: DateRange | None = None
    platform: str | None = None
    region: str | None = None
    topic_id: str | None = None


@dataclass(frozen=True)
class EntityShare:
    id: str
    name: str
    domain: str
    mentions: int
    percentage: float


@dataclass(frozen=True)
class ShareOfVoice:
    brand: EntityShare
    competitors: list[EntityShare]
    total_mentions: int
    market_position: int


@dataclass(frozen=True)
class ShareOfVoiceTrend:
    name: str
    current_percentage: float
    previous_percentage: float
    change: float


@dataclass(frozen=True)
class PlatformBreakdown:
    platform: str
    mentions: int
    citations: int
    share: float
    trend: float
    entities: list[EntityShare] = field(default_factory=list)


@dataclass(frozen=True)
class DomainCitations:
    domain: str
    citations: int


@dataclass(frozen=True)
class SentimentMetrics:
    total_rows: int
    unique_responses: int
    brand_rows: int
    competitor_rows: int
    average_sentiment: float
    brand_sentiment: float
    distribution: dict[str, int] = field(default_factory=dict)
    confidence: float = 0.5


@dataclass(frozen=True)
class EntitySentiment:
    entity_name: str
    entity_type: str
    mentions: int
    average_sentiment: float
    label: str
    positive_count: int
    neutral_count: int
    negative_count: int
    confidence: float = 0.5


@dataclass(frozen=True)
class CompetitiveRank:
    rank: int
    total_entities: int
