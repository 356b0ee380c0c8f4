from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Sequence

from visibility_tracker.aggregation import (
    EntityCount,
    build_ranking_snapshot,
    count_by,
    share_percentage,
    top_counts,
)
from visibility_tracker.config import DEFAULT_TRACKED_PLATFORMS
from visibility_tracker.errors import DataError, NotReadyError
from visibility_tracker.filters import competitor_in_region, previous_period, resolve_date_range
from visibility_tracker.models import (
    CompetitiveRank,
    DomainCitations,
    EntitySentiment,
    EntityShare,
    JobProgress,
    MissingResponse,
    PlatformBreakdown,
    QueryFilters,
    RankingSnapshot,
    SentimentMetrics,
    ShareOfVoice,
    ShareOfVoiceTrend,
)
from visibility_tracker.storage import BRAND_TYPE_CLIENT, AnalyticsStore

logger = logging.getLogger(__name__)

DEFAULT_BRAND_NAME = "Your Brand"
POSITIVE_THRESHOLD = 0.6
NEGATIVE_THRESHOLD = 0.4
NEUTRAL_SENTIMENT = 0.5
SENTIMENT_LABELS = ("positive", "neutral", "negative")


def _scoped(filters: QueryFilters | None, now: datetime | None) -> QueryFilters:
    filters = filters or QueryFilters()
    return replace(filters, date_range=resolve_date_range(filters, now))


def _normalize_rating(rating: float) -> float:
    return (rating + 1) / 2


def _sentiment_label(average: float) -> str:
    if average >= POSITIVE_THRESHOLD:
        return "positive"
    if average <= NEGATIVE_THRESHOLD:
        return "negative"
    return "neutral"


def check_prompts_processed(
    store: AnalyticsStore,
    project_id: str,
    platforms: Sequence[str] = DEFAULT_TRACKED_PLATFORMS,
) -> JobProgress:
    prompt_ids = store.active_prompt_ids(project_id)
    if not prompt_ids:
        logger.info("no active prompts for project %s", project_id)
        return JobProgress.from_counts(0, 0)

    answered: dict[str, set[str]] = {prompt_id: set() for prompt_id in prompt_ids}
    for row in store.response_platforms(prompt_ids, platforms):
        answered[row["prompt_id"]].add(row["platform"])

    missing: list[MissingResponse] = []
    processed = 0
    for prompt_id, seen in answered.items():
        absent = tuple(platform for platform in platforms if platform not in seen)
        if absent:
            missing.append(MissingResponse(prompt_id=prompt_id, missing_platforms=absent))
        else:
            processed += 1

    logger.debug("project %s: %d/%d prompts processed", project_id, processed, len(prompt_ids))
    return JobProgress.from_counts(processed, len(prompt_ids), tuple(missing))


def get_brand_ranking(
    store: AnalyticsStore,
    project_id: str,
    platforms: Sequence[str] = DEFAULT_TRACKED_PLATFORMS,
) -> RankingSnapshot:
    project = store.get_project(project_id)
    if project is None:
        raise DataError("Project not found")
    if not store.active_prompt_ids(project_id):
        raise DataError("No prompts found")

    progress = check_prompts_processed(store, project_id, platforms)
    if not progress.all_processed:
        raise NotReadyError(
            f"{progress.processed_units}/{progress.total_units} prompts processed for {project_id}"
        )

    rows = store.mention_rows(project_id, platforms=platforms, active_prompts_only=True)
    brand_count = sum(1 for row in rows if row["brand_type"] == BRAND_TYPE_CLIENT)
    competitor_counts = count_by(row["competitor_id"] for row in rows)

    competitors = [
        EntityCount(id=row["id"], name=row["name"], count=competitor_counts.get(row["id"], 0))
        for row in store.active_competitors(project_id)
    ]
    return build_ranking_snapshot(
        EntityCount(id=project["id"], name=project["name"], count=brand_count),
        competitors,
    )


def get_share_of_voice(
    store: AnalyticsStore,
    project_id: str,
    filters: QueryFilters | None = None,
    *,
    now: datetime | None = None,
) -> ShareOfVoice:
    scoped = _scoped(filters, now)
    project = store.get_project(project_id)
    brand_name = project["name"] if project else DEFAULT_BRAND_NAME
    brand_domain = (project["client_url"] or project["name"]) if project else ""

    competitors = [
        row
        for row in store.active_competitors(project_id)
        if competitor_in_region(row["region"], scoped.region)
    ]
    mentions: dict[str, int] = {row["id"]: 0 for row in competitors}
    brand_mentions = 0
    for row in store.mention_rows(project_id, scoped):
        if row["brand_type"] == BRAND_TYPE_CLIENT:
            brand_mentions += 1
        elif row["competitor_id"] in mentions:
            mentions[row["competitor_id"]] += 1

    total = brand_mentions + sum(mentions.values())
    shares = [
        EntityShare(
            id=row["id"],
            name=row["name"],
            domain=row["domain"] or row["name"],
            mentions=mentions[row["id"]],
            percentage=share_percentage(mentions[row["id"]], total),
        )
        for row in competitors
    ]
    shares.sort(key=lambda share: -share.percentage)

    # Ties favour the brand: it is listed first and the sort is stable.
    standings = sorted([brand_mentions, *(share.mentions for share in shares)], reverse=True)
    market_position = standings.index(brand_mentions) + 1

    return ShareOfVoice(
        brand=EntityShare(
            id=project_id,
            name=brand_name,
            domain=brand_domain,
            mentions=brand_mentions,
            percentage=share_percentage(brand_mentions, total),
        ),
        competitors=shares,
        total_mentions=total,
        market_position=market_position,
    )


def get_share_of_voice_trends(
    store: AnalyticsStore,
    project_id: str,
    filters: QueryFilters | None = None,
    *,
    now: datetime | None = None,
) -> list[ShareOfVoiceTrend]:
    scoped = _scoped(filters, now)
    current = get_share_of_voice(store, project_id, scoped)
    previous = get_share_of_voice(
        store,
        project_id,
        replace(scoped, date_range=previous_period(scoped.date_range)),
    )

    previous_by_id = {share.id: share.percentage for share in [previous.brand, *previous.competitors]}
    trends: list[ShareOfVoiceTrend] = []
    for share in [current.brand, *current.competitors]:
        before = previous_by_id.get(share.id, 0.0)
        trends.append(
            ShareOfVoiceTrend(
                name=share.name,
                current_percentage=share.percentage,
                previous_percentage=before,
                change=round(share.percentage - before, 1),
            )
        )
    return trends


def get_platform_breakdown(
    store: AnalyticsStore,
    project_id: str,
    filters: QueryFilters | None = None,
    *,
    platforms: Sequence[str] = DEFAULT_TRACKED_PLATFORMS,
    now: datetime | None = None,
) -> list[PlatformBreakdown]:
    scoped = _scoped(filters, now)
    tracked = [platform for platform in platforms if scoped.platform in (None, platform)]
    if not tracked:
        return []

    project = store.get_project(project_id)
    brand_name = project["name"] if project else DEFAULT_BRAND_NAME
    brand_domain = project["client_url"] if project else ""
    competitors = {row["id"]: row for row in store.active_competitors(project_id)}

    mentions = store.mention_rows(project_id, scoped, platforms=tracked)
    previous = store.mention_rows(
        project_id,
        replace(scoped, date_range=previous_period(scoped.date_range)),
        platforms=tracked,
    )
    mention_counts = count_by(row["platform"] for row in mentions)
    previous_counts = count_by(row["platform"] for row in previous)
    citation_counts = count_by(
        row["platform"] for row in store.citation_rows(project_id, scoped, platforms=tracked)
    )
    total = sum(mention_counts.values())
    previous_total = sum(previous_counts.values())

    breakdowns: list[PlatformBreakdown] = []
    for platform in tracked:
        rows = [row for row in mentions if row["platform"] == platform]
        platform_total = len(rows)
        brand_mentions = sum(1 for row in rows if row["brand_type"] == BRAND_TYPE_CLIENT)
        entities = [
            EntityShare(
                id=project_id,
                name=brand_name,
                domain=brand_domain,
                mentions=brand_mentions,
                percentage=share_percentage(brand_mentions, platform_total),
            )
        ]
        for competitor_id, count in count_by(row["competitor_id"] for row in rows).items():
            competitor = competitors.get(competitor_id)
            entities.append(
                EntityShare(
                    id=competitor_id,
                    name=competitor["name"] if competitor else "Unknown",
                    domain=(competitor["domain"] or "") if competitor else "",
                    mentions=count,
                    percentage=share_percentage(count, platform_total),
                )
            )
        entities.sort(key=lambda entity: -entity.percentage)

        share = share_percentage(mention_counts[platform], total)
        breakdowns.append(
            PlatformBreakdown(
                platform=platform,
                mentions=mention_counts[platform],
                citations=citation_counts[platform],
                share=share,
                trend=round(share - share_percentage(previous_counts[platform], previous_total), 1),
                entities=entities,
            )
        )
    return breakdowns


def get_citations_ranking(
    store: AnalyticsStore,
    project_id: str,
    filters: QueryFilters | None = None,
    *,
    now: datetime | None = None,
) -> RankingSnapshot:
    scoped = _scoped(filters, now)
    project = store.get_project(project_id)
    if project is None:
        raise DataError("Project not found")

    competitors = [
        row
        for row in store.active_competitors(project_id)
        if competitor_in_region(row["region"], scoped.region)
    ]
    rows = store.citation_rows(project_id, scoped)
    brand_count = sum(1 for row in rows if row["competitor_id"] is None)
    competitor_counts = count_by(row["competitor_id"] for row in rows)
    return build_ranking_snapshot(
        EntityCount(id=project["id"], name=project["name"], count=brand_count),
        [
            EntityCount(id=row["id"], name=row["name"], count=competitor_counts.get(row["id"], 0))
            for row in competitors
        ],
        drop_zero_competitors=False,
    )


def get_most_cited_domains(
    store: AnalyticsStore,
    project_id: str,
    filters: QueryFilters | None = None,
    limit: int = 10,
    *,
    now: datetime | None = None,
) -> list[DomainCitations]:
    rows = store.citation_rows(project_id, _scoped(filters, now))
    counts = count_by(row["domain"] for row in rows)
    return [DomainCitations(domain=domain, citations=count) for domain, count in top_counts(counts, limit)]


def get_sentiment_metrics(
    store: AnalyticsStore,
    project_id: str,
    filters: QueryFilters | None = None,
    *,
    now: datetime | None = None,
) -> SentimentMetrics:
    rows = store.evaluation_rows(project_id, _scoped(filters, now))
    if not rows:
        return SentimentMetrics(
            total_rows=0,
            unique_responses=0,
            brand_rows=0,
            competitor_rows=0,
            average_sentiment=NEUTRAL_SENTIMENT,
            brand_sentiment=NEUTRAL_SENTIMENT,
            distribution={label: 0 for label in SENTIMENT_LABELS},
        )

    brand_ratings = [
        _normalize_rating(row["sentiment_rating"])
        for row in rows
        if row["entity_type"] == BRAND_TYPE_CLIENT
    ]
    labels = count_by(row["sentiment"] for row in rows)
    return SentimentMetrics(
        total_rows=len(rows),
        unique_responses=len({row["ai_response_id"] for row in rows}),
        brand_rows=len(brand_ratings),
        competitor_rows=len(rows) - len(brand_ratings),
        average_sentiment=sum(_normalize_rating(row["sentiment_rating"]) for row in rows) / len(rows),
        brand_sentiment=(
            sum(brand_ratings) / len(brand_ratings) if brand_ratings else NEUTRAL_SENTIMENT
        ),
        distribution={label: labels.get(label, 0) for label in SENTIMENT_LABELS},
        confidence=sum(
            row["confidence"] if row["confidence"] is not None else NEUTRAL_SENTIMENT
            for row in rows
        )
        / len(rows),
    )


def get_entity_sentiments(
    store: AnalyticsStore,
    project_id: str,
    filters: QueryFilters | None = None,
    *,
    now: datetime | None = None,
) -> list[EntitySentiment]:
    grouped: dict[tuple[str, str], list] = {}
    for row in store.evaluation_rows(project_id, _scoped(filters, now)):
        grouped.setdefault((row["entity_name"] or "Unknown", row["entity_type"]), []).append(row)

    summaries: list[EntitySentiment] = []
    for (entity_name, entity_type), rows in grouped.items():
        average = sum(_normalize_rating(row["sentiment_rating"]) for row in rows) / len(rows)
        labels = count_by(row["sentiment"] for row in rows)
        summaries.append(
            EntitySentiment(
                entity_name=entity_name,
                entity_type="brand" if entity_type == BRAND_TYPE_CLIENT else "competitor",
                mentions=len(rows),
                average_sentiment=average,
                label=_sentiment_label(average),
                positive_count=labels.get("positive", 0),
                neutral_count=labels.get("neutral", 0),
                negative_count=labels.get("negative", 0),
                confidence=sum(
                    row["confidence"] if row["confidence"] is not None else NEUTRAL_SENTIMENT
                    for row in rows
                )
                / len(rows),
            )
        )
    summaries.sort(key=lambda summary: -summary.mentions)
    return summaries


def get_competitive_rank(
    store: AnalyticsStore,
    project_id: str,
    filters: QueryFilters | None = None,
    *,
    now: datetime | None = None,
) -> CompetitiveRank:
    share = get_share_of_voice(store, project_id, filters, now=now)
    if not share.competitors:
        return CompetitiveRank(rank=1, total_entities=1)

    ahead = sum(1 for competitor in share.competitors if competitor.percentage > share.brand.percentage)
    return CompetitiveRank(rank=ahead + 1, total_entities=len(share.competitors) + 1)
