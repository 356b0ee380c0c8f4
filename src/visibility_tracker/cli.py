from __future__ import annotations

import argparse
import asyncio
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

from visibility_tracker.client import AggregationClient
from visibility_tracker.config import (
    API_REQUIRED_ENVS,
    Settings,
    assert_required_envs,
    load_settings,
    mask_secret,
    missing_envs,
)
from visibility_tracker.display import ResultsView, build_ranking_rows, render_progress, render_ranking
from visibility_tracker.errors import DataError, NotReadyError
from visibility_tracker.filters import build_filters, current_week_range
from visibility_tracker.models import Phase, PollState, QueryFilters
from visibility_tracker.poller import CompletionChecker, PollTiming, ResultsPoller, SnapshotBuilder
from visibility_tracker.queries import (
    get_citations_ranking,
    get_competitive_rank,
    get_entity_sentiments,
    get_most_cited_domains,
    get_platform_breakdown,
    get_sentiment_metrics,
    get_share_of_voice,
    get_share_of_voice_trends,
)
from visibility_tracker.scheduling import AsyncioScheduler
from visibility_tracker.service import LocalAggregationService
from visibility_tracker.storage import AnalyticsStore


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="visibility-tracker")
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser(
        "watch",
        help="Poll until a project's prompts are processed, then print its brand ranking",
    )
    watch_parser.add_argument("project_id")
    watch_parser.add_argument("--project-name", required=True)
    watch_parser.add_argument(
        "--source",
        choices=("api", "local"),
        default="api",
        help="Read progress and ranking from the hosted service or the local store",
    )

    ranking_parser = subparsers.add_parser("ranking", help="Print the ranking snapshot from the local store")
    ranking_parser.add_argument("project_id")
    ranking_parser.add_argument("--db", type=Path, default=None, help="Override ANALYTICS_DB_PATH")

    report_parser = subparsers.add_parser(
        "report",
        help="Print share of voice, platform breakdown, citations and sentiment from the local store",
    )
    report_parser.add_argument("project_id")
    report_parser.add_argument("--from", dest="date_from", type=datetime.fromisoformat, default=None)
    report_parser.add_argument("--to", dest="date_to", type=datetime.fromisoformat, default=None)
    report_parser.add_argument("--this-week", action="store_true", default=False)
    report_parser.add_argument("--platform", default="all")
    report_parser.add_argument("--region", default="GLOBAL")
    report_parser.add_argument("--topic", default=None)
    report_parser.add_argument("--db", type=Path, default=None, help="Override ANALYTICS_DB_PATH")

    subparsers.add_parser("healthcheck", help="Validate config and local store readiness")

    return parser


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _watch_project(
    project_id: str,
    project_name: str,
    checker: CompletionChecker,
    builder: SnapshotBuilder,
    timing: PollTiming,
    echo: Callable[[str], None] = print,
) -> PollState:
    loop = asyncio.get_running_loop()
    settled: asyncio.Future[PollState] = loop.create_future()
    last_line = [""]

    def _make_poller(pid: str, on_state: Callable[[PollState], None]) -> ResultsPoller:
        def _observe(state: PollState) -> None:
            on_state(state)
            if state.phase is Phase.LOADING:
                line = render_progress(state)
                if line != last_line[0]:
                    last_line[0] = line
                    echo(line)
            elif not settled.done():
                settled.set_result(state)

        return ResultsPoller(pid, checker, builder, AsyncioScheduler(loop), timing=timing, on_change=_observe)

    view = ResultsView(project_id, project_name, on_continue=lambda: None, poller_factory=_make_poller)
    view.mount()
    try:
        await settled
        echo(view.render())
        return view.state
    finally:
        view.unmount()


def _cmd_watch(settings: Settings, args: argparse.Namespace) -> int:
    timing = PollTiming.from_settings(settings)
    if args.source == "api":
        assert_required_envs(API_REQUIRED_ENVS)
        with AggregationClient(settings) as client:
            state = asyncio.run(_watch_project(args.project_id, args.project_name, client, client, timing))
    else:
        with AnalyticsStore(settings.analytics_db_path) as store:
            service = LocalAggregationService(store, settings.tracked_platforms)
            state = asyncio.run(
                _watch_project(args.project_id, args.project_name, service, service, timing)
            )
    return 0 if state.phase is Phase.SUCCEEDED else 1


def _cmd_ranking(settings: Settings, args: argparse.Namespace) -> int:
    with AnalyticsStore(args.db or settings.analytics_db_path) as store:
        service = LocalAggregationService(store, settings.tracked_platforms)
        project = store.get_project(args.project_id)
        try:
            snapshot = service.get_ranking_snapshot(args.project_id)
        except (DataError, NotReadyError) as exc:
            print(f"ranking unavailable: {exc}")
            return 1
    print(render_ranking(build_ranking_rows(snapshot, project["name"]), snapshot.total_mentions))
    return 0


def _report_filters(settings: Settings, args: argparse.Namespace) -> QueryFilters:
    if args.this_week:
        week = current_week_range(tz=settings.tz)
        return build_filters(
            start=week.start,
            end=week.end,
            platform=args.platform,
            region=args.region,
            topic_id=args.topic,
        )
    return build_filters(
        start=args.date_from,
        end=args.date_to,
        platform=args.platform,
        region=args.region,
        topic_id=args.topic,
    )


def _cmd_report(settings: Settings, args: argparse.Namespace) -> int:
    filters = _report_filters(settings, args)
    with AnalyticsStore(args.db or settings.analytics_db_path) as store:
        share = get_share_of_voice(store, args.project_id, filters)
        trends = get_share_of_voice_trends(store, args.project_id, filters)
        breakdown = get_platform_breakdown(
            store, args.project_id, filters, platforms=settings.tracked_platforms
        )
        domains = get_most_cited_domains(store, args.project_id, filters)
        sentiment = get_sentiment_metrics(store, args.project_id, filters)
        entity_sentiments = get_entity_sentiments(store, args.project_id, filters)
        rank = get_competitive_rank(store, args.project_id, filters)
        try:
            citations = get_citations_ranking(store, args.project_id, filters)
        except DataError as exc:
            print(f"citations ranking unavailable: {exc}")
            citations = None

    print(f"share of voice ({share.total_mentions} mentions, position #{share.market_position}):")
    for entity in [share.brand, *share.competitors]:
        print(f"- {entity.name}: {entity.percentage:.1f}% ({entity.mentions})")
    print("change vs previous period:")
    for trend in trends:
        print(f"- {trend.name}: {trend.change:+.1f} pts")
    print("by platform:")
    for platform in breakdown:
        print(
            f"- {platform.platform}: {platform.mentions} mentions ({platform.share:.1f}%, "
            f"{platform.trend:+.1f} pts), {platform.citations} citations"
        )
        for entity in platform.entities:
            print(f"  - {entity.name}: {entity.percentage:.1f}% ({entity.mentions})")
    if citations is not None:
        print(f"citations ranking ({citations.total_mentions} citations):")
        for entity in citations.entities:
            print(f"- #{entity.rank} {entity.name}: {entity.percentage:.1f}% ({entity.count})")
    print("most cited domains:")
    for domain in domains:
        print(f"- {domain.domain}: {domain.citations}")
    print(
        "sentiment:",
        f"rows={sentiment.total_rows}",
        f"average={sentiment.average_sentiment:.2f}",
        f"brand={sentiment.brand_sentiment:.2f}",
        f"positive={sentiment.distribution.get('positive', 0)}",
        f"neutral={sentiment.distribution.get('neutral', 0)}",
        f"negative={sentiment.distribution.get('negative', 0)}",
    )
    for item in entity_sentiments:
        print(
            f"- {item.entity_name} ({item.entity_type}): {item.label} "
            f"{item.average_sentiment:.2f} over {item.mentions} evaluations"
        )
    print(f"competitive rank: {rank.rank}/{rank.total_entities}")
    return 0


def _cmd_healthcheck(settings: Settings) -> int:
    missing = missing_envs(API_REQUIRED_ENVS)
    if missing:
        print("hosted service not configured (missing:", ", ".join(missing) + "); only --source local works")
    else:
        print(
            f"hosted service: {settings.aggregation_api_url} "
            f"(key {mask_secret(settings.aggregation_api_key)})"
        )

    try:
        with AnalyticsStore(settings.analytics_db_path) as store:
            prompt_count = store.count_rows("prompts")
    except Exception as exc:
        print(f"analytics db check failed: {exc}")
        return 1

    print(f"analytics db ready: {settings.analytics_db_path} ({prompt_count} prompts)")
    print("tracked platforms:", ", ".join(settings.tracked_platforms))
    print("healthcheck passed")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings()
        _configure_logging(settings.log_level)
        if args.command == "watch":
            return _cmd_watch(settings, args)
        if args.command == "ranking":
            return _cmd_ranking(settings, args)
        if args.command == "report":
            return _cmd_report(settings, args)
        if args.command == "healthcheck":
            return _cmd_healthcheck(settings)
    except ValueError as exc:
        print(exc)
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
