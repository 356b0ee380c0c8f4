from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import pytest

from visibility_tracker.models import JobProgress, RankedEntity, RankingSnapshot
from visibility_tracker.storage import AnalyticsStore

NOW = datetime(2026, 2, 19, 12, 0, tzinfo=timezone.utc)
PROJECT_ID = "proj-acme"


class ManualTimer:
    def __init__(self, when: float, seq: int, callback: Callable[[], None]):
        self.when = when
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class PendingCall:
    def __init__(self, fn, on_result, on_error):
        self.fn = fn
        self.on_result = on_result
        self.on_error = on_error

    def resolve(self) -> None:
        try:
            result = self.fn()
        except Exception as exc:
            self.on_error(exc)
        else:
            self.on_result(result)


class ManualScheduler:
    # Virtual clock: timers fire only when the test advances time.

    def __init__(self, *, defer_calls: bool = False):
        self.now = 0.0
        self.defer_calls = defer_calls
        self.pending_calls: list[PendingCall] = []
        self._timers: list[ManualTimer] = []
        self._seq = 0

    def call_later(self, delay: float, callback: Callable[[], None]) -> ManualTimer:
        timer = ManualTimer(self.now + delay, self._seq, callback)
        self._seq += 1
        self._timers.append(timer)
        return timer

    def submit(self, fn, on_result, on_error) -> None:
        call = PendingCall(fn, on_result, on_error)
        if self.defer_calls:
            self.pending_calls.append(call)
        else:
            call.resolve()

    @property
    def active_timers(self) -> list[ManualTimer]:
        return [timer for timer in self._timers if not timer.cancelled]

    def _pop_next(self, until: float | None) -> ManualTimer | None:
        candidates = [
            timer for timer in self.active_timers if until is None or timer.when <= until
        ]
        if not candidates:
            return None
        timer = min(candidates, key=lambda item: (item.when, item.seq))
        self._timers.remove(timer)
        return timer

    def advance(self, seconds: float) -> None:
        target = self.now + seconds
        while True:
            timer = self._pop_next(target)
            if timer is None:
                break
            self.now = timer.when
            timer.callback()
        self.now = target

    def run_until(self, predicate: Callable[[], bool], max_events: int = 100_000) -> None:
        for _ in range(max_events):
            if predicate():
                return
            timer = self._pop_next(None)
            if timer is None:
                return
            self.now = timer.when
            timer.callback()
        raise AssertionError("scheduler did not settle")


class ScriptedChecker:
    # Replays the scripted outcomes in order, repeating the last one.

    def __init__(self, outcomes: list[JobProgress | Exception]):
        self.outcomes = outcomes
        self.calls = 0

    def check_progress(self, project_id: str) -> JobProgress:
        outcome = self.outcomes[min(self.calls, len(self.outcomes) - 1)]
        self.calls += 1
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class StaticBuilder:
    def __init__(self, outcome: RankingSnapshot | Exception):
        self.outcome = outcome
        self.calls = 0

    def get_ranking_snapshot(self, project_id: str) -> RankingSnapshot:
        self.calls += 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


def sample_snapshot() -> RankingSnapshot:
    return RankingSnapshot(
        brand=RankedEntity(id=PROJECT_ID, name="Acme", percentage=50.0, count=3, rank=1),
        competitors=(
            RankedEntity(id="c-globex", name="Globex", percentage=33.3, count=2, rank=2),
            RankedEntity(id="c-initech", name="Initech", percentage=16.7, count=1, rank=3),
        ),
        total_mentions=6,
    )


def seed_project(store: AnalyticsStore, created_at: datetime = NOW - timedelta(days=1)) -> None:
    store.add_project(PROJECT_ID, "Acme", client_url="acme.com")
    store.add_competitor("c-globex", PROJECT_ID, "Globex", domain="globex.com")
    store.add_competitor("c-initech", PROJECT_ID, "Initech", domain="initech.com", region="US")
    store.add_competitor("c-hooli", PROJECT_ID, "Hooli", domain="hooli.com")

    store.add_prompt("pr-1", PROJECT_ID, "best project management tools")
    store.add_prompt("pr-2", PROJECT_ID, "top crm for startups", region="US", topic_id="t-crm")
    for prompt_id in ("pr-1", "pr-2"):
        for platform in ("openai", "gemini"):
            store.add_ai_response(f"{prompt_id}-{platform}", prompt_id, platform, created_at)

    for response_id in ("pr-1-openai", "pr-1-gemini", "pr-2-openai"):
        store.add_brand_mention(PROJECT_ID, response_id, created_at=created_at)
    store.add_brand_mention(PROJECT_ID, "pr-1-openai", competitor_id="c-globex", created_at=created_at)
    store.add_brand_mention(PROJECT_ID, "pr-2-gemini", competitor_id="c-globex", created_at=created_at)
    store.add_brand_mention(PROJECT_ID, "pr-2-openai", competitor_id="c-initech", created_at=created_at)

    store.add_citation(PROJECT_ID, "pr-1-openai", "acme.com", created_at=created_at)
    store.add_citation(PROJECT_ID, "pr-1-gemini", "wikipedia.org", created_at=created_at)
    store.add_citation(
        PROJECT_ID, "pr-2-openai", "globex.com", competitor_id="c-globex", created_at=created_at
    )
    store.add_citation(
        PROJECT_ID, "pr-2-gemini", "wikipedia.org", competitor_id="c-globex", created_at=created_at
    )

    store.add_evaluation(PROJECT_ID, "pr-1-openai", "Acme", "positive", 0.8, confidence=0.9, created_at=created_at)
    store.add_evaluation(PROJECT_ID, "pr-1-gemini", "Acme", "neutral", 0.0, created_at=created_at)
    store.add_evaluation(
        PROJECT_ID,
        "pr-2-openai",
        "Globex",
        "negative",
        -0.6,
        competitor_id="c-globex",
        confidence=0.7,
        created_at=created_at,
    )


@pytest.fixture
def scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def store(tmp_path):
    with AnalyticsStore(tmp_path / "analytics.sqlite") as analytics_store:
        yield analytics_store


@pytest.fixture
def seeded_store(store):
    seed_project(store)
    return store
