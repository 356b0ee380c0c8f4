from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, replace
from typing import Protocol

from visibility_tracker.config import Settings
from visibility_tracker.errors import DataError, InvalidTransition, PollTimeoutError, TransientError
from visibility_tracker.models import JobProgress, Phase, PollFailure, PollState, RankingSnapshot
from visibility_tracker.scheduling import Scheduler, TimerHandle

logger = logging.getLogger(__name__)

PROGRESS_CEILING = 90.0
FINALIZING_PROGRESS = 95.0
RANKING_PROGRESS = 98.0
DONE_PROGRESS = 100.0

WAITING_MESSAGE = "Waiting for prompts to be processed..."
FINALIZING_MESSAGE = "All prompts processed. Finalizing results..."
RANKING_MESSAGE = "Calculating ranking..."
DONE_MESSAGE = "Ranking ready."
TIMEOUT_MESSAGE = "Timeout waiting for results. The analysis may still be in progress."
RANKING_FAILED_MESSAGE = "Failed to load ranking data"


class CompletionChecker(Protocol):
    def check_progress(self, project_id: str) -> JobProgress: ...


class SnapshotBuilder(Protocol):
    def get_ranking_snapshot(self, project_id: str) -> RankingSnapshot: ...


@dataclass(frozen=True)
class PollTiming:
    initial_delay: float = 1.0
    interval: float = 5.0
    max_attempts: int = 240
    settle_delay: float = 15.0
    tick: float = 1.0
    tick_increment: float = 0.5

    @classmethod
    def from_settings(cls, settings: Settings) -> PollTiming:
        return cls(
            initial_delay=settings.poll_initial_delay_seconds,
            interval=settings.poll_interval_seconds,
            max_attempts=settings.poll_max_attempts,
            settle_delay=settings.settle_delay_seconds,
            tick=settings.progress_tick_seconds,
            tick_increment=settings.progress_tick_increment,
        )


def _require_loading(state: PollState, action: str) -> None:
    if state.phase is not Phase.LOADING:
        raise InvalidTransition(f"cannot {action} once the session has {state.phase.value}")


def estimate_progress(progress: JobProgress) -> float | None:
    if progress.total_units <= 0:
        return None
    return min(PROGRESS_CEILING, progress.processed_units / progress.total_units * PROGRESS_CEILING)


def record_attempt(state: PollState) -> PollState:
    _require_loading(state, "record an attempt")
    if state.finalizing:
        raise InvalidTransition("no completion checks run while finalizing")
    return replace(state, attempt_count=state.attempt_count + 1)


def apply_progress(state: PollState, progress: JobProgress) -> PollState:
    _require_loading(state, "apply progress")
    if state.finalizing:
        return state
    estimate = estimate_progress(progress)
    if estimate is None:
        return replace(state, status_message=WAITING_MESSAGE)
    return replace(
        state,
        displayed_progress=estimate,
        status_message=(
            f"Processing prompts... ({progress.processed_units}/{progress.total_units} completed)"
        ),
    )


def animate(state: PollState, increment: float) -> PollState:
    if state.phase is not Phase.LOADING or state.finalizing:
        return state
    if state.displayed_progress >= PROGRESS_CEILING:
        return state
    return replace(
        state,
        displayed_progress=min(PROGRESS_CEILING, state.displayed_progress + increment),
    )


def begin_finalizing(state: PollState) -> PollState:
    _require_loading(state, "finalize")
    if state.finalizing:
        raise InvalidTransition("session is already finalizing")
    return replace(
        state,
        finalizing=True,
        displayed_progress=FINALIZING_PROGRESS,
        status_message=FINALIZING_MESSAGE,
    )


def begin_ranking(state: PollState) -> PollState:
    _require_loading(state, "fetch the ranking")
    if not state.finalizing:
        raise InvalidTransition("ranking is only fetched after every prompt is processed")
    return replace(state, displayed_progress=RANKING_PROGRESS, status_message=RANKING_MESSAGE)


def succeed(state: PollState, snapshot: RankingSnapshot) -> PollState:
    _require_loading(state, "succeed")
    if not state.finalizing:
        raise InvalidTransition("cannot succeed before every prompt is processed")
    return replace(
        state,
        phase=Phase.SUCCEEDED,
        displayed_progress=DONE_PROGRESS,
        status_message=DONE_MESSAGE,
        snapshot=snapshot,
    )


def failure_from(exc: BaseException) -> PollFailure:
    if isinstance(exc, PollTimeoutError):
        return PollFailure(kind="timeout", message=str(exc) or TIMEOUT_MESSAGE)
    if isinstance(exc, DataError):
        return PollFailure(kind="data", message=str(exc) or RANKING_FAILED_MESSAGE)
    return PollFailure(kind="unexpected", message=str(exc) or exc.__class__.__name__)


def fail(state: PollState, exc: BaseException) -> PollState:
    _require_loading(state, "fail")
    failure = failure_from(exc)
    return replace(state, phase=Phase.FAILED, status_message=failure.message, failure=failure)


class SessionToken:
    def __init__(self) -> None:
        self.active = True

    def revoke(self) -> None:
        self.active = False


class ResultsPoller:
    def __init__(
        self,
        project_id: str,
        checker: CompletionChecker,
        builder: SnapshotBuilder,
        scheduler: Scheduler,
        *,
        timing: PollTiming | None = None,
        on_change: Callable[[PollState], None] | None = None,
    ):
        if not project_id:
            raise ValueError("project_id is required to start polling")
        self.project_id = project_id
        self.checker = checker
        self.builder = builder
        self.scheduler = scheduler
        self.timing = timing or PollTiming()
        self.on_change = on_change

        self._state = PollState()
        self._token: SessionToken | None = None
        self._check_timer: TimerHandle | None = None
        self._tick_timer: TimerHandle | None = None
        self._settle_timer: TimerHandle | None = None
        self._check_in_flight = False

    @property
    def state(self) -> PollState:
        return self._state

    @property
    def active(self) -> bool:
        return self._token is not None and self._token.active

    def start(self) -> None:
        if self._token is not None:
            raise RuntimeError("poll session already started")
        self._token = SessionToken()
        self._state = PollState()
        self._notify()
        logger.info("polling results for project %s", self.project_id)
        self._check_timer = self.scheduler.call_later(
            self.timing.initial_delay, self._guarded(self._run_check)
        )
        self._tick_timer = self.scheduler.call_later(self.timing.tick, self._guarded(self._tick))

    def teardown(self) -> None:
        if self._token is not None:
            self._token.revoke()
        self._cancel_timers()

    def _guarded(self, callback: Callable[..., None]) -> Callable[..., None]:
        token = self._token

        def _run(*args) -> None:
            if token is None or not token.active:
                logger.debug("dropping callback for torn-down session %s", self.project_id)
                return
            callback(*args)

        return _run

    def _set(self, state: PollState) -> None:
        if state == self._state:
            return
        self._state = state
        self._notify()

    def _notify(self) -> None:
        if self.on_change is not None:
            self.on_change(self._state)

    def _cancel_timers(self) -> None:
        for timer in (self._check_timer, self._tick_timer, self._settle_timer):
            if timer is not None:
                timer.cancel()
        self._check_timer = self._tick_timer = self._settle_timer = None

    def _tick(self) -> None:
        self._tick_timer = None
        if self._state.phase is not Phase.LOADING or self._state.finalizing:
            return
        self._set(animate(self._state, self.timing.tick_increment))
        self._tick_timer = self.scheduler.call_later(self.timing.tick, self._guarded(self._tick))

    def _run_check(self) -> None:
        self._check_timer = None
        if self._check_in_flight or self._state.is_terminal or self._state.finalizing:
            return
        self._check_in_flight = True
        self._set(record_attempt(self._state))
        self.scheduler.submit(
            lambda: self.checker.check_progress(self.project_id),
            self._guarded(self._on_progress),
            self._guarded(self._on_check_error),
        )

    def _on_progress(self, progress: JobProgress) -> None:
        self._check_in_flight = False
        if self._state.is_terminal or self._state.finalizing:
            return
        if progress.all_processed:
            self._begin_completion()
            return
        self._set(apply_progress(self._state, progress))
        self._continue_or_time_out()

    def _on_check_error(self, exc: BaseException) -> None:
        self._check_in_flight = False
        if self._state.is_terminal or self._state.finalizing:
            return
        if not isinstance(exc, TransientError):
            logger.error("completion check for %s failed unexpectedly", self.project_id, exc_info=exc)
            self._finish_with_failure(exc)
            return
        logger.warning(
            "completion check %d for %s failed: %s",
            self._state.attempt_count,
            self.project_id,
            exc,
        )
        self._continue_or_time_out()

    def _continue_or_time_out(self) -> None:
        if self._state.attempt_count >= self.timing.max_attempts:
            logger.warning(
                "giving up on %s after %d attempts", self.project_id, self._state.attempt_count
            )
            self._finish_with_failure(PollTimeoutError(TIMEOUT_MESSAGE))
            return
        self._check_timer = self.scheduler.call_later(
            self.timing.interval, self._guarded(self._run_check)
        )

    def _begin_completion(self) -> None:
        if self._tick_timer is not None:
            self._tick_timer.cancel()
            self._tick_timer = None
        self._set(begin_finalizing(self._state))
        logger.info("all prompts processed for %s; settling before ranking", self.project_id)
        self._settle_timer = self.scheduler.call_later(
            self.timing.settle_delay, self._guarded(self._fetch_snapshot)
        )

    def _fetch_snapshot(self) -> None:
        self._settle_timer = None
        self._set(begin_ranking(self._state))
        self.scheduler.submit(
            lambda: self.builder.get_ranking_snapshot(self.project_id),
            self._guarded(self._on_snapshot),
            self._guarded(self._on_snapshot_error),
        )

    def _on_snapshot(self, snapshot: RankingSnapshot) -> None:
        self._cancel_timers()
        self._set(succeed(self._state, snapshot))
        logger.info("ranking ready for %s", self.project_id)

    def _on_snapshot_error(self, exc: BaseException) -> None:
        if isinstance(exc, DataError):
            logger.warning("no ranking data for %s: %s", self.project_id, exc)
        else:
            logger.error("ranking fetch for %s failed", self.project_id, exc_info=exc)
        self._finish_with_failure(exc)

    def _finish_with_failure(self, exc: BaseException) -> None:
        self._cancel_timers()
        self._set(fail(self._state, exc))

