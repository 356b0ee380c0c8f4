from __future__ import annotations

from conftest import ManualScheduler, ScriptedChecker, StaticBuilder, sample_snapshot
from visibility_tracker.display import ResultsView, build_ranking_rows, render_ranking, render_state
from visibility_tracker.errors import DataError
from visibility_tracker.models import (
    JobProgress,
    Phase,
    PollFailure,
    PollState,
    RankedEntity,
    RankingSnapshot,
)
from visibility_tracker.poller import ResultsPoller


def _view(checker, builder, scheduler, continued: list[str]) -> tuple[ResultsView, list[ResultsPoller]]:
    pollers: list[ResultsPoller] = []

    def factory(project_id, on_state):
        poller = ResultsPoller(project_id, checker, builder, scheduler, on_change=on_state)
        pollers.append(poller)
        return poller

    view = ResultsView(
        "proj-acme",
        "Acme",
        on_continue=lambda: continued.append("next"),
        poller_factory=factory,
    )
    return view, pollers


def test_build_ranking_rows_puts_brand_first_and_keeps_competitor_order() -> None:
    snapshot = RankingSnapshot(
        brand=RankedEntity(id="proj-acme", name="acme-internal", percentage=10.0, count=1, rank=3),
        competitors=(
            RankedEntity(id="b", name="Initech", percentage=30.0, count=3, rank=2),
            RankedEntity(id="a", name="Globex", percentage=60.0, count=6, rank=1),
        ),
        total_mentions=10,
    )

    rows = build_ranking_rows(snapshot, "Acme", brand_logo="https://logo.example/acme.png")

    assert [row.name for row in rows] == ["Acme", "Initech", "Globex"]
    assert rows[0].is_brand and rows[0].leader_style
    assert rows[0].rank == 3
    assert rows[0].logo == "https://logo.example/acme.png"
    assert not any(row.leader_style for row in rows[1:])


def test_render_ranking_lists_every_row() -> None:
    text = render_ranking(build_ranking_rows(sample_snapshot(), "Acme"), 6)

    assert "Your Brand Ranking" in text
    assert "Globex" in text and "Initech" in text
    assert "Total mentions: 6" in text


def test_render_state_shows_exactly_one_surface() -> None:
    loading = PollState(displayed_progress=27.6, status_message="Processing prompts... (3/10 completed)")
    failed = PollState(
        phase=Phase.FAILED,
        failure=PollFailure(kind="data", message="No AI responses found"),
    )
    done = PollState(phase=Phase.SUCCEEDED, displayed_progress=100.0, snapshot=sample_snapshot())

    assert render_state(loading, "Acme") == "27% Processing prompts... (3/10 completed)"
    assert render_state(failed, "Acme") == "No AI responses found"
    assert "Your Brand Ranking" in render_state(done, "Acme")
    assert "%" not in render_state(failed, "Acme")


def test_view_mount_runs_session_and_never_continues_by_itself() -> None:
    scheduler = ManualScheduler()
    continued: list[str] = []
    view, pollers = _view(
        ScriptedChecker([JobProgress.from_counts(2, 2)]),
        StaticBuilder(sample_snapshot()),
        scheduler,
        continued,
    )

    view.mount()
    view.mount()
    scheduler.run_until(lambda: view.state.is_terminal)

    assert len(pollers) == 1
    assert view.state.phase is Phase.SUCCEEDED
    assert "Acme" in view.render()
    assert continued == []

    view.continue_()
    assert continued == ["next"]


def test_view_shows_failure_message() -> None:
    scheduler = ManualScheduler()
    view, _ = _view(
        ScriptedChecker([JobProgress.from_counts(2, 2)]),
        StaticBuilder(DataError("No AI responses found")),
        scheduler,
        [],
    )

    view.mount()
    scheduler.run_until(lambda: view.state.is_terminal)

    assert view.render() == "No AI responses found"


def test_view_unmount_stops_the_session() -> None:
    scheduler = ManualScheduler()
    checker = ScriptedChecker([JobProgress.from_counts(1, 2)])
    view, pollers = _view(checker, StaticBuilder(sample_snapshot()), scheduler, [])

    view.mount()
    scheduler.advance(1)
    view.unmount()
    scheduler.advance(60)

    assert checker.calls == 1
    assert scheduler.active_timers == []
    assert not pollers[0].active


def test_view_without_project_id_does_not_poll() -> None:
    scheduler = ManualScheduler()
    created: list[str] = []
    view = ResultsView(
        "",
        "Acme",
        on_continue=lambda: None,
        poller_factory=lambda project_id, on_state: created.append(project_id),
    )

    view.mount()

    assert created == []
    assert scheduler.active_timers == []
