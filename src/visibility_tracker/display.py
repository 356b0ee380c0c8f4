from __future__ import annotations

import math
from collections.abc import Callable
from dataclasses import dataclass

from visibility_tracker.models import Phase, PollState, RankingSnapshot
from visibility_tracker.poller import ResultsPoller

PollerFactory = Callable[[str, Callable[[PollState], None]], ResultsPoller]


@dataclass(frozen=True)
class RankingRow:
    name: str
    percentage: float
    count: int
    rank: int
    is_brand: bool
    logo: str | None = None
    leader_style: bool = False


def build_ranking_rows(
    snapshot: RankingSnapshot,
    brand_name: str,
    brand_logo: str | None = None,
) -> list[RankingRow]:
    # Competitors keep the snapshot order.
    rows = [
        RankingRow(
            name=brand_name,
            percentage=snapshot.brand.percentage,
            count=snapshot.brand.count,
            rank=snapshot.brand.rank,
            is_brand=True,
            logo=brand_logo,
            leader_style=True,
        )
    ]
    rows.extend(
        RankingRow(
            name=competitor.name,
            percentage=competitor.percentage,
            count=competitor.count,
            rank=competitor.rank,
            is_brand=False,
        )
        for competitor in snapshot.competitors
    )
    return rows


def render_ranking(rows: list[RankingRow], total_mentions: int) -> str:
    lines = ["Your Brand Ranking"]
    for row in rows:
        marker = "*" if row.leader_style else " "
        lines.append(f"{marker} #{row.rank:<3} {row.name:<30} {row.percentage:5.1f}%  ({row.count} mentions)")
    lines.append(f"Total mentions: {total_mentions}")
    return "\n".join(lines)


def render_progress(state: PollState) -> str:
    return f"{math.floor(state.displayed_progress)}% {state.status_message}"


def render_state(state: PollState, brand_name: str, brand_logo: str | None = None) -> str:
    if state.phase is Phase.LOADING:
        return render_progress(state)
    if state.phase is Phase.FAILED:
        return state.failure.message if state.failure else "Failed to load ranking data"
    if state.snapshot is None:
        return "Failed to load ranking data"
    rows = build_ranking_rows(state.snapshot, brand_name, brand_logo)
    return render_ranking(rows, state.snapshot.total_mentions)


class ResultsView:

    def __init__(
        self,
        project_id: str,
        project_name: str,
        on_continue: Callable[[], None],
        poller_factory: PollerFactory,
        *,
        brand_logo: str | None = None,
        on_render: Callable[[str], None] | None = None,
    ):
        self.project_id = project_id
        self.project_name = project_name
        self.on_continue = on_continue
        self.brand_logo = brand_logo
        self.on_render = on_render
        self._poller_factory = poller_factory
        self._poller: ResultsPoller | None = None
        self._state = PollState()

    @property
    def state(self) -> PollState:
        return self._state

    def mount(self) -> None:
        if self._poller is not None or not self.project_id:
            return
        self._poller = self._poller_factory(self.project_id, self._on_state)
        self._poller.start()

    def unmount(self) -> None:
        if self._poller is not None:
            self._poller.teardown()
            self._poller = None

    def render(self) -> str:
        return render_state(self._state, self.project_name, self.brand_logo)

    def continue_(self) -> None:
        self.on_continue()

    def _on_state(self, state: PollState) -> None:
        self._state = state
        if self.on_render is not None:
            self.on_render(self.render())
