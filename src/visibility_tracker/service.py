from __future__ import annotations

import logging
import sqlite3
from typing import Sequence

from visibility_tracker.config import DEFAULT_TRACKED_PLATFORMS
from visibility_tracker.errors import TransientError
from visibility_tracker.models import JobProgress, RankingSnapshot
from visibility_tracker.queries import check_prompts_processed, get_brand_ranking
from visibility_tracker.storage import AnalyticsStore

logger = logging.getLogger(__name__)


class LocalAggregationService:

    def __init__(self, store: AnalyticsStore, platforms: Sequence[str] = DEFAULT_TRACKED_PLATFORMS):
        self.store = store
        self.platforms = tuple(platforms)

    def check_progress(self, project_id: str) -> JobProgress:
        try:
            return check_prompts_processed(self.store, project_id, self.platforms)
        except sqlite3.OperationalError as exc:
            logger.warning("progress check for %s failed: %s", project_id, exc)
            raise TransientError(str(exc)) from exc

    def get_ranking_snapshot(self, project_id: str) -> RankingSnapshot:
        return get_brand_ranking(self.store, project_id, self.platforms)
