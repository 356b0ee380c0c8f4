from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from typing import Iterable, Sequence

from visibility_tracker.models import RankedEntity, RankingSnapshot

PERCENT_DECIMALS = 1


@dataclass(frozen=True)
class EntityCount:
    id: str
    name: str
    count: int


def share_percentage(count: int, total: int, decimals: int = PERCENT_DECIMALS) -> float:
    if total <= 0:
        return 0.0
    return round(count / total * 100, decimals)


def normalize_percentages(counts: Sequence[int], decimals: int = PERCENT_DECIMALS) -> list[float]:
    if any(count < 0 for count in counts):
        raise ValueError("counts must be non-negative")
    total = sum(counts)
    if total <= 0:
        return [0.0 for _ in counts]

    scale = 10**decimals
    target = 100 * scale
    numerators = [count * target for count in counts]
    units = [numerator // total for numerator in numerators]
    remainders = [numerator % total for numerator in numerators]

    leftover = target - sum(units)
    by_remainder = sorted(range(len(counts)), key=lambda index: -remainders[index])
    for index in by_remainder[:leftover]:
        units[index] += 1
    return [unit / scale for unit in units]


def rank_entities(entities: Sequence[EntityCount]) -> list[RankedEntity]:
    percentages = normalize_percentages([entity.count for entity in entities])
    # sorted() is stable, so ties keep their input order.
    order = sorted(range(len(entities)), key=lambda index: -entities[index].count)
    return [
        RankedEntity(
            id=entities[index].id,
            name=entities[index].name,
            percentage=percentages[index],
            count=entities[index].count,
            rank=position,
        )
        for position, index in enumerate(order, start=1)
    ]


def build_ranking_snapshot(
    brand: EntityCount,
    competitors: Iterable[EntityCount],
    *,
    drop_zero_competitors: bool = True,
) -> RankingSnapshot:
    kept = [
        competitor
        for competitor in competitors
        if competitor.count > 0 or not drop_zero_competitors
    ]
    ranked = rank_entities([brand, *kept])
    brand_entry = next(entity for entity in ranked if entity.id == brand.id)
    return RankingSnapshot(
        brand=brand_entry,
        competitors=tuple(entity for entity in ranked if entity is not brand_entry),
        total_mentions=brand.count + sum(competitor.count for competitor in kept),
    )


def count_by(values: Iterable[str | None]) -> Counter[str]:
    return Counter(value for value in values if value)


def top_counts(counter: Counter[str], limit: int) -> list[tuple[str, int]]:
    if limit <= 0:
        return []
    return sorted(counter.items(), key=lambda item: -item[1])[:limit]
