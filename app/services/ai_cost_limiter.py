"""Caps on how many candidates get an AI pass, and aggression presets."""

from __future__ import annotations

import logging
import math
from typing import Callable, List, Sequence, Tuple, TypeVar

from app.config.ai_settings import AI_CANDIDATE_PERCENTAGE, AI_MAX_CANDIDATES

logger = logging.getLogger(__name__)
T = TypeVar("T")

AGGRESSION_TARGETS = ((20, 50), (40, 100), (60, 150), (80, 200))
MAX_AGGRESSION_TARGET = 300


def ai_candidate_budget(
    total: int,
    *,
    percentage: float = AI_CANDIDATE_PERCENTAGE,
    max_candidates: int = AI_MAX_CANDIDATES,
) -> int:
    if total <= 0:
        return 0
    by_share = math.ceil(total * max(0.0, percentage) / 100)
    return max(0, min(by_share, max_candidates, total))


def select_for_ai(
    items: Sequence[T],
    score: Callable[[T], float],
    *,
    percentage: float = AI_CANDIDATE_PERCENTAGE,
    max_candidates: int = AI_MAX_CANDIDATES,
) -> Tuple[List[T], List[T]]:
    """Split items into ``(selected, skipped)``, keeping the top scorers for AI."""

    budget = ai_candidate_budget(len(items), percentage=percentage, max_candidates=max_candidates)
    ranked = sorted(range(len(items)), key=lambda index: score(items[index]), reverse=True)
    chosen = set(ranked[:budget])
    selected = [items[index] for index in ranked[:budget]]
    skipped = [item for index, item in enumerate(items) if index not in chosen]
    if skipped:
        logger.info("AI budget: %d of %d candidates selected", len(selected), len(items))
    return selected, skipped


def target_from_aggression(aggression: float) -> int:
    """Map a 0-100 aggression slider to a candidate target."""

    for ceiling, target in AGGRESSION_TARGETS:
        if aggression <= ceiling:
            return target
    return MAX_AGGRESSION_TARGET


__all__ = ["ai_candidate_budget", "select_for_ai", "target_from_aggression"]
