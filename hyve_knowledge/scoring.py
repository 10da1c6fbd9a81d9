"""Reciprocal Rank Fusion of ranked result lists."""

from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

from .models import ResultSource, SearchResult

RRF_K = 60


def merge_rrf(
    result_lists: Sequence[Sequence[SearchResult]],
    limit: int = 10,
    k: int = RRF_K,
) -> List[SearchResult]:
    """Fuse *result_lists* by rank.

    Each entry contributes ``1 / (k + rank + 1)`` for its 0-based rank in
    its list; contributions for the same node are summed.  The first copy
    seen is kept, re-tagged ``HYBRID`` and given the fused score.  Equal
    scores keep first-seen order.
    """
    fused: Dict[str, Tuple[float, SearchResult]] = {}
    for results in result_lists:
        for rank, result in enumerate(results):
            contribution = 1.0 / (k + rank + 1)
            existing = fused.get(result.node_id)
            if existing is None:
                fused[result.node_id] = (contribution, result)
            else:
                fused[result.node_id] = (existing[0] + contribution, existing[1])

    ranked = sorted(fused.values(), key=lambda item: item[0], reverse=True)
    return [result.copy(score=score, source=ResultSource.HYBRID) for score, result in ranked[:limit]]
