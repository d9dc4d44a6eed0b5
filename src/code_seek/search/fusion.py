"""Reciprocal Rank Fusion of independently ranked result lists."""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

DEFAULT_RRF_K = 60.0


@dataclass
class FusedItem:
    id: str
    score: float
    ranks: Dict[str, int] = field(default_factory=dict)

    @property
    def best_rank(self) -> int:
        return min(self.ranks.values())


def reciprocal_rank_fusion(
    ranked_lists: Mapping[str, Sequence[str]], k: float = DEFAULT_RRF_K
) -> List[FusedItem]:
    """Merge ranked id lists into one ranking.

    score(x) = sum over lists containing x of 1 / (k + rank), with 1-based
    ranks. Ties break on the best rank across lists, then on the id.
    When only one list is non-empty its order is returned unchanged.

    Args:
        ranked_lists: List name -> ids ordered best first
        k: Smoothing constant, must be positive
    """
    if k <= 0:
        raise ValueError(f"RRF constant must be positive, got {k}")

    ranks: Dict[str, Dict[str, int]] = {}
    for name, ids in ranked_lists.items():
        for position, item_id in enumerate(ids, start=1):
            # A duplicate within one list keeps its first (best) rank.
            ranks.setdefault(item_id, {}).setdefault(name, position)

    fused = [
        FusedItem(
            id=item_id,
            # fsum keeps a+b and b+a bit-identical so symmetric ties stay ties.
            score=math.fsum(1.0 / (k + rank) for rank in sorted(item_ranks.values())),
            ranks=item_ranks,
        )
        for item_id, item_ranks in ranks.items()
    ]
    fused.sort(key=lambda item: (-item.score, item.best_rank, item.id))
    return fused
