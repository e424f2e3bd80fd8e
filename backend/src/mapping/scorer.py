"""Similarity scoring for product mapping suggestions.

Trigram similarity follows pg_trgm: each word is lower-cased, padded with two
leading spaces and one trailing space, and split into 3-character grams;
similarity is |A & B| / |A | B|.

    S_tri_sku  = similarity(marketplace sku, ERP item code)
    S_tri_name = similarity(product name [+ option], ERP item name [+ spec])
    S_tri      = max(S_tri_sku, 0.7 * S_tri_name)

The score is deterministic: equal inputs always produce equal scores, and
ties between candidates are broken by item code.
"""

import re
from typing import Any, Dict, FrozenSet, Iterable, Optional, Tuple

_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)

NAME_WEIGHT = 0.7


def trigrams(text: Optional[str]) -> FrozenSet[str]:
    """pg_trgm-style trigram set of a string."""
    grams = set()
    for word in _WORD_RE.findall((text or "").lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i:i + 3])
    return frozenset(grams)


def similarity(left: Optional[str], right: Optional[str]) -> float:
    """Trigram similarity in [0, 1]; 0.0 when either side has no words."""
    a, b = trigrams(left), trigrams(right)
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def _join(*parts: Optional[str]) -> str:
    return " ".join(part for part in parts if part)


class MappingScorer:
    """Scores ERP items as mapping candidates for a marketplace product."""

    def __init__(self, min_score: float = 0.3):
        if not 0.0 <= min_score <= 1.0:
            raise ValueError(f"min_score must be in [0, 1], got {min_score}")
        self.min_score = min_score

    def score(
        self,
        product_name: Optional[str],
        option_name: Optional[str],
        sku: Optional[str],
        erp_item: Any,
    ) -> Dict[str, Any]:
        """Score one candidate.

        Returns:
            Dict with confidence (0.0-1.0) and the individual features
        """
        s_tri_sku = similarity(sku, erp_item.item_code) if sku else 0.0
        s_tri_name = similarity(
            _join(product_name, option_name),
            _join(erp_item.item_name, erp_item.item_spec),
        )
        s_tri = max(s_tri_sku, NAME_WEIGHT * s_tri_name)
        confidence = max(0.0, min(1.0, s_tri))

        return {
            "confidence": confidence,
            "features": {
                "S_tri": s_tri,
                "S_tri_sku": s_tri_sku,
                "S_tri_name": s_tri_name,
            },
        }

    def best_candidate(
        self,
        product_name: Optional[str],
        option_name: Optional[str],
        sku: Optional[str],
        candidates: Iterable[Any],
    ) -> Optional[Tuple[Any, float]]:
        """Highest-scoring candidate at or above min_score, or None."""
        best: Optional[Tuple[Any, float]] = None
        for item in sorted(candidates, key=lambda c: c.item_code):
            confidence = self.score(product_name, option_name, sku, item)["confidence"]
            if confidence < self.min_score:
                continue
            if best is None or confidence > best[1]:
                best = (item, confidence)
        return best
