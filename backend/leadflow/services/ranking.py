from __future__ import annotations

from typing import Sequence

from leadflow.services.eligibility import Candidate

RATING_WEIGHT = 10.0
RATING_COUNT_DIVISOR = 10.0
RATING_COUNT_CAP = 20.0


def score_candidate(candidate: Candidate, *, featured_weight: float) -> float:
    business = candidate.business
    rating = float(business.rating or 0.0)
    rating_count = int(business.rating_count or 0)
    score = rating * RATING_WEIGHT + min(rating_count / RATING_COUNT_DIVISOR, RATING_COUNT_CAP)
    score += float(candidate.benefits.priority_boost_points or 0)
    if business.is_featured or candidate.benefits.is_featured:
        score += featured_weight
    return score


def rank_candidates(candidates: Sequence[Candidate], *, featured_weight: float = 15.0) -> list[Candidate]:
    """Highest score first; ties go to more ratings, then the lower business id."""
    return sorted(
        candidates,
        key=lambda c: (
            -score_candidate(c, featured_weight=featured_weight),
            -int(c.business.rating_count or 0),
            c.business_id,
        ),
    )
