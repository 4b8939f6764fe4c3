"""Tolerance matching for transactions."""

import logging
from collections.abc import Sequence
from typing import Any

from ledgermatch.config import ToleranceParams
from ledgermatch.services.bank_data import ExternalTransaction

from .confidence import FuzzyMatchScorer, MatchScore
from .exact import MatchedPair

logger = logging.getLogger(__name__)


def rank_key(score: MatchScore, internal_id: int) -> tuple:
    """Sort key: higher confidence, closer date, closer amount, lower id."""
    return (-score.confidence, score.date_difference, score.amount_difference, internal_id)


class FuzzyMatcher:
    """Pass two: pair remaining records within the tolerance window.

    Assignment is greedy over all candidate pairs in rank order, so the best
    pair anywhere in the set is taken first and no record is used twice.
    """

    def __init__(self, scorer: FuzzyMatchScorer | None = None):
        self.scorer = scorer or FuzzyMatchScorer()

    def candidates_for(
        self,
        external: ExternalTransaction,
        internals: Sequence[Any],
        params: ToleranceParams,
        *,
        use_description: bool = True,
        use_date: bool = True,
    ) -> list[tuple[Any, MatchScore]]:
        """Ranked internal candidates for one bank record.

        Returns:
            (internal, score) tuples, best first, all above min confidence
        """
        candidates = []
        for internal in internals:
            score = self.scorer.score(
                external.amount,
                external.date,
                external.description,
                internal.amount,
                internal.date,
                internal.description,
                params,
                use_description=use_description,
                use_date=use_date,
                exact_on_cent=True,
            )
            if score is not None:
                candidates.append((internal, score))

        candidates.sort(key=lambda c: rank_key(c[1], c[0].id))
        return candidates

    def match(
        self,
        externals: Sequence[ExternalTransaction],
        internals: Sequence[Any],
        params: ToleranceParams,
        *,
        use_description: bool = True,
        use_date: bool = True,
    ) -> list[MatchedPair]:
        """Assign pairs greedily, best candidate first.

        Args:
            externals: Bank records not matched by external id
            internals: Ledger transactions not matched by external id
            params: Tolerance window and confidence floor
            use_description: Let description similarity move the score
            use_date: Enforce the date window

        Returns:
            Matched pairs; each record appears in at most one pair
        """
        ranked = []
        for index, external in enumerate(externals):
            for internal, score in self.candidates_for(
                external,
                internals,
                params,
                use_description=use_description,
                use_date=use_date,
            ):
                ranked.append((rank_key(score, internal.id), index, internal, score))

        ranked.sort(key=lambda r: (r[0], r[1]))

        used_externals: set[int] = set()
        used_internals: set[int] = set()
        pairs = []
        for _, index, internal, score in ranked:
            if index in used_externals or internal.id in used_internals:
                continue
            used_externals.add(index)
            used_internals.add(internal.id)
            pairs.append(MatchedPair(internal=internal, external=externals[index], score=score))

        logger.debug(f"Tolerance pass matched {len(pairs)} of {len(externals)}")
        return pairs
