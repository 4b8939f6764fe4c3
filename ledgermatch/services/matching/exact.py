"""Exact matching on bank-assigned external ids."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from ledgermatch.services.bank_data import ExternalTransaction

from .confidence import FuzzyMatchScorer, MatchMethod, MatchScore

logger = logging.getLogger(__name__)


@dataclass
class MatchedPair:
    """Internal transaction paired with a bank record."""

    internal: Any
    external: ExternalTransaction
    score: MatchScore

    @property
    def confidence(self):
        return self.score.confidence

    @property
    def method(self) -> MatchMethod:
        return self.score.method


class ExactMatcher:
    """Pass one: pair records that carry the same external id.

    Internal transactions get an external id when they were imported from
    the bank feed, so an id match is certain regardless of amount or date.
    """

    def __init__(self, scorer: FuzzyMatchScorer | None = None):
        self.scorer = scorer or FuzzyMatchScorer()

    def match(
        self,
        externals: Sequence[ExternalTransaction],
        internals: Sequence[Any],
    ) -> list[MatchedPair]:
        """Pair externals with internals by external id.

        Args:
            externals: Bank records
            internals: Ledger transactions

        Returns:
            Matched pairs; each record appears in at most one pair
        """
        by_external_id: dict[str, Any] = {}
        for internal in sorted(internals, key=lambda t: t.id):
            if internal.external_id and internal.external_id not in by_external_id:
                by_external_id[internal.external_id] = internal

        pairs = []
        for external in externals:
            if not external.external_id:
                continue
            internal = by_external_id.pop(external.external_id, None)
            if internal is None:
                continue
            pairs.append(
                MatchedPair(internal=internal, external=external, score=self.scorer.exact())
            )

        logger.debug(f"External id pass matched {len(pairs)} of {len(externals)}")
        return pairs
