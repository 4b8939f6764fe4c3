"""Inter-account transfer detection."""

import logging
import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from ledgermatch.config import ToleranceParams, settings

from .confidence import FuzzyMatchScorer, MatchScore

logger = logging.getLogger(__name__)


@dataclass
class TransferCandidate:
    """Outflow in one account mirrored by an inflow in another."""

    source: Any
    destination: Any
    score: MatchScore
    match_reasons: list[str] = field(default_factory=list)

    @property
    def confidence(self) -> Decimal:
        return self.score.confidence

    @property
    def is_existing(self) -> bool:
        """Both legs already share a transfer id."""
        return bool(self.source.transfer_id) and (
            self.source.transfer_id == self.destination.transfer_id
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "source_transaction_id": self.source.id,
            "destination_transaction_id": self.destination.id,
            "source_account_id": self.source.account_id,
            "destination_account_id": self.destination.account_id,
            "amount": str(abs(self.source.amount)),
            "confidence": str(self.confidence),
            "match_reasons": self.match_reasons,
            "is_existing": self.is_existing,
        }


@dataclass
class TransferDetectionResult:
    """Transfer pairs found in one detection run."""

    groups: list[TransferCandidate] = field(default_factory=list)

    @property
    def total_groups(self) -> int:
        return len(self.groups)


class TransferDetectionEngine:
    """Finds manual transfers recorded as two unrelated transactions.

    A candidate is an outflow (source) and an inflow (destination) in
    different accounts with mirrored amounts and close dates. Pairing is
    strictly one-to-one: a transaction belongs to at most one candidate.
    """

    # Transfer indicators in descriptions (standalone words)
    TRANSFER_INDICATORS = [
        r"\bTRANSFER\b",
        r"\bINTERNAL\b",
        r"\bBETWEEN\b",
        r"\bMOVED\b",
        r"\bTFR\b",
    ]

    def __init__(self, scorer: FuzzyMatchScorer | None = None):
        self.scorer = scorer or FuzzyMatchScorer()
        self._indicator_patterns = [re.compile(p) for p in self.TRANSFER_INDICATORS]

    def detect(
        self,
        transactions: Sequence[Any],
        params: ToleranceParams | None = None,
        *,
        include_reviewed: bool = False,
        include_existing_transfers: bool = False,
    ) -> TransferDetectionResult:
        """Find transfer pairs.

        Args:
            transactions: The user's ledger transactions
            params: Tolerances, defaults to settings.matching.transfers
            include_reviewed: Also consider transactions already reviewed
            include_existing_transfers: Also consider transactions already linked

        Returns:
            TransferDetectionResult ordered by confidence
        """
        params = params or settings.matching.transfers

        candidates = [
            t
            for t in transactions
            if self._is_candidate(t, include_reviewed, include_existing_transfers)
        ]
        sources = [t for t in candidates if t.amount < 0]
        destinations = [t for t in candidates if t.amount > 0]

        ranked = []
        for source in sources:
            for destination in destinations:
                if source.account_id == destination.account_id:
                    continue
                has_keywords = self._has_transfer_keywords(source) or self._has_transfer_keywords(
                    destination
                )
                # Compare the outflow's magnitude with the inflow
                score = self.scorer.score(
                    -source.amount,
                    source.date,
                    source.description,
                    destination.amount,
                    destination.date,
                    destination.description,
                    params,
                    use_description=False,
                    transfer_keywords=has_keywords,
                )
                if score is None:
                    continue
                ranked.append((source, destination, score, has_keywords))

        ranked.sort(
            key=lambda r: (
                -r[2].confidence,
                r[2].date_difference,
                r[2].amount_difference,
                r[0].id,
                r[1].id,
            )
        )

        used: set[int] = set()
        result = TransferDetectionResult()
        for source, destination, score, has_keywords in ranked:
            if source.id in used or destination.id in used:
                continue
            used.update((source.id, destination.id))
            result.groups.append(
                TransferCandidate(
                    source=source,
                    destination=destination,
                    score=score,
                    match_reasons=self._describe(score, has_keywords),
                )
            )

        logger.info(
            f"Found {result.total_groups} transfer candidates among "
            f"{len(sources)} outflows and {len(destinations)} inflows"
        )
        return result

    def _has_transfer_keywords(self, transaction: Any) -> bool:
        description = (transaction.description or "").upper()
        return any(p.search(description) for p in self._indicator_patterns)

    @staticmethod
    def _describe(score: MatchScore, has_keywords: bool) -> list[str]:
        """Human readable reasons for the review screen."""
        reasons = []
        if score.amount_difference == 0:
            reasons.append("Exact amount match")
        else:
            reasons.append(f"Amount within {score.amount_difference}")

        if score.date_difference == 0:
            reasons.append("Same day transactions")
        elif score.date_difference == 1:
            reasons.append("Consecutive day transactions")
        else:
            reasons.append(f"Within {score.date_difference} days")

        if has_keywords:
            reasons.append("Contains transfer keywords")
        return reasons

    @staticmethod
    def _is_candidate(
        transaction: Any, include_reviewed: bool, include_existing_transfers: bool
    ) -> bool:
        if getattr(transaction, "is_deleted", False):
            return False
        if not include_existing_transfers and getattr(transaction, "transfer_id", None):
            return False
        if not include_reviewed and getattr(transaction, "is_reviewed", False):
            return False
        return True
