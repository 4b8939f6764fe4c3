"""Duplicate transaction detection."""

import logging
import uuid
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from ledgermatch.config import ToleranceParams, settings

from .confidence import FuzzyMatchScorer, MatchScore
from .tolerance import as_date

logger = logging.getLogger(__name__)

# Group ids are derived from the member ids so they stay stable across runs
GROUP_NAMESPACE = uuid.UUID("6f1c7a52-3d0e-4b8e-9a51-2f0d6c1e8b47")


def member_key(transaction_ids: Iterable[int]) -> str:
    """Canonical key for a set of transaction ids."""
    return ",".join(str(i) for i in sorted(set(transaction_ids)))


@dataclass
class DuplicatePair:
    """Two transactions that cleared the duplicate threshold."""

    first_id: int
    second_id: int
    score: MatchScore


@dataclass
class DuplicateGroup:
    """Transactions believed to record the same real event."""

    group_id: str
    transactions: list[Any]
    highest_confidence: Decimal
    pairs: list[DuplicatePair] = field(default_factory=list)
    # Shares members with a dismissed set without being contained in it
    overlaps_dismissal: bool = False

    @property
    def transaction_ids(self) -> list[int]:
        return sorted(t.id for t in self.transactions)

    @property
    def total_amount(self) -> Decimal:
        return sum((abs(t.amount) for t in self.transactions), Decimal("0.00"))

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "group_id": self.group_id,
            "transaction_ids": self.transaction_ids,
            "highest_confidence": str(self.highest_confidence),
            "total_amount": str(self.total_amount),
            "overlaps_dismissal": self.overlaps_dismissal,
            "pairs": [
                {"ids": [p.first_id, p.second_id], **p.score.to_dict()} for p in self.pairs
            ],
        }


@dataclass
class DuplicateDetectionResult:
    """Groups found in one detection run."""

    groups: list[DuplicateGroup] = field(default_factory=list)
    dismissed_groups: int = 0

    @property
    def total_groups(self) -> int:
        return len(self.groups)

    @property
    def total_transactions(self) -> int:
        return sum(len(g.transactions) for g in self.groups)


class _DisjointSet:
    """Union-find over transaction ids."""

    def __init__(self):
        self.parent: dict[int, int] = {}

    def find(self, item: int) -> int:
        self.parent.setdefault(item, item)
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a != root_b:
            self.parent[max(root_a, root_b)] = min(root_a, root_b)


class DuplicateDetectionEngine:
    """Groups a user's transactions that look like the same event entered twice.

    Pairs are scored with the shared scorer (description aware) and grouped
    by transitive closure: if A~B and B~C both clear the threshold, A, B and C
    form one group even when A~C alone would not.
    """

    def __init__(self, scorer: FuzzyMatchScorer | None = None):
        self.scorer = scorer or FuzzyMatchScorer()

    def detect(
        self,
        transactions: Sequence[Any],
        params: ToleranceParams | None = None,
        *,
        include_reviewed: bool = False,
        same_account_only: bool = False,
        dismissed: Iterable[Iterable[int]] = (),
    ) -> DuplicateDetectionResult:
        """Find duplicate groups.

        Args:
            transactions: The user's ledger transactions
            params: Tolerances, defaults to settings.matching.duplicates
            include_reviewed: Also consider transactions already reviewed
            same_account_only: Only pair transactions in the same account
            dismissed: Member id sets previously marked not duplicate

        Returns:
            DuplicateDetectionResult with groups ordered by confidence, then amount
        """
        params = params or settings.matching.duplicates
        dismissed_sets = [frozenset(ids) for ids in dismissed]

        candidates = sorted(
            (t for t in transactions if self._is_candidate(t, include_reviewed)),
            key=lambda t: (as_date(t.date), t.id),
        )
        by_id = {t.id: t for t in candidates}

        clusters = _DisjointSet()
        pairs: list[DuplicatePair] = []

        for i, first in enumerate(candidates):
            for second in candidates[i + 1 :]:
                # Sorted by date, so everything further is out of the window
                if (
                    self.scorer.tolerance.date_difference(first.date, second.date)
                    > params.date_tolerance_days
                ):
                    break
                if same_account_only and first.account_id != second.account_id:
                    continue

                score = self.scorer.score(
                    first.amount,
                    first.date,
                    first.description,
                    second.amount,
                    second.date,
                    second.description,
                    params,
                    external_ids=(first.external_id, second.external_id),
                )
                if score is None:
                    continue

                if first.account_id == second.account_id:
                    score.reasons.append("same_account")
                pairs.append(DuplicatePair(first.id, second.id, score))
                clusters.union(first.id, second.id)

        members: dict[int, list[int]] = {}
        for pair in pairs:
            for tx_id in (pair.first_id, pair.second_id):
                root = clusters.find(tx_id)
                members.setdefault(root, [])
                if tx_id not in members[root]:
                    members[root].append(tx_id)

        pairs_by_root: dict[int, list[DuplicatePair]] = {}
        for pair in pairs:
            pairs_by_root.setdefault(clusters.find(pair.first_id), []).append(pair)

        result = DuplicateDetectionResult()
        for root, ids in members.items():
            member_set = frozenset(ids)
            if any(member_set <= d for d in dismissed_sets):
                result.dismissed_groups += 1
                continue

            group_pairs = pairs_by_root[root]
            result.groups.append(
                DuplicateGroup(
                    group_id=str(uuid.uuid5(GROUP_NAMESPACE, member_key(ids))),
                    transactions=sorted((by_id[i] for i in ids), key=lambda t: t.id),
                    highest_confidence=max(p.score.confidence for p in group_pairs),
                    pairs=group_pairs,
                    overlaps_dismissal=any(len(member_set & d) >= 2 for d in dismissed_sets),
                )
            )

        result.groups.sort(
            key=lambda g: (-g.highest_confidence, -g.total_amount, g.transaction_ids[0])
        )

        logger.info(
            f"Found {result.total_groups} duplicate groups over {len(candidates)} transactions "
            f"({result.dismissed_groups} dismissed)"
        )
        return result

    @staticmethod
    def _is_candidate(transaction: Any, include_reviewed: bool) -> bool:
        if getattr(transaction, "is_deleted", False):
            return False
        # Linked transfer legs legitimately mirror each other
        if getattr(transaction, "transfer_id", None):
            return False
        if not include_reviewed and getattr(transaction, "is_reviewed", False):
            return False
        return True
