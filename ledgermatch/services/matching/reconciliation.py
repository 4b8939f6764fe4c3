"""Statement reconciliation matching."""

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from ledgermatch.config import ToleranceParams, settings
from ledgermatch.services.bank_data import ExternalTransaction

from .confidence import FuzzyMatchScorer, MatchMethod
from .exact import ExactMatcher, MatchedPair
from .fuzzy import FuzzyMatcher

logger = logging.getLogger(__name__)


@dataclass
class ReconciliationMatchResult:
    """Outcome of matching one statement period."""

    matched_pairs: list[MatchedPair] = field(default_factory=list)
    unmatched_bank: list[ExternalTransaction] = field(default_factory=list)
    unmatched_internal: list[Any] = field(default_factory=list)
    total_external: int = 0

    @property
    def exact_matches(self) -> int:
        return sum(1 for p in self.matched_pairs if p.method == MatchMethod.EXACT)

    @property
    def fuzzy_matches(self) -> int:
        return sum(1 for p in self.matched_pairs if p.method == MatchMethod.FUZZY)

    @property
    def overall_match_percentage(self) -> Decimal:
        """Matched bank records as a percentage, 0 for an empty statement."""
        if self.total_external == 0:
            return Decimal("0.00")
        pct = Decimal(len(self.matched_pairs)) / Decimal(self.total_external) * 100
        return pct.quantize(Decimal("0.01"))

    def to_dict(self) -> dict:
        """Summary counts."""
        return {
            "matched": len(self.matched_pairs),
            "exact_matches": self.exact_matches,
            "fuzzy_matches": self.fuzzy_matches,
            "unmatched_bank": len(self.unmatched_bank),
            "unmatched_internal": len(self.unmatched_internal),
            "overall_match_percentage": str(self.overall_match_percentage),
        }


class ReconciliationMatchingEngine:
    """Pairs bank records against ledger transactions for one account.

    Flow:
    1. External id equality (Exact, confidence 1.0)
    2. Tolerance window over what is left (Fuzzy, or Exact for same-day cent matches)
    3. Everything still unpaired is reported unmatched on its side
    """

    def __init__(self, scorer: FuzzyMatchScorer | None = None):
        self.scorer = scorer or FuzzyMatchScorer()
        self.exact_matcher = ExactMatcher(self.scorer)
        self.fuzzy_matcher = FuzzyMatcher(self.scorer)

    def match(
        self,
        externals: Sequence[ExternalTransaction],
        internals: Sequence[Any],
        *,
        amount_tolerance: Decimal | None = None,
        date_tolerance_days: int | None = None,
        use_description_matching: bool = True,
        use_date_range_matching: bool = True,
        params: ToleranceParams | None = None,
    ) -> ReconciliationMatchResult:
        """Run both passes.

        Args:
            externals: Bank records for the period
            internals: Ledger transactions for the account and period
            amount_tolerance: Overrides the configured amount tolerance
            date_tolerance_days: Overrides the configured date window
            use_description_matching: Let description similarity move scores
            use_date_range_matching: Enforce the date window
            params: Base tolerances, defaults to settings.matching.reconciliation

        Returns:
            ReconciliationMatchResult
        """
        params = params or settings.matching.reconciliation
        overrides: dict[str, Any] = {}
        if amount_tolerance is not None:
            overrides["amount_tolerance"] = amount_tolerance
        if date_tolerance_days is not None:
            overrides["date_tolerance_days"] = date_tolerance_days
        if overrides:
            params = params.model_copy(update=overrides)

        live_internals = [t for t in internals if not getattr(t, "is_deleted", False)]

        exact_pairs = self.exact_matcher.match(externals, live_internals)
        used_external_ids = {id(p.external) for p in exact_pairs}
        used_internal_ids = {p.internal.id for p in exact_pairs}

        remaining_externals = [e for e in externals if id(e) not in used_external_ids]
        remaining_internals = [t for t in live_internals if t.id not in used_internal_ids]

        fuzzy_pairs = self.fuzzy_matcher.match(
            remaining_externals,
            remaining_internals,
            params,
            use_description=use_description_matching,
            use_date=use_date_range_matching,
        )
        used_external_ids.update(id(p.external) for p in fuzzy_pairs)
        used_internal_ids.update(p.internal.id for p in fuzzy_pairs)

        result = ReconciliationMatchResult(
            matched_pairs=exact_pairs + fuzzy_pairs,
            unmatched_bank=[e for e in externals if id(e) not in used_external_ids],
            unmatched_internal=[t for t in live_internals if t.id not in used_internal_ids],
            total_external=len(externals),
        )

        logger.info(
            f"Matched {len(result.matched_pairs)}/{len(externals)} bank records "
            f"({result.exact_matches} exact, {result.fuzzy_matches} fuzzy), "
            f"{len(result.unmatched_internal)} ledger transactions unmatched"
        )
        return result
