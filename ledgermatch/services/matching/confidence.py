"""Confidence scoring for transaction matches."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from ledgermatch.config import ToleranceParams

from .tolerance import ToleranceMatcher


class MatchMethod(str, Enum):
    """How a pair was matched."""

    EXACT = "exact"
    FUZZY = "fuzzy"
    MANUAL = "manual"


@dataclass
class MatchScore:
    """Scored comparison of two records."""

    confidence: Decimal
    method: MatchMethod
    reasons: list[str] = field(default_factory=list)
    date_difference: int = 0
    amount_difference: Decimal = Decimal("0.00")

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "confidence": str(self.confidence),
            "method": self.method.value,
            "reasons": self.reasons,
            "date_difference": self.date_difference,
            "amount_difference": str(self.amount_difference),
        }


class FuzzyMatchScorer:
    """Turns tolerance checks into a single confidence and method tag.

    Score = base - date penalty - amount penalty + description adjustment,
    clamped to [0, 1]. Penalties grow linearly with the distance as a
    fraction of the tolerance window; the description adjustment ranges
    from -DESCRIPTION_MAX (unrelated) to +DESCRIPTION_MAX (identical).
    """

    BASE_SCORES: dict[MatchMethod, Decimal] = {
        MatchMethod.EXACT: Decimal("1.00"),
        MatchMethod.FUZZY: Decimal("0.90"),
        MatchMethod.MANUAL: Decimal("0.90"),
    }

    ADJUSTMENTS = {
        "date_penalty_max": Decimal("0.20"),
        "amount_penalty_max": Decimal("0.20"),
        "description_max": Decimal("0.10"),
        "different_external_ids": Decimal("-0.30"),
        "transfer_keywords": Decimal("0.05"),
    }

    # Similarity at which the description counts as a match reason
    DESCRIPTION_REASON_THRESHOLD = 0.7

    PRECISION = Decimal("0.0001")

    def __init__(self, tolerance: ToleranceMatcher | None = None):
        self.tolerance = tolerance or ToleranceMatcher()

    def exact(self) -> MatchScore:
        """Score for an external-id match."""
        return MatchScore(
            confidence=self.BASE_SCORES[MatchMethod.EXACT],
            method=MatchMethod.EXACT,
            reasons=["external_id_match"],
        )

    def score(
        self,
        amount_a: Decimal,
        date_a: date | datetime,
        description_a: str | None,
        amount_b: Decimal,
        date_b: date | datetime,
        description_b: str | None,
        params: ToleranceParams,
        *,
        use_description: bool = True,
        use_date: bool = True,
        exact_on_cent: bool = False,
        external_ids: tuple[str | None, str | None] | None = None,
        transfer_keywords: bool = False,
    ) -> MatchScore | None:
        """Score a candidate pair.

        Args:
            amount_a, date_a, description_a: First record
            amount_b, date_b, description_b: Second record
            params: Tolerance window and confidence floor
            use_description: Apply the description adjustment
            use_date: Enforce the date window and apply the date penalty
            exact_on_cent: Tag same-day, same-cent pairs as Exact
            external_ids: Bank ids of both records, penalized when they differ
            transfer_keywords: Either description mentions a transfer

        Returns:
            MatchScore, or None when a tolerance check fails or the
            confidence is below params.min_confidence
        """
        if not self.tolerance.amount_within(amount_a, amount_b, params.amount_tolerance):
            return None
        if use_date and not self.tolerance.date_within(
            date_a, date_b, params.date_tolerance_days
        ):
            return None

        result = self._compute(
            amount_a,
            date_a,
            description_a,
            amount_b,
            date_b,
            description_b,
            params,
            method=MatchMethod.FUZZY,
            use_description=use_description,
            use_date=use_date,
            external_ids=external_ids,
            transfer_keywords=transfer_keywords,
        )

        if (
            exact_on_cent
            and result.date_difference == 0
            and self.tolerance.amounts_equal_to_cent(amount_a, amount_b)
        ):
            result.method = MatchMethod.EXACT

        if result.confidence < params.min_confidence:
            return None
        return result

    def score_manual(
        self,
        amount_a: Decimal,
        date_a: date | datetime,
        description_a: str | None,
        amount_b: Decimal,
        date_b: date | datetime,
        description_b: str | None,
        params: ToleranceParams,
    ) -> MatchScore:
        """Score a user-chosen pair. Never discarded, distances saturate."""
        return self._compute(
            amount_a,
            date_a,
            description_a,
            amount_b,
            date_b,
            description_b,
            params,
            method=MatchMethod.MANUAL,
            use_description=True,
            use_date=True,
        )

    def _compute(
        self,
        amount_a: Decimal,
        date_a: date | datetime,
        description_a: str | None,
        amount_b: Decimal,
        date_b: date | datetime,
        description_b: str | None,
        params: ToleranceParams,
        *,
        method: MatchMethod,
        use_description: bool,
        use_date: bool,
        external_ids: tuple[str | None, str | None] | None = None,
        transfer_keywords: bool = False,
    ) -> MatchScore:
        score = self.BASE_SCORES[method]
        reasons: list[str] = []

        amount_diff = self.tolerance.amount_difference(amount_a, amount_b)
        if amount_diff == 0:
            reasons.append("amount_exact")
        else:
            reasons.append(f"amount_within_{amount_diff}")
        score -= self._penalty(
            amount_diff, params.amount_tolerance, self.ADJUSTMENTS["amount_penalty_max"]
        )

        date_diff = self.tolerance.date_difference(date_a, date_b)
        if use_date:
            if date_diff == 0:
                reasons.append("date_exact")
            else:
                reasons.append(f"date_within_{date_diff}_days")
            score -= self._penalty(
                Decimal(date_diff),
                Decimal(params.date_tolerance_days),
                self.ADJUSTMENTS["date_penalty_max"],
            )

        if use_description and description_a and description_b:
            similarity = self.tolerance.description_similarity(description_a, description_b)
            adjustment = self.ADJUSTMENTS["description_max"] * (
                Decimal(str(similarity)) * 2 - 1
            )
            score += adjustment
            if similarity >= self.DESCRIPTION_REASON_THRESHOLD:
                reasons.append(f"description_similarity_{int(similarity * 100)}%")

        if external_ids is not None:
            ext_a, ext_b = external_ids
            if ext_a and ext_b and ext_a != ext_b:
                score += self.ADJUSTMENTS["different_external_ids"]
                reasons.append("different_external_ids")

        if transfer_keywords:
            score += self.ADJUSTMENTS["transfer_keywords"]
            reasons.append("transfer_keywords")

        # Clamp to 0-1 range
        score = max(Decimal("0.00"), min(Decimal("1.00"), score))

        return MatchScore(
            confidence=score.quantize(self.PRECISION),
            method=method,
            reasons=reasons,
            date_difference=date_diff,
            amount_difference=amount_diff,
        )

    @staticmethod
    def _penalty(distance: Decimal, window: Decimal, weight: Decimal) -> Decimal:
        """Linear penalty, saturating at the window edge."""
        if distance <= 0:
            return Decimal("0.00")
        if window <= 0:
            return weight
        return weight * min(Decimal("1"), distance / window)
