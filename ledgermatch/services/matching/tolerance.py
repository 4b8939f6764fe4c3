"""Tolerance comparison primitives shared by all matchers."""

import re
from datetime import date, datetime
from decimal import Decimal

from rapidfuzz import fuzz


def as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


class ToleranceMatcher:
    """Stateless amount, date and description comparisons.

    Amounts are compared as signed values: the sign convention belongs to the
    ledger and is never flipped here. Callers that compare opposite-signed
    records (transfers) negate one side themselves.
    """

    # Bank feed noise that says nothing about the counterparty
    NOISE_TERMS = frozenset(
        {"eftpos", "paypal", "transfer", "payment", "withdraw", "deposit", "pos", "card"}
    )

    # Score when one description contains the other
    CONTAINMENT_SCORE = 0.9

    # Weights for token overlap vs character similarity
    TOKEN_WEIGHT = 0.7
    CHAR_WEIGHT = 0.3

    @staticmethod
    def amount_difference(a: Decimal, b: Decimal) -> Decimal:
        return abs(a - b)

    def amount_within(self, a: Decimal, b: Decimal, tolerance: Decimal) -> bool:
        """Check |a - b| <= tolerance."""
        return self.amount_difference(a, b) <= tolerance

    @staticmethod
    def amounts_equal_to_cent(a: Decimal, b: Decimal) -> bool:
        return a.quantize(Decimal("0.01")) == b.quantize(Decimal("0.01"))

    @staticmethod
    def date_difference(a: date | datetime, b: date | datetime) -> int:
        """Whole days between two dates, ignoring time of day."""
        return abs((as_date(a) - as_date(b)).days)

    def date_within(self, a: date | datetime, b: date | datetime, days: int) -> bool:
        """Check |a - b| <= days."""
        return self.date_difference(a, b) <= days

    def normalize(self, text: str | None) -> str:
        """Lowercase, spell out '&', strip punctuation and bank noise terms."""
        if not text:
            return ""
        s = text.lower().replace("&", " and ")
        s = re.sub(r"[^\w\s]", " ", s)
        tokens = [t for t in s.split() if t not in self.NOISE_TERMS]
        return " ".join(tokens)

    def _tokenize(self, normalized: str) -> set[str]:
        # Single characters carry no signal
        return {t for t in normalized.split() if len(t) > 1}

    def description_similarity(self, a: str | None, b: str | None) -> float:
        """Similarity of two free-text descriptions in [0, 1].

        Equal normalized text scores 1.0, containment scores 0.9, anything
        else blends token overlap (Jaccard) with character similarity.
        """
        norm_a = self.normalize(a)
        norm_b = self.normalize(b)
        if not norm_a or not norm_b:
            return 0.0

        if norm_a == norm_b:
            return 1.0

        # Whole-word containment only, "art" must not match "smart"
        padded_a, padded_b = f" {norm_a} ", f" {norm_b} "
        if padded_a in padded_b or padded_b in padded_a:
            return self.CONTAINMENT_SCORE

        tokens_a = self._tokenize(norm_a)
        tokens_b = self._tokenize(norm_b)
        token_score = 0.0
        if tokens_a and tokens_b:
            token_score = len(tokens_a & tokens_b) / len(tokens_a | tokens_b)

        char_score = fuzz.ratio(norm_a, norm_b) / 100.0

        score = token_score * self.TOKEN_WEIGHT + char_score * self.CHAR_WEIGHT
        return round(min(1.0, max(0.0, score)), 4)
