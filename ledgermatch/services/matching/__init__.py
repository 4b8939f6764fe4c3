"""Transaction matching engine."""

from .confidence import FuzzyMatchScorer, MatchMethod, MatchScore
from .duplicates import DuplicateDetectionEngine, DuplicateDetectionResult, DuplicateGroup
from .exact import ExactMatcher, MatchedPair
from .fuzzy import FuzzyMatcher
from .reconciliation import ReconciliationMatchingEngine, ReconciliationMatchResult
from .tolerance import ToleranceMatcher
from .transfers import TransferCandidate, TransferDetectionEngine, TransferDetectionResult

__all__ = [
    "ToleranceMatcher",
    "FuzzyMatchScorer",
    "MatchMethod",
    "MatchScore",
    "ExactMatcher",
    "FuzzyMatcher",
    "MatchedPair",
    "ReconciliationMatchingEngine",
    "ReconciliationMatchResult",
    "DuplicateDetectionEngine",
    "DuplicateDetectionResult",
    "DuplicateGroup",
    "TransferDetectionEngine",
    "TransferDetectionResult",
    "TransferCandidate",
]
