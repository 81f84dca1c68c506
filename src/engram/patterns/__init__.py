"""Pattern detection and the in-memory pattern table."""

from engram.patterns.detector import DetectionPlan, PatternDetector
from engram.patterns.features import Observation, build_claim, observe
from engram.patterns.table import Membership, PatternTable

__all__ = [
    "DetectionPlan",
    "Membership",
    "Observation",
    "PatternDetector",
    "PatternTable",
    "build_claim",
    "observe",
]
