"""
Validators for the scheduling core.

Validators:
- ConflictDetector: closed-open overlap checks against active lessons
- intervals_overlap / overlapping: pure interval helpers
"""

from scheduling.validators.conflict_detector import (
    ConflictDetector,
    intervals_overlap,
    overlapping,
)

__all__ = [
    "ConflictDetector",
    "intervals_overlap",
    "overlapping",
]
