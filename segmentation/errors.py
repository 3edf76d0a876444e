"""Exception hierarchy for the segmentation engine.

Construction errors are fatal and raised before any segment runs. Per-segment
execution problems never surface as exceptions; the runner records them as
failed results instead.
"""

from typing import Iterable


class SegmentationError(Exception):
    """Base class for all segmentation engine errors."""


class SegmentationConstructionError(SegmentationError):
    """The segment set cannot be turned into an execution plan."""


class MalformedSegmentationError(SegmentationConstructionError):
    """Duplicate ids, empty ids or dependencies on unknown segments."""


class CircularDependencyError(SegmentationConstructionError):
    """The dependency relation between segments contains a cycle."""

    def __init__(self, strategy: str, unresolved: Iterable[str]):
        self.strategy = strategy
        self.unresolved = sorted(unresolved)
        super().__init__(
            f"Circular dependency detected in '{strategy}' segmentation "
            f"(unresolved segments: {', '.join(self.unresolved)})"
        )


class InvalidSegmentTransitionError(SegmentationError):
    """A segment was moved backwards in its pending/running/terminal lifecycle."""

    def __init__(self, segment_id: str, current: str, requested: str):
        self.segment_id = segment_id
        self.current = current
        self.requested = requested
        super().__init__(
            f"Segment {segment_id} cannot move from {current} to {requested}"
        )
