"""
Confidence Tracker

Per-step trust scores in [0, 1] that decide how much supervision a step
still needs, plus inference of reusable rules from repeated corrections.

Score changes (all clamped to [0, 1]):
    approval    +0.2
    correction  -0.3 (the correction is persisted)
    skip        -0.5

Graduation to unattended execution needs confidence >= 0.8, at least 5
workflow runs and no recorded corrections against the step.
"""

from __future__ import annotations

import logging
import os
import re
from collections import Counter
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any

from autopilot import storage
from autopilot.workflow.models import Correction, CorrectionType

logger = logging.getLogger(__name__)

APPROVAL_INCREMENT = 0.2
CORRECTION_DECREMENT = 0.3
SKIP_DECREMENT = 0.5
AUTONOMOUS_THRESHOLD = 0.8
MIN_RUNS_FOR_GRADUATION = 5
MAX_CORRECTIONS_FOR_GRADUATION = 0

MIN_CORRECTIONS_FOR_PATTERN = 3
PATTERN_BASE_CONFIDENCE = 0.5
PATTERN_CONFIDENCE_STEP = 0.1
PATTERN_MAX_CONFIDENCE = 0.9
MIN_SUBSTRING_LENGTH = 3

_TOKEN_SPLIT = re.compile(r"[_\-/]")


def clamp(value: float) -> float:
    return min(max(value, 0.0), 1.0)


def is_autonomous(confidence: float, threshold: float = AUTONOMOUS_THRESHOLD) -> bool:
    """Whether a step at this confidence runs without review."""
    return confidence >= threshold


@dataclass
class InferredPattern:
    """A rule generalized from repeated corrections. Advisory only."""

    type: str  # "auto_filter" | "auto_param"
    pattern: str
    action: str  # "filter" | "replace"
    confidence: float
    support: int
    source: str = "corrections"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def pattern_confidence(correction_count: int) -> float:
    """Confidence of an inferred pattern, capped at 0.9.

    The minimum supporting set itself counts as the first step above the 0.5
    base, so three corrections give 0.6 and each further one adds 0.1.
    """
    extra = max(0, correction_count - MIN_CORRECTIONS_FOR_PATTERN + 1)
    return min(PATTERN_BASE_CONFIDENCE + PATTERN_CONFIDENCE_STEP * extra, PATTERN_MAX_CONFIDENCE)


def longest_common_substring(values: list[str], min_length: int = MIN_SUBSTRING_LENGTH) -> str | None:
    """Longest substring (at least ``min_length`` chars) contained in every value."""
    if not values:
        return None
    shortest = min(values, key=len)
    for length in range(len(shortest), min_length - 1, -1):
        for start in range(len(shortest) - length + 1):
            candidate = shortest[start : start + length]
            if all(candidate in v for v in values):
                return candidate
    return None


def find_filter_pattern(values: list[str]) -> str | None:
    """Generalize removed items into a wildcard pattern.

    Tried in order: shared extension (``*.ext``), shared first token of
    more than two characters (``prefix*``), longest common substring
    (``*substr*``).
    """
    if len(values) < MIN_CORRECTIONS_FOR_PATTERN:
        return None

    extensions = Counter(
        ext.lower() for ext in (os.path.splitext(v)[1] for v in values) if ext
    )
    if extensions:
        ext, count = extensions.most_common(1)[0]
        if count >= MIN_CORRECTIONS_FOR_PATTERN:
            return f"*{ext}"

    prefixes = Counter(_TOKEN_SPLIT.split(v)[0] for v in values)
    for prefix, count in prefixes.most_common():
        if count < MIN_CORRECTIONS_FOR_PATTERN:
            break
        if len(prefix) > 2:
            return f"{prefix}*"

    common = longest_common_substring(values)
    if common:
        return f"*{common}*"

    return None


class ConfidenceTracker:
    """Trust score bookkeeping for one (workflow, step) pair."""

    def __init__(self, workflow_id: str, step_order: int, threshold: float = AUTONOMOUS_THRESHOLD):
        self.workflow_id = workflow_id
        self.step_order = step_order
        self.threshold = threshold

    def on_approval(self, current: float) -> float:
        return clamp(current + APPROVAL_INCREMENT)

    def on_correction(
        self,
        current: float,
        correction_type: CorrectionType | str,
        original: Any,
        corrected: Any,
        now: datetime | None = None,
    ) -> float:
        storage.record_correction(
            self.workflow_id, self.step_order, correction_type, original, corrected, now=now
        )
        return clamp(current - CORRECTION_DECREMENT)

    def on_output_filter(
        self,
        current: float,
        removed_items: list[Any],
        now: datetime | None = None,
    ) -> float:
        """Record one output_filter correction per removed item; a single decrement."""
        for item in removed_items:
            storage.record_correction(
                self.workflow_id,
                self.step_order,
                CorrectionType.OUTPUT_FILTER,
                item,
                None,
                now=now,
            )
        if not removed_items:
            return current
        return clamp(current - CORRECTION_DECREMENT)

    def on_skip(self, current: float) -> float:
        return clamp(current - SKIP_DECREMENT)

    def is_autonomous(self, confidence: float) -> bool:
        return is_autonomous(confidence, self.threshold)

    def _correction_count(self, recent_corrections: int | None) -> int:
        if recent_corrections is not None:
            return recent_corrections
        return storage.count_corrections(self.workflow_id, self.step_order)

    def ready_for_graduation(
        self,
        confidence: float,
        run_count: int,
        recent_corrections: int | None = None,
    ) -> bool:
        return self.graduation_status(confidence, run_count, recent_corrections)["ready"]

    def graduation_status(
        self,
        confidence: float,
        run_count: int,
        recent_corrections: int | None = None,
    ) -> dict[str, Any]:
        """
        Explain whether the step may run unattended.

        Args:
            confidence: Current step confidence
            run_count: Number of runs of the owning workflow
            recent_corrections: Narrower correction count to use instead of
                the full correction history

        Returns:
            dict with ready flag, unmet reasons and the inputs used
        """
        corrections = self._correction_count(recent_corrections)
        reasons = []

        if confidence < self.threshold:
            reasons.append(
                f"Confidence {round(confidence * 100)}% below threshold ({round(self.threshold * 100)}%)"
            )

        if run_count < MIN_RUNS_FOR_GRADUATION:
            reasons.append(f"Only {run_count} runs (need {MIN_RUNS_FOR_GRADUATION})")

        if corrections > MAX_CORRECTIONS_FOR_GRADUATION:
            reasons.append(f"{corrections} corrections recorded (need {MAX_CORRECTIONS_FOR_GRADUATION})")

        return {
            "ready": not reasons,
            "reasons": reasons,
            "confidence": confidence,
            "run_count": run_count,
            "corrections": corrections,
        }

    def get_corrections(self) -> list[Correction]:
        return storage.list_corrections(self.workflow_id, self.step_order)

    def infer_patterns(self) -> list[InferredPattern]:
        """Generalize repeated corrections into reusable rules.

        Never raises; inference problems are logged and yield no patterns.
        """
        try:
            return self._infer_patterns(self.get_corrections())
        except Exception as e:
            logger.warning(
                f"Pattern inference failed for workflow {self.workflow_id} "
                f"step {self.step_order}: {e}"
            )
            return []

    def _infer_patterns(self, corrections: list[Correction]) -> list[InferredPattern]:
        patterns: list[InferredPattern] = []

        filters = [c for c in corrections if c.correction_type == CorrectionType.OUTPUT_FILTER]
        if len(filters) >= MIN_CORRECTIONS_FOR_PATTERN:
            pattern = find_filter_pattern([c.original_value for c in filters])
            if pattern:
                patterns.append(
                    InferredPattern(
                        type="auto_filter",
                        pattern=pattern,
                        action="filter",
                        confidence=pattern_confidence(len(filters)),
                        support=len(filters),
                    )
                )

        edits = [c for c in corrections if c.correction_type == CorrectionType.PARAM_EDIT]
        if len(edits) >= MIN_CORRECTIONS_FOR_PATTERN:
            corrected_values = {c.corrected_value for c in edits}
            if len(corrected_values) == 1:
                patterns.append(
                    InferredPattern(
                        type="auto_param",
                        pattern=corrected_values.pop(),
                        action="replace",
                        confidence=pattern_confidence(len(edits)),
                        support=len(edits),
                    )
                )

        return patterns
