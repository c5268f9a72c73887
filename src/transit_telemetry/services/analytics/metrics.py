"""Headway-based reliability metrics, percentiles and letter grading.

All functions here are stateless and free of I/O so they can be unit-tested
without a database or settings object.
"""

from __future__ import annotations

import math
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Optional

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# Network commercial speed baseline (km/h), STCP 2024 annual figure.
BASELINE_COMMERCIAL_SPEED_KMH = 15.4

ADHERENCE_SLACK_SEC = 180
BUNCHING_FACTOR = 0.5
GAPPING_FACTOR = 1.5

GRADE_ORDER = ("A", "B", "C", "D", "F")
NO_GRADE = "N/A"

# (grade, max EWT exclusive, min adherence exclusive)
_GRADE_THRESHOLDS: tuple[tuple[str, float, float], ...] = (
    ("A", 60, 90),
    ("B", 120, 80),
    ("C", 180, 70),
    ("D", 300, 50),
)


@dataclass(frozen=True)
class HeadwayMetrics:
    """Service regularity for one route direction."""

    avg_headway_secs: int
    headway_adherence_pct: float
    excess_wait_time_secs: int
    bunching_pct: float
    gapping_pct: float


# ---------------------------------------------------------------------------
# Headway metrics
# ---------------------------------------------------------------------------


def compute_headways(start_times_ms: Sequence[int]) -> list[float]:
    """Consecutive differences of sorted start times, in seconds."""
    return [(b - a) / 1000.0 for a, b in zip(start_times_ms, start_times_ms[1:])]


def compute_headway_metrics(
    start_times_ms: Sequence[int],
    scheduled_headway_secs: Optional[float] = None,
) -> Optional[HeadwayMetrics]:
    """Compute headway metrics from sorted trip start times (epoch ms).

    Formula
    -------
    AWT = sum(h^2) / (2 * sum(h))         expected wait, uniform arrivals
    SWT = reference_headway / 2
    EWT = max(0, AWT - SWT)

    The reference headway is ``scheduled_headway_secs`` when known. Without
    a timetable the median observed headway is used instead, so EWT,
    adherence, bunching and gapping then describe deviation from *typical*
    service on the day rather than deviation from plan. A route that runs
    infrequently but regularly scores well under this fallback.

    Returns ``None`` when fewer than two trips were observed.
    """
    if len(start_times_ms) < 2:
        return None

    headways = compute_headways(start_times_ms)
    count = len(headways)

    sum_h = sum(headways)
    sum_h2 = sum(h * h for h in headways)
    awt = sum_h2 / (2 * sum_h) if sum_h > 0 else 0.0

    if scheduled_headway_secs is not None and scheduled_headway_secs > 0:
        reference = float(scheduled_headway_secs)
    else:
        reference = sorted(headways)[count // 2]

    ewt = max(0.0, awt - reference / 2)
    adherent = sum(1 for h in headways if h <= reference + ADHERENCE_SLACK_SEC)
    bunched = sum(1 for h in headways if h < reference * BUNCHING_FACTOR)
    gapped = sum(1 for h in headways if h > reference * GAPPING_FACTOR)

    return HeadwayMetrics(
        avg_headway_secs=round(sum_h / count),
        headway_adherence_pct=round(adherent / count * 100, 1),
        excess_wait_time_secs=round(ewt),
        bunching_pct=round(bunched / count * 100, 1),
        gapping_pct=round(gapped / count * 100, 1),
    )


# ---------------------------------------------------------------------------
# Descriptive statistics
# ---------------------------------------------------------------------------


def percentile(values: Sequence[float], p: float) -> float:
    """Linear-interpolated percentile (``p`` in 0-100); 0 for an empty input."""
    if not values:
        return 0.0
    ordered = sorted(values)
    idx = (p / 100) * (len(ordered) - 1)
    lower = math.floor(idx)
    upper = math.ceil(idx)
    if lower == upper:
        return ordered[lower]
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (idx - lower)


def mean(values: Sequence[float]) -> Optional[float]:
    """Arithmetic mean, or ``None`` for an empty input."""
    if not values:
        return None
    return sum(values) / len(values)


def population_std_dev(values: Sequence[float]) -> float:
    """Population standard deviation; 0 for an empty input."""
    avg = mean(values)
    if avg is None:
        return 0.0
    return math.sqrt(sum((v - avg) ** 2 for v in values) / len(values))


# ---------------------------------------------------------------------------
# Grading
# ---------------------------------------------------------------------------


def _worse_grade(a: str, b: str) -> str:
    return GRADE_ORDER[max(GRADE_ORDER.index(a), GRADE_ORDER.index(b))]


def compute_grade(
    ewt: Optional[float],
    adherence: Optional[float],
    speed: Optional[float] = None,
    *,
    baseline_speed_kmh: float = BASELINE_COMMERCIAL_SPEED_KMH,
) -> str:
    """Letter grade A-F from EWT (s), headway adherence (%) and speed (km/h).

    The base grade comes from EWT and adherence. A commercial speed below
    85% of the network baseline caps the grade at C, below 65% at D. The
    cap only ever worsens a grade. Returns ``"N/A"`` without EWT or
    adherence.
    """
    if ewt is None or adherence is None:
        return NO_GRADE

    grade = "F"
    for candidate, max_ewt, min_adherence in _GRADE_THRESHOLDS:
        if ewt < max_ewt and adherence > min_adherence:
            grade = candidate
            break

    if speed is not None:
        if speed < baseline_speed_kmh * 0.65:
            grade = _worse_grade(grade, "D")
        elif speed < baseline_speed_kmh * 0.85:
            grade = _worse_grade(grade, "C")

    return grade
