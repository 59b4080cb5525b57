"""Critique score tracking across a session: per-round averages, spread and trend."""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum

from thinktank.models import Round

logger = logging.getLogger(__name__)

# Average score change (points out of 100) that counts as movement between rounds.
TREND_MARGIN = 5.0
_TREND_WINDOW = 3


class QualityTrend(str, Enum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"
    UNKNOWN = "unknown"


@dataclass
class QualitySnapshot:
    round_number: int
    average_score: float
    std_dev: float
    critique_count: int
    trend: QualityTrend = QualityTrend.UNKNOWN


@dataclass
class QualityReport:
    current_score: float = 0.0
    average_score: float = 0.0
    snapshots_count: int = 0
    overall_trend: QualityTrend = QualityTrend.UNKNOWN
    history: list[QualitySnapshot] = field(default_factory=list)

    def to_markdown(self) -> str:
        lines = [
            "## Quality Report",
            "",
            f"**Current Score:** {self.current_score:.0f}/100",
            f"**Average Score:** {self.average_score:.0f}/100",
            f"**Trend:** {self.overall_trend.value}",
            "",
        ]
        if self.history:
            lines += ["| Round | Critiques | Average | Std dev | Trend |", "|---|---|---|---|---|"]
            lines += [
                f"| {s.round_number} | {s.critique_count} | {s.average_score:.1f} | {s.std_dev:.1f} | {s.trend.value} |"
                for s in self.history
            ]
            lines.append("")
        return "\n".join(lines)


class QualityTracker:
    """Collects one snapshot per critique round that produced scores."""

    def __init__(self) -> None:
        self.snapshots: list[QualitySnapshot] = []

    def record_round(self, rnd: Round) -> QualitySnapshot | None:
        """Snapshot the critique scores of ``rnd``. Returns None when it has none."""
        scores = [
            c.opinion.score
            for c in rnd.successful_contributions()
            if c.opinion is not None and c.opinion.score is not None
        ]
        if not scores:
            logger.debug("Round %d has no critique scores", rnd.number)
            return None

        average = sum(scores) / len(scores)
        variance = sum((s - average) ** 2 for s in scores) / len(scores)
        snapshot = QualitySnapshot(
            round_number=rnd.number,
            average_score=average,
            std_dev=math.sqrt(variance),
            critique_count=len(scores),
            trend=self._trend_against_previous(average),
        )
        self.snapshots.append(snapshot)
        logger.info("Round %d quality: %.1f (%s)", rnd.number, average, snapshot.trend.value)
        return snapshot

    def _trend_against_previous(self, average: float) -> QualityTrend:
        if not self.snapshots:
            return QualityTrend.UNKNOWN
        diff = average - self.snapshots[-1].average_score
        if diff > TREND_MARGIN:
            return QualityTrend.IMPROVING
        if diff < -TREND_MARGIN:
            return QualityTrend.DECLINING
        return QualityTrend.STABLE

    def latest(self) -> QualitySnapshot | None:
        return self.snapshots[-1] if self.snapshots else None

    def meets_threshold(self, threshold: float) -> bool:
        latest = self.latest()
        return latest is not None and latest.average_score >= threshold

    def overall_trend(self) -> QualityTrend:
        """Monotonic direction of the last three snapshots, else stable."""
        if len(self.snapshots) < _TREND_WINDOW:
            return QualityTrend.UNKNOWN
        recent = [s.average_score for s in self.snapshots[-_TREND_WINDOW:]]
        pairs = list(zip(recent, recent[1:]))
        if all(later >= earlier for earlier, later in pairs):
            return QualityTrend.IMPROVING
        if all(later <= earlier for earlier, later in pairs):
            return QualityTrend.DECLINING
        return QualityTrend.STABLE

    def report(self) -> QualityReport:
        if not self.snapshots:
            return QualityReport()
        return QualityReport(
            current_score=self.snapshots[-1].average_score,
            average_score=sum(s.average_score for s in self.snapshots) / len(self.snapshots),
            snapshots_count=len(self.snapshots),
            overall_trend=self.overall_trend(),
            history=list(self.snapshots),
        )
