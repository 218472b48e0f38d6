"""
Metrics Collection for the Reconciliation Engine

Collects and exposes metrics for:
- Bill lifecycle (ingested, posted, reopened, voided)
- Matching (suggestions served/degraded, lines matched by reason)
- Alias learning (aliases created)
- Processing times (average, p95) per stage

Metrics are held in-memory per process.
"""

from collections import defaultdict
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List, Optional, Any
import statistics


# =============================================================================
# Metric Data Classes
# =============================================================================

@dataclass
class BillMetrics:
    """Bill lifecycle counters."""
    ingested: int = 0
    duplicates: int = 0
    posted: int = 0
    reopened: int = 0
    voided: int = 0
    posting_failures: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class MatchingMetrics:
    """Matching counters."""
    suggestions: int = 0
    degraded: int = 0
    aliases_created: int = 0
    matched_by_reason: Dict[str, int] = field(default_factory=lambda: defaultdict(int))


@dataclass
class TimingMetrics:
    """Processing time metrics."""
    samples: List[float] = field(default_factory=list)
    max_samples: int = 1000

    by_stage: Dict[str, List[float]] = field(default_factory=lambda: defaultdict(list))

    def add_sample(self, duration_ms: float, stage: str = None):
        """Add a timing sample."""
        self.samples.append(duration_ms)
        if len(self.samples) > self.max_samples:
            self.samples = self.samples[-self.max_samples:]

        if stage:
            self.by_stage[stage].append(duration_ms)
            if len(self.by_stage[stage]) > self.max_samples:
                self.by_stage[stage] = self.by_stage[stage][-self.max_samples:]

    def get_average(self, stage: str = None) -> float:
        """Get average processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        return statistics.mean(samples) if samples else 0.0

    def get_p95(self, stage: str = None) -> float:
        """Get 95th percentile processing time."""
        samples = self.by_stage.get(stage, []) if stage else self.samples
        if not samples:
            return 0.0
        sorted_samples = sorted(samples)
        idx = int(len(sorted_samples) * 0.95)
        return sorted_samples[min(idx, len(sorted_samples) - 1)]


# =============================================================================
# Metrics Collector (Singleton)
# =============================================================================

class MetricsCollector:
    """
    Thread-safe metrics collector for the reconciliation engine.

    Usage:
        metrics = MetricsCollector.instance()
        metrics.record_bill_posted()
        metrics.record_processing_time("post", 42.0)
    """

    _instance: Optional["MetricsCollector"] = None
    _lock = Lock()

    def __init__(self):
        self.bills = BillMetrics()
        self.matching = MatchingMetrics()
        self.timings = TimingMetrics()
        self._lock = Lock()

    @classmethod
    def instance(cls) -> "MetricsCollector":
        """Get singleton instance."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = cls()
        return cls._instance

    def reset(self) -> None:
        """Clear all counters (for testing)."""
        with self._lock:
            self.bills = BillMetrics()
            self.matching = MatchingMetrics()
            self.timings = TimingMetrics()

    # =========================================================================
    # Bill Metrics
    # =========================================================================

    def record_bill_ingested(self, duplicate: bool = False):
        with self._lock:
            if duplicate:
                self.bills.duplicates += 1
            else:
                self.bills.ingested += 1

    def record_bill_posted(self, duration_ms: float = None):
        with self._lock:
            self.bills.posted += 1
            if duration_ms is not None:
                self.timings.add_sample(duration_ms, "post")

    def record_posting_failed(self, error_code: str):
        with self._lock:
            self.bills.posting_failures[error_code] += 1

    def record_bill_reopened(self):
        with self._lock:
            self.bills.reopened += 1

    def record_bill_voided(self):
        with self._lock:
            self.bills.voided += 1

    # =========================================================================
    # Matching Metrics
    # =========================================================================

    def record_suggestion(self, degraded: bool = False, duration_ms: float = None):
        """Record a served suggestion request."""
        with self._lock:
            self.matching.suggestions += 1
            if degraded:
                self.matching.degraded += 1
            if duration_ms is not None:
                self.timings.add_sample(duration_ms, "suggest")

    def record_line_matched(self, reason: str, count: int = 1):
        with self._lock:
            self.matching.matched_by_reason[reason] += count

    def record_alias_created(self):
        with self._lock:
            self.matching.aliases_created += 1

    # =========================================================================
    # Timing Metrics
    # =========================================================================

    def record_processing_time(self, stage: str, duration_ms: float):
        """Record a processing time sample."""
        with self._lock:
            self.timings.add_sample(duration_ms, stage)

    def get_timing_stats(self, stage: str = None) -> Dict[str, float]:
        """Get timing statistics for a stage."""
        with self._lock:
            return {
                "average_ms": self.timings.get_average(stage),
                "p95_ms": self.timings.get_p95(stage),
                "sample_count": len(self.timings.by_stage.get(stage, []) if stage else self.timings.samples),
            }

    # =========================================================================
    # Summary
    # =========================================================================

    def get_summary(self) -> Dict[str, Any]:
        """Get a summary of all metrics."""
        with self._lock:
            return {
                "bills": {
                    "ingested": self.bills.ingested,
                    "duplicates": self.bills.duplicates,
                    "posted": self.bills.posted,
                    "reopened": self.bills.reopened,
                    "voided": self.bills.voided,
                    "posting_failures": dict(self.bills.posting_failures),
                },
                "matching": {
                    "suggestions": self.matching.suggestions,
                    "degraded": self.matching.degraded,
                    "aliases_created": self.matching.aliases_created,
                    "matched_by_reason": dict(self.matching.matched_by_reason),
                },
                "timings": {
                    "overall": {
                        "average_ms": self.timings.get_average(),
                        "p95_ms": self.timings.get_p95(),
                    },
                    "by_stage": {
                        stage: {
                            "average_ms": self.timings.get_average(stage),
                            "p95_ms": self.timings.get_p95(stage),
                        }
                        for stage in self.timings.by_stage.keys()
                    },
                },
            }


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return MetricsCollector.instance()


def record_processing_time(stage: str, duration_ms: float):
    """Record a processing time sample."""
    get_metrics().record_processing_time(stage, duration_ms)
