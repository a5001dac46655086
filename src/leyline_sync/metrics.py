"""Process-scoped metrics for sync operations.

Counters, timings and error-pattern tallies used to compute success rates and
to rank remediation guidance. The collector is purely observational: a sync
behaves identically with or without one.

All state lives behind a single lock, so worker threads of the fetch pool can
record into one shared collector.
"""

import json
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

SEVERITY_ORDER = {"high": 0, "medium": 1, "low": 2}


class TimingRecord(BaseModel):
    """One completed timed operation."""

    operation: str
    duration_seconds: float
    success: bool = True
    timestamp: float = Field(default_factory=time.time)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class OperationStats(BaseModel):
    """Aggregate timing statistics for one operation name."""

    count: int
    success_rate_percent: float
    avg_duration_seconds: float
    min_duration_seconds: float
    max_duration_seconds: float
    total_duration_seconds: float


class ErrorPattern(BaseModel):
    """Frequency of one ``kind:component`` error pattern."""

    kind: str
    component: str
    occurrences: int


class RemediationHint(BaseModel):
    """Ranked, actionable guidance derived from recorded error patterns."""

    pattern: str
    occurrences: int
    severity: str
    recommendation: str
    action: str


class MetricsSummary(BaseModel):
    """Snapshot returned by ``MetricsCollector.summary``."""

    tool: str
    correlation_id: str
    duration_seconds: float
    total_operations: int
    successful_operations: int
    success_rate: float
    per_operation_stats: Dict[str, OperationStats] = Field(default_factory=dict)
    counters: Dict[str, int] = Field(default_factory=dict)
    top_error_patterns: List[ErrorPattern] = Field(default_factory=list)


def _counter_key(name: str, labels: Optional[Dict[str, str]]) -> str:
    if not labels:
        return name
    rendered = ",".join(f"{k}={labels[k]}" for k in sorted(labels))
    return f"{name}{{{rendered}}}"


class MetricsCollector:
    """Thread-safe collector of timings, counters and error patterns.

    Timers are keyed by ``(operation, key)``; ``key`` defaults to the calling
    thread so concurrent workers timing the same operation don't collide.
    """

    def __init__(self, tool_name: str = "leyline-sync", structured_logging: bool = False):
        self.tool_name = tool_name
        self.structured_logging = structured_logging
        self.correlation_id = str(uuid.uuid4())
        self.start_time = time.time()
        self._lock = threading.Lock()
        self._timers: Dict[Tuple[str, Any], float] = {}
        self._timings: List[TimingRecord] = []
        self._counters: Dict[str, int] = {}
        self._error_patterns: Dict[Tuple[str, str], int] = {}

    # ---- timing -------------------------------------------------------------

    def start_timer(self, operation: str, key: Any = None) -> None:
        """Start timing ``operation``."""
        timer_key = (operation, key if key is not None else threading.get_ident())
        with self._lock:
            self._timers[timer_key] = time.perf_counter()

    def end_timer(self, operation: str, success: bool = True, key: Any = None,
                  **metadata: Any) -> Optional[float]:
        """Stop a timer started with ``start_timer`` and record it.

        Returns:
            Elapsed seconds, or None if no matching timer was running
        """
        timer_key = (operation, key if key is not None else threading.get_ident())
        with self._lock:
            started = self._timers.pop(timer_key, None)
        if started is None:
            return None
        duration = time.perf_counter() - started
        self.record_timing(operation, duration, success=success, **metadata)
        return duration

    def record_timing(self, operation: str, duration_seconds: float, success: bool = True,
                      **metadata: Any) -> None:
        """Record an already-measured operation."""
        record = TimingRecord(
            operation=operation,
            duration_seconds=round(duration_seconds, 6),
            success=success,
            metadata=metadata,
        )
        with self._lock:
            self._timings.append(record)
        self._emit("performance_timing", record.model_dump())

    @contextmanager
    def timed(self, operation: str, **metadata: Any) -> Iterator[None]:
        """Time the enclosed block; an exception marks it unsuccessful and propagates."""
        started = time.perf_counter()
        success = True
        try:
            yield
        except BaseException:
            success = False
            raise
        finally:
            self.record_timing(operation, time.perf_counter() - started, success=success, **metadata)

    # ---- counters and errors ------------------------------------------------

    def increment_counter(self, name: str, value: int = 1,
                          labels: Optional[Dict[str, str]] = None) -> None:
        key = _counter_key(name, labels)
        with self._lock:
            self._counters[key] = self._counters.get(key, 0) + value

    def counter(self, name: str, labels: Optional[Dict[str, str]] = None) -> int:
        with self._lock:
            return self._counters.get(_counter_key(name, labels), 0)

    def record_error_pattern(self, kind: str, component: str,
                             context: Optional[Dict[str, Any]] = None) -> None:
        """Tally one occurrence of ``kind`` in ``component`` (e.g. a category)."""
        with self._lock:
            total = self._error_patterns.get((kind, component), 0) + 1
            self._error_patterns[(kind, component)] = total
        self._emit("error_pattern_recorded", {
            "error_type": kind,
            "component": component,
            "total_occurrences": total,
            "context": context or {},
        })

    # ---- reporting ----------------------------------------------------------

    def summary(self, top: int = 5) -> MetricsSummary:
        """Aggregate everything recorded so far."""
        with self._lock:
            timings = list(self._timings)
            counters = dict(self._counters)
            patterns = dict(self._error_patterns)

        total = len(timings)
        successful = sum(1 for t in timings if t.success)
        ranked = sorted(patterns.items(), key=lambda item: (-item[1], item[0]))

        return MetricsSummary(
            tool=self.tool_name,
            correlation_id=self.correlation_id,
            duration_seconds=round(time.time() - self.start_time, 3),
            total_operations=total,
            successful_operations=successful,
            success_rate=round(successful / total * 100, 2) if total else 0.0,
            per_operation_stats=self._operation_statistics(timings),
            counters=counters,
            top_error_patterns=[
                ErrorPattern(kind=kind, component=component, occurrences=count)
                for (kind, component), count in ranked[:top]
            ],
        )

    @staticmethod
    def _operation_statistics(timings: List[TimingRecord]) -> Dict[str, OperationStats]:
        grouped: Dict[str, List[TimingRecord]] = {}
        for t in timings:
            grouped.setdefault(t.operation, []).append(t)

        stats = {}
        for operation, records in grouped.items():
            durations = [r.duration_seconds for r in records]
            successes = sum(1 for r in records if r.success)
            stats[operation] = OperationStats(
                count=len(records),
                success_rate_percent=round(successes / len(records) * 100, 2),
                avg_duration_seconds=round(sum(durations) / len(durations), 6),
                min_duration_seconds=round(min(durations), 6),
                max_duration_seconds=round(max(durations), 6),
                total_duration_seconds=round(sum(durations), 6),
            )
        return stats

    def remediation_guidance(self) -> List[RemediationHint]:
        """Turn error patterns into ranked guidance (severity, then frequency)."""
        with self._lock:
            patterns = dict(self._error_patterns)

        hints = [self._hint_for(kind, component, count)
                 for (kind, component), count in patterns.items()]
        return sorted(hints, key=lambda h: (SEVERITY_ORDER[h.severity], -h.occurrences, h.pattern))

    @staticmethod
    def _hint_for(kind: str, component: str, count: int) -> RemediationHint:
        pattern = f"{kind}:{component}"
        if kind == "fetch_failed":
            return RemediationHint(
                pattern=pattern,
                occurrences=count,
                severity="high" if count > 1 else "medium",
                recommendation=f"Fetching '{component}' content keeps failing",
                action="Check network access to the repository, then re-run sync for that category",
            )
        if kind == "cache_corruption":
            return RemediationHint(
                pattern=pattern,
                occurrences=count,
                severity="high" if count > 3 else "medium",
                recommendation="Cache objects failed verification and were discarded",
                action="Check the disk holding the cache directory; run 'leyline-sync cache clear' if it persists",
            )
        if kind == "cache_unavailable":
            return RemediationHint(
                pattern=pattern,
                occurrences=count,
                severity="medium",
                recommendation="The cache could not be used and sync ran uncached",
                action="Check free space and permissions of the cache directory",
            )
        if kind == "state_write_failed":
            return RemediationHint(
                pattern=pattern,
                occurrences=count,
                severity="medium",
                recommendation="Sync state could not be saved; the next run re-derives its baseline",
                action="Check permissions of the target directory",
            )
        if kind == "conflict":
            return RemediationHint(
                pattern=pattern,
                occurrences=count,
                severity="low",
                recommendation=f"Local and remote both changed files in '{component}'",
                action="Review with 'leyline-sync diff', then keep local edits or re-run with --force",
            )
        return RemediationHint(
            pattern=pattern,
            occurrences=count,
            severity="low",
            recommendation=f"Review error pattern '{kind}' in '{component}'",
            action="Investigate root cause and implement targeted fix",
        )

    def to_json(self) -> str:
        return json.dumps(self.summary().model_dump(), indent=2)

    def save(self, output_dir: Path) -> Path:
        """Write the summary to ``output_dir`` and return the file path."""
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        stamp = datetime.fromtimestamp(self.start_time, tz=timezone.utc).strftime("%Y%m%d_%H%M%S")
        path = output_dir / f"{self.tool_name}_{stamp}_{self.correlation_id[:8]}.json"
        path.write_text(self.to_json())
        return path

    def _emit(self, event: str, data: Dict[str, Any]) -> None:
        if not self.structured_logging:
            return
        entry = {
            "event": event,
            "correlation_id": self.correlation_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "tool": self.tool_name,
            **data,
        }
        logger.info(json.dumps(entry, default=str))
