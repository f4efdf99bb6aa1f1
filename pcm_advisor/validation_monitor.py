"""
Validation Monitor

Append-only log of validation outcomes with rolling aggregates:
- success/failure counts and success rate (percent)
- average stage duration (milliseconds)
- error counts by severity
- frequency-ranked error-code patterns with a few example messages

History is bounded; the oldest entries fall off first. Instances are
constructed explicitly and passed to whoever records into them, so tests
get a fresh monitor instead of resetting a shared one.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Deque, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import Severity, ValidationError, ValidationResult, ValidationStage, ValidationWarning

logger = logging.getLogger(__name__)

SUCCESS_TARGET_PCT = 99.0
MAX_FAILURES = 1000
MAX_VALIDATIONS = 10000
MAX_PATTERN_EXAMPLES = 5
REPORT_WIDTH = 80


class ValidationMetrics(BaseModel):
    total_validations: int = 0
    successful_validations: int = 0
    failed_validations: int = 0
    success_rate: float = 0.0
    critical_errors: int = 0
    errors: int = 0
    warnings: int = 0
    average_validation_time: float = 0.0


class ValidationFailure(BaseModel):
    timestamp: datetime
    stage: ValidationStage
    query: Optional[str] = None
    errors: List[ValidationError] = Field(default_factory=list)
    warnings: List[ValidationWarning] = Field(default_factory=list)
    context: Optional[Dict[str, Any]] = None


class ValidationPattern(BaseModel):
    error_code: str
    frequency: int = 0
    first_seen: datetime
    last_seen: datetime
    examples: List[str] = Field(default_factory=list)


@dataclass
class _ValidationRecord:
    success: bool
    duration_ms: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ValidationMonitor:
    """
    Usage:
        monitor = ValidationMonitor()
        monitor.record_validation(ValidationStage.POST_RESPONSE, result, 3.2, {"query": q})
        print(monitor.generate_report())
    """

    def __init__(self, max_failures: int = MAX_FAILURES, max_validations: int = MAX_VALIDATIONS, clock=None):
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._failures: Deque[ValidationFailure] = deque(maxlen=max_failures)
        self._validations: Deque[_ValidationRecord] = deque(maxlen=max_validations)
        self._patterns: Dict[str, ValidationPattern] = {}

    # ─────────────────────────────────────────────────────────────────────────
    # Recording
    # ─────────────────────────────────────────────────────────────────────────

    def record_validation(
        self,
        stage: ValidationStage,
        result: ValidationResult,
        duration_ms: float,
        context: Optional[Dict[str, Any]] = None
    ) -> None:
        timestamp = self._clock()
        stage = ValidationStage(stage)

        with self._lock:
            self._validations.append(_ValidationRecord(result.valid, duration_ms, timestamp))

            if not result.valid or result.errors:
                self._failures.append(ValidationFailure(
                    timestamp=timestamp,
                    stage=stage,
                    query=(context or {}).get("query"),
                    errors=list(result.errors),
                    warnings=list(result.warnings),
                    context=context,
                ))
                for error in result.errors:
                    self._update_pattern(error.code, error.message, timestamp)

            for warning in result.warnings:
                self._update_pattern(warning.code, warning.message, timestamp)

        if result.critical_errors:
            logger.warning(
                f"Critical validation failure at {stage.value}",
                extra={"stage": stage.value, "error_codes": result.error_codes()}
            )

    def _update_pattern(self, code: str, message: Optional[str], timestamp: datetime) -> None:
        pattern = self._patterns.get(code)
        if pattern is None:
            self._patterns[code] = ValidationPattern(
                error_code=code,
                frequency=1,
                first_seen=timestamp,
                last_seen=timestamp,
                examples=[message] if message else [],
            )
            return

        pattern.frequency += 1
        pattern.last_seen = timestamp
        if message and len(pattern.examples) < MAX_PATTERN_EXAMPLES:
            pattern.examples.append(message)

    # ─────────────────────────────────────────────────────────────────────────
    # Aggregates
    # ─────────────────────────────────────────────────────────────────────────

    def _cutoff(self, window_seconds: Optional[float]) -> Optional[datetime]:
        if not window_seconds:
            return None
        return self._clock() - timedelta(seconds=window_seconds)

    def get_metrics(self, window_seconds: Optional[float] = None) -> ValidationMetrics:
        cutoff = self._cutoff(window_seconds)
        with self._lock:
            validations = [v for v in self._validations if cutoff is None or v.timestamp >= cutoff]
            failures = [f for f in self._failures if cutoff is None or f.timestamp >= cutoff]

        total = len(validations)
        successful = sum(1 for v in validations if v.success)

        critical = errors = warnings = 0
        for failure in failures:
            critical += sum(1 for e in failure.errors if e.severity == Severity.CRITICAL)
            errors += sum(1 for e in failure.errors if e.severity == Severity.ERROR)
            warnings += len(failure.warnings)

        return ValidationMetrics(
            total_validations=total,
            successful_validations=successful,
            failed_validations=total - successful,
            success_rate=(successful / total) * 100 if total else 0.0,
            critical_errors=critical,
            errors=errors,
            warnings=warnings,
            average_validation_time=sum(v.duration_ms for v in validations) / total if total else 0.0,
        )

    def get_patterns(self, min_frequency: int = 2) -> List[ValidationPattern]:
        with self._lock:
            patterns = [p.model_copy(deep=True) for p in self._patterns.values() if p.frequency >= min_frequency]
        return sorted(patterns, key=lambda p: p.frequency, reverse=True)

    def get_recent_failures(self, limit: int = 10) -> List[ValidationFailure]:
        """Most recent first."""
        with self._lock:
            failures = list(self._failures)
        return list(reversed(failures[-limit:])) if limit > 0 else []

    def get_failures_by_stage(self, stage: ValidationStage) -> List[ValidationFailure]:
        stage = ValidationStage(stage)
        with self._lock:
            return [f for f in self._failures if f.stage == stage]

    def get_failure_rate_by_stage(self) -> Dict[str, float]:
        """Failures per stage as a percentage of all recorded validations."""
        with self._lock:
            total = len(self._validations)
            counts = {stage.value: 0 for stage in ValidationStage}
            for failure in self._failures:
                counts[failure.stage.value] += 1
        return {stage: (count / total) * 100 if total else 0.0 for stage, count in counts.items()}

    def meets_success_target(self, threshold_pct: float = SUCCESS_TARGET_PCT,
                             window_seconds: Optional[float] = None) -> bool:
        return self.get_metrics(window_seconds).success_rate >= threshold_pct

    # ─────────────────────────────────────────────────────────────────────────
    # Reporting
    # ─────────────────────────────────────────────────────────────────────────

    def generate_report(self, window_seconds: Optional[float] = None) -> str:
        metrics = self.get_metrics(window_seconds)
        patterns = self.get_patterns()
        recent = self.get_recent_failures(5)
        target_met = metrics.success_rate >= SUCCESS_TARGET_PCT
        rule = "=" * REPORT_WIDTH

        lines = [
            rule,
            "VALIDATION MONITORING REPORT",
            rule,
            "",
            "METRICS:",
            f"  Total Validations: {metrics.total_validations}",
            f"  Successful: {metrics.successful_validations}",
            f"  Failed: {metrics.failed_validations}",
            f"  Success Rate: {metrics.success_rate:.2f}%",
            f"  Critical Errors: {metrics.critical_errors}",
            f"  Errors: {metrics.errors}",
            f"  Warnings: {metrics.warnings}",
            f"  Avg Validation Time: {metrics.average_validation_time:.2f}ms",
            "",
            f"TARGET (99%): {'✓ MET' if target_met else '✗ NOT MET'}",
            "",
        ]

        if patterns:
            lines.append("TOP ERROR PATTERNS:")
            for pattern in patterns[:5]:
                lines.append(f"  {pattern.error_code}: {pattern.frequency} occurrences")
                if pattern.examples:
                    lines.append(f"    Example: {pattern.examples[0][:60]}...")
            lines.append("")

        if recent:
            lines.append("RECENT FAILURES:")
            for failure in recent:
                lines.append(f"  [{failure.timestamp.isoformat()}] {failure.stage.value}")
                if failure.query:
                    lines.append(f"    Query: {failure.query[:60]}...")
                for error in failure.errors[:2]:
                    lines.append(f"    {error.severity.value.upper()}: {error.code} - {error.message}")
            lines.append("")

        lines.append(rule)
        return "\n".join(lines)

    def clear(self) -> None:
        with self._lock:
            self._failures.clear()
            self._validations.clear()
            self._patterns.clear()
        logger.info("Validation monitor cleared")

    def export_metrics(self) -> Dict[str, Any]:
        """JSON-ready snapshot for external scraping."""
        return {
            "metrics": self.get_metrics().model_dump(),
            "patterns": [p.model_dump(mode="json") for p in self.get_patterns()],
            "recent_failures": [f.model_dump(mode="json") for f in self.get_recent_failures(20)],
        }
