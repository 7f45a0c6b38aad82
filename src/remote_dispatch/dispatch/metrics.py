"""Run report and operator-facing rendering for dispatch runs."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from remote_dispatch.dispatch.models import Failure, Result, Task


@dataclass(slots=True)
class LatencyPercentiles:
    """Worker wall-clock percentiles for one run."""

    sample_size: int
    p50_seconds: float
    p90_seconds: float
    p99_seconds: float


@dataclass(slots=True)
class DispatchReport:
    """Complete partition of one run's tasks into successes and failures."""

    total: int
    successes: dict[str, Any] = field(default_factory=dict)
    failures: dict[str, Failure] = field(default_factory=dict)
    durations: dict[str, float] = field(default_factory=dict)
    elapsed_seconds: float = 0.0
    max_in_flight: int = 0
    cancelled: bool = False

    @property
    def completed(self) -> int:
        return len(self.successes) + len(self.failures)

    @property
    def failed(self) -> int:
        return len(self.failures)

    def error_kind_counts(self) -> dict[str, int]:
        counts = Counter(failure.error_kind.value for failure in self.failures.values())
        return dict(sorted(counts.items()))

    def failed_task_ids(self) -> list[str]:
        """Task ids to feed back into a follow-up run, if the caller wants one."""

        return list(self.failures)

    def latency(self) -> LatencyPercentiles:
        values = list(self.durations.values())
        return LatencyPercentiles(
            sample_size=len(values),
            p50_seconds=_percentile(values, 0.50),
            p90_seconds=_percentile(values, 0.90),
            p99_seconds=_percentile(values, 0.99),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": len(self.successes),
            "failed": len(self.failures),
            "cancelled": self.cancelled,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "max_in_flight": self.max_in_flight,
            "error_kinds": self.error_kind_counts(),
            "successes": self.successes,
            "failures": {
                task_id: {"error": failure.error_kind.value, "detail": failure.detail}
                for task_id, failure in self.failures.items()
            },
        }


def format_progress_line(
    *,
    completed: int,
    total: int,
    failed: int,
    task: Task | None = None,
    result: Result | None = None,
) -> str:
    """Render one progress line after a worker has been reaped."""

    percent = int(round(completed / total * 100)) if total else 100
    line = f"Progress: {percent}% ({completed}/{total}) failed={failed}"
    if task is None or result is None:
        return line
    target = task.target
    where = target.target_id if not target.target_url else f"{target.target_id} {target.target_url}"
    if isinstance(result, Failure):
        return f"{line} | {where} | FAILED {result.error_kind.value}: {_one_line(result.detail)}"
    return f"{line} | {where} | ok"


def render_report_lines(report: DispatchReport, *, max_failures: int = 50) -> list[str]:
    """Render the end-of-run summary for CLI output."""

    latency = report.latency()
    lines = [
        (
            f"Dispatch {'cancelled' if report.cancelled else 'finished'}: "
            f"total={report.total} succeeded={len(report.successes)} failed={report.failed}"
        ),
        "Failures by kind: " + (_fmt_key_value(report.error_kind_counts()) or "none"),
        f"Peak concurrency: {report.max_in_flight}",
        (
            f"Worker latency: n={latency.sample_size} p50={latency.p50_seconds:.2f}s "
            f"p90={latency.p90_seconds:.2f}s p99={latency.p99_seconds:.2f}s"
        ),
        f"Total execution time: {format_duration(report.elapsed_seconds)}",
    ]
    if report.failures:
        lines.append("Failed tasks:")
        for task_id, failure in list(report.failures.items())[:max_failures]:
            lines.append(
                f"  - {task_id}: {failure.error_kind.value} {_one_line(failure.detail)}",
            )
        hidden = len(report.failures) - max_failures
        if hidden > 0:
            lines.append(f"  ... and {hidden} more")
    return lines


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS."""

    total = int(round(max(0.0, seconds)))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def _one_line(text: str, limit: int = 160) -> str:
    compact = " ".join(text.split())
    if len(compact) <= limit:
        return compact
    return compact[: limit - 3] + "..."


def _fmt_key_value(values: dict[str, int]) -> str:
    if not values:
        return ""
    return " ".join(f"{key}={values[key]}" for key in sorted(values))


def _percentile(values: list[float], percentile: float) -> float:
    if not values:
        return 0.0
    sorted_values = sorted(values)
    if len(sorted_values) == 1:
        return sorted_values[0]
    rank = (len(sorted_values) - 1) * percentile
    lower = int(rank)
    upper = min(lower + 1, len(sorted_values) - 1)
    weight = rank - lower
    return sorted_values[lower] * (1.0 - weight) + sorted_values[upper] * weight
