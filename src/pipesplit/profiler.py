"""
Per-rank timing for pipeline stages.

Every blocking call a stage makes is timed under an event name. Names are
grouped into categories by prefix (compute_*, send_*/recv_*, update) and an
update cycle's wall time minus the time in those categories is what the rank
spent idle, waiting on its neighbours.
"""

import time
from collections import defaultdict
from contextlib import contextmanager

# event-name prefix -> category
CATEGORIES = {
    "compute": "compute",
    "send": "comm",
    "recv": "comm",
    "update": "update",
}


def category_of(name: str) -> str | None:
    """Category of event `name`, or None for events outside the split."""
    return CATEGORIES.get(name.split("_", 1)[0])


class PipelineProfiler:
    """
    Accumulates event durations and update-cycle wall times for one rank.

    Usage:
        profiler = PipelineProfiler()
        profiler.start_step()
        with profiler.track("compute_fwd"):
            ... do work ...
        profiler.stop_step()

        stats = profiler.get_stats()
    """

    def __init__(self):
        self._durations: dict[str, list[float]] = defaultdict(list)
        self._open: dict[str, float] = {}
        self.step_start: float | None = None
        self.step_times: list[float] = []

    # ─── Events ──────────────────────────────────────────────────────────

    def start(self, name: str) -> None:
        self._open[name] = time.perf_counter()

    def stop(self, name: str) -> None:
        """Close event `name`; a stop without a matching start is ignored."""
        began = self._open.pop(name, None)
        if began is not None:
            self._durations[name].append(time.perf_counter() - began)

    @contextmanager
    def track(self, name: str):
        """Time the enclosed block as event `name`, even if it raises."""
        self.start(name)
        try:
            yield
        finally:
            self.stop(name)

    def total(self, name: str) -> float:
        return sum(self._durations.get(name, ()))

    def count(self, name: str) -> int:
        return len(self._durations.get(name, ()))

    def summary(self) -> dict[str, dict[str, float]]:
        """Per-event total, count and mean duration in seconds."""
        return {
            name: {"total": sum(times), "count": len(times), "mean": sum(times) / len(times)}
            for name, times in sorted(self._durations.items())
            if times
        }

    # ─── Update cycles ───────────────────────────────────────────────────

    def start_step(self) -> None:
        """Mark the start of one update cycle (M micro-batches)."""
        self.step_start = time.perf_counter()

    def stop_step(self) -> None:
        if self.step_start is not None:
            self.step_times.append(time.perf_counter() - self.step_start)
            self.step_start = None

    @contextmanager
    def excluded(self):
        """Keep the enclosed block out of the open update cycle's wall time."""
        began = time.perf_counter()
        try:
            yield
        finally:
            if self.step_start is not None:
                self.step_start += time.perf_counter() - began

    # ─── Aggregates ──────────────────────────────────────────────────────

    def get_stats(self) -> dict:
        """
        Split this rank's time into compute, communication, update and idle.

        Total time is the summed update-cycle wall time when cycles were
        marked, otherwise the summed event time (and idle is then zero).

        Returns:
            dict with keys: compute_time, comm_time, update_time, idle_time,
                           total_time, compute_pct, comm_pct, update_pct, idle_pct,
                           num_steps, events
        """
        by_category = defaultdict(float)
        for name, times in self._durations.items():
            category = category_of(name)
            if category is not None:
                by_category[category] += sum(times)

        busy = sum(by_category.values())
        total = sum(self.step_times) if self.step_times else busy
        idle = max(0.0, total - busy)

        def pct(part: float) -> float:
            return part / total * 100 if total > 0 else 0.0

        return {
            "compute_time": by_category["compute"],
            "comm_time": by_category["comm"],
            "update_time": by_category["update"],
            "idle_time": idle,
            "total_time": total,
            "compute_pct": pct(by_category["compute"]),
            "comm_pct": pct(by_category["comm"]),
            "update_pct": pct(by_category["update"]),
            "idle_pct": pct(idle),
            "num_steps": len(self.step_times),
            "events": self.summary(),
        }

    def reset(self) -> None:
        self._durations.clear()
        self._open.clear()
        self.step_times.clear()
        self.step_start = None
