"""Simple in-memory metrics for loop runs, polls and queue activity."""

from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class ThreadLoopMetrics:
    """Counters for one thread's loop."""
    runs: int = 0
    run_errors: int = 0
    run_cancelled: int = 0
    polls: int = 0
    poll_errors: int = 0
    poll_matches: int = 0
    events_enqueued: int = 0
    events_merged: int = 0
    events_dropped: int = 0
    run_latencies: List[float] = field(default_factory=list)


class MetricsCollector:
    """Collector for loop metrics, keyed by thread id."""

    def __init__(self):
        self._threads: Dict[str, ThreadLoopMetrics] = {}
        self._max_samples = 1000

    def _get(self, thread_id: str) -> ThreadLoopMetrics:
        if thread_id not in self._threads:
            self._threads[thread_id] = ThreadLoopMetrics()
        return self._threads[thread_id]

    def record_run(self, thread_id: str, latency_sec: float, error: bool = False) -> None:
        m = self._get(thread_id)
        m.runs += 1
        if error:
            m.run_errors += 1
        else:
            m.run_latencies.append(latency_sec)
            if len(m.run_latencies) > self._max_samples:
                m.run_latencies.pop(0)

    def record_cancelled(self, thread_id: str) -> None:
        self._get(thread_id).run_cancelled += 1

    def record_poll(self, thread_id: str, matched: bool = False, error: bool = False) -> None:
        m = self._get(thread_id)
        m.polls += 1
        if error:
            m.poll_errors += 1
        elif matched:
            m.poll_matches += 1

    def record_enqueue(self, thread_id: str, merged: bool = False, dropped: bool = False) -> None:
        m = self._get(thread_id)
        if dropped:
            m.events_dropped += 1
            return
        m.events_enqueued += 1
        if merged:
            m.events_merged += 1

    def _snapshot(self, m: ThreadLoopMetrics) -> Dict:
        latencies = m.run_latencies[-100:]
        return {
            "runs": m.runs,
            "run_errors": m.run_errors,
            "run_cancelled": m.run_cancelled,
            "error_rate": m.run_errors / m.runs if m.runs else 0,
            "latency_mean_sec": sum(latencies) / len(latencies) if latencies else 0,
            "polls": m.polls,
            "poll_errors": m.poll_errors,
            "poll_matches": m.poll_matches,
            "events_enqueued": m.events_enqueued,
            "events_merged": m.events_merged,
            "events_dropped": m.events_dropped,
        }

    def get_stats(self, thread_id: Optional[str] = None) -> Dict:
        """Return current metrics snapshot for one thread or all of them."""
        if thread_id is not None:
            return self._snapshot(self._get(thread_id))
        return {tid: self._snapshot(m) for tid, m in self._threads.items()}

    def reset(self) -> None:
        self._threads.clear()
