"""In-process metrics for the workflow engine.

Run outcomes, step attempts, running executions and run durations, rendered
in Prometheus text exposition format by ``generate_metrics``.
"""

import threading
import time
from collections import defaultdict
from typing import Optional

EXECUTIONS_TOTAL = "workflow_executions_total"
STEP_ATTEMPTS_TOTAL = "workflow_step_attempts_total"
EXECUTIONS_RUNNING = "workflow_executions_running"
EXECUTION_DURATION = "workflow_execution_duration_seconds"

HELP = {
    EXECUTIONS_TOTAL: "Executions that reached a terminal status.",
    STEP_ATTEMPTS_TOTAL: "Step handler invocations, retries included.",
    EXECUTIONS_RUNNING: "Executions currently running.",
    EXECUTION_DURATION: "Wall-clock duration of finished executions.",
}

_lock = threading.Lock()
_counters: dict[str, float] = defaultdict(float)
_gauges: dict[str, float] = defaultdict(float)
# key -> [count, sum]
_summaries: dict[str, list[float]] = defaultdict(lambda: [0, 0.0])
_start_time = time.time()


def _key(name: str, labels: Optional[dict] = None) -> str:
    if not labels:
        return name
    rendered = ",".join(f'{k}="{v}"' for k, v in sorted(labels.items()))
    return f"{name}{{{rendered}}}"


def inc(name: str, value: float = 1.0, labels: Optional[dict] = None) -> None:
    with _lock:
        _counters[_key(name, labels)] += value


def gauge_inc(name: str, value: float = 1.0, labels: Optional[dict] = None) -> None:
    with _lock:
        _gauges[_key(name, labels)] += value


def observe(name: str, value: float, labels: Optional[dict] = None) -> None:
    with _lock:
        entry = _summaries[_key(name, labels)]
        entry[0] += 1
        entry[1] += value


def get_counter(name: str, labels: Optional[dict] = None) -> float:
    with _lock:
        return _counters.get(_key(name, labels), 0.0)


def get_gauge(name: str, labels: Optional[dict] = None) -> float:
    with _lock:
        return _gauges.get(_key(name, labels), 0.0)


def reset() -> None:
    with _lock:
        _counters.clear()
        _gauges.clear()
        _summaries.clear()


def record_run_started() -> None:
    gauge_inc(EXECUTIONS_RUNNING)


def record_run_finished(status: str, duration_seconds: Optional[float], was_running: bool) -> None:
    inc(EXECUTIONS_TOTAL, labels={"status": status})
    if was_running:
        gauge_inc(EXECUTIONS_RUNNING, -1)
    if duration_seconds is not None:
        observe(EXECUTION_DURATION, duration_seconds)


def record_step_attempt(step_type: str) -> None:
    inc(STEP_ATTEMPTS_TOTAL, labels={"step_type": step_type})


def _family(lines: list[str], name: str, kind: str) -> None:
    if name in HELP:
        lines.append(f"# HELP {name} {HELP[name]}")
    lines.append(f"# TYPE {name} {kind}")


def generate_metrics() -> str:
    """Render every metric in Prometheus text exposition format."""
    lines = [
        "# HELP workflow_uptime_seconds Seconds since the engine process started.",
        "# TYPE workflow_uptime_seconds gauge",
        f"workflow_uptime_seconds {time.time() - _start_time:.1f}",
    ]

    with _lock:
        for kind, store in (("counter", _counters), ("gauge", _gauges)):
            current = None
            for key, value in sorted(store.items()):
                name = key.split("{", 1)[0]
                if name != current:
                    _family(lines, name, kind)
                    current = name
                lines.append(f"{key} {value}")

        current = None
        for key, (count, total) in sorted(_summaries.items()):
            name = key.split("{", 1)[0]
            if name != current:
                _family(lines, name, "summary")
                current = name
            lines.append(f"{key}_count {count}")
            lines.append(f"{key}_sum {total:.4f}")

    return "\n".join(lines) + "\n"
