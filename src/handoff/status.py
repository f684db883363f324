from __future__ import annotations

import time
from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .audit import AuditLog
from .safety.telemetry import read_events
from .types import GateAction


@dataclass(frozen=True)
class StatusWindow:
    seconds: float


def _p(values: list[float], pct: float) -> float | None:
    if not values:
        return None
    s = sorted(values)
    if pct <= 0:
        return float(s[0])
    if pct >= 100:
        return float(s[-1])
    idx = int(round((pct / 100.0) * (len(s) - 1)))
    return float(s[max(0, min(len(s) - 1, idx))])


def _telemetry_metrics(path: Path, cutoff: float) -> dict[str, Any]:
    recent = [e for e in read_events(path) if float(e.get("timestamp", 0.0) or 0.0) >= cutoff]
    counts = Counter(str(e.get("type")) for e in recent)

    # Delegation latencies from started->completed (match by run_id).
    starts: dict[str, float] = {}
    latencies: list[float] = []
    snapshot_ms: list[float] = []
    for e in recent:
        rid = str(e.get("run_id") or "")
        ts = float(e.get("timestamp", 0.0) or 0.0)
        if e.get("type") == "delegation_started":
            starts[rid] = ts
        elif e.get("type") == "delegation_completed" and rid in starts:
            latencies.append(max(0.0, ts - starts[rid]))
        elif e.get("type") == "snapshot_completed":
            try:
                snapshot_ms.append(float((e.get("data") or {}).get("elapsed_ms", 0.0)))
            except (TypeError, ValueError):
                continue

    return {
        "delegations": counts["delegation_completed"],
        "workers_unavailable": counts["worker_unavailable"],
        "responses_coerced": counts["response_coerced"],
        "audit_write_failures": counts["audit_write_failed"],
        "delegation_latency_s_p50": _p(latencies, 50.0),
        "delegation_latency_s_p95": _p(latencies, 95.0),
        "snapshot_ms_p95": _p(snapshot_ms, 95.0),
    }


def compute_status(
    audit_path: Path,
    *,
    window: StatusWindow | None = None,
    telemetry_path: Path | None = None,
) -> dict[str, Any]:
    """Summarize gate decisions (and telemetry, when given) over a time window."""
    window = window or StatusWindow(seconds=3600.0)
    cutoff = time.time() - float(window.seconds)

    decisions = list(AuditLog(audit_path).records())
    recent = [d for d in decisions if d.timestamp >= cutoff]
    by_action = Counter(d.action.value for d in recent)

    # Terminal decisions only; research_triggered is an intermediate step.
    terminal = sum(
        n for action, n in by_action.items() if action != GateAction.RESEARCH_TRIGGERED.value
    )
    auto = by_action[GateAction.AUTO_PROCEED.value]

    status: dict[str, Any] = {
        "window_seconds": window.seconds,
        "audit_path": str(audit_path),
        "decisions_by_action": {a.value: by_action[a.value] for a in GateAction},
        "auto_proceed_rate": (auto / terminal) if terminal else None,
        "research_triggered": by_action[GateAction.RESEARCH_TRIGGERED.value],
        "cancelled": by_action[GateAction.CANCELLED.value],
        "last_decision": decisions[-1].to_record() if decisions else None,
    }
    if telemetry_path is not None:
        status["telemetry"] = _telemetry_metrics(telemetry_path, cutoff)
    return status
