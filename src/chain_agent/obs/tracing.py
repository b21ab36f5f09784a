"""Per-request chain tracing and aggregate metrics."""

from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

from chain_agent.types import ToolTrace


@dataclass(slots=True)
class ChainTraceRecord:
    trace_id: str
    timestamp_utc: str
    request: str
    requester_id: str
    outcome: str
    success: bool
    tools: list[str]
    tool_traces: list[ToolTrace]
    planner_round_trips: int
    latency_ms: float


class TraceStore:
    """In-memory trace storage for API-level observability."""

    def __init__(self, *, max_records: int = 1000) -> None:
        self._records: dict[str, ChainTraceRecord] = {}
        self._max_records = max_records
        self._lock = threading.Lock()

    def create_record(
        self,
        *,
        request: str,
        requester_id: str,
        outcome: str,
        success: bool,
        tools: list[str],
        tool_traces: list[ToolTrace],
        planner_round_trips: int,
        latency_ms: float,
    ) -> ChainTraceRecord:
        record = ChainTraceRecord(
            trace_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            request=request,
            requester_id=requester_id,
            outcome=outcome,
            success=success,
            tools=tools,
            tool_traces=tool_traces,
            planner_round_trips=planner_round_trips,
            latency_ms=latency_ms,
        )
        with self._lock:
            self._records[record.trace_id] = record
            while len(self._records) > self._max_records:
                self._records.pop(next(iter(self._records)))
        return record

    def get(self, trace_id: str) -> ChainTraceRecord:
        record = self._records.get(trace_id)
        if record is None:
            raise KeyError(f"Trace not found: {trace_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[ChainTraceRecord]:
        with self._lock:
            return list(self._records.values())[-limit:]

    def summary(self) -> dict[str, float | int]:
        """Aggregate core observability metrics for dashboard display."""
        with self._lock:
            records = list(self._records.values())
        total = len(records)
        if total == 0:
            return {
                "total_requests": 0,
                "success_rate": 0.0,
                "avg_latency_ms": 0.0,
                "p95_latency_ms": 0.0,
                "avg_chain_length": 0.0,
                "avg_planner_round_trips": 0.0,
                "failed_tool_calls": 0,
            }

        latencies = sorted(record.latency_ms for record in records)
        p95_index = max(0, int((len(latencies) * 0.95) - 1))
        succeeded = sum(1 for record in records if record.success)
        failed_calls = sum(
            1 for record in records for trace in record.tool_traces if not trace.success
        )

        return {
            "total_requests": total,
            "success_rate": succeeded / total,
            "avg_latency_ms": sum(latencies) / total,
            "p95_latency_ms": latencies[p95_index],
            "avg_chain_length": sum(len(record.tools) for record in records) / total,
            "avg_planner_round_trips": sum(record.planner_round_trips for record in records)
            / total,
            "failed_tool_calls": failed_calls,
        }


class Timer:
    """Simple context timer used by the engine."""

    def __init__(self) -> None:
        self._start = 0.0
        self.elapsed_ms = 0.0

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self.elapsed_ms = (time.perf_counter() - self._start) * 1000.0
