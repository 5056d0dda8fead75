from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Sequence

from services.analyzer import AnalysisRun, Analyzer
from services.types import Node

logger = logging.getLogger(__name__)

RunState = Literal["queued", "processing", "completed", "failed"]
DEFAULT_MAX_RUNS = 100


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class RunRecord:
    run_id: str
    total: int
    backend: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: RunState = "queued"
    stage: str = "queued"
    pct: int = 0
    error: str | None = None
    updated_at: str = field(default_factory=utc_now_iso)
    run: AnalysisRun | None = None

    def status_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "run_id": self.run_id,
            "status": self.status,
            "progress": {"stage": self.stage, "pct": self.pct},
            "error": self.error,
            "updated_at": self.updated_at,
            "warnings": [],
            "partial": False,
            "abort_reason": None,
            "advisory": None,
        }
        if self.run is not None:
            payload.update(
                warnings=list(self.run.warnings),
                partial=self.run.partial,
                abort_reason=self.run.abort_reason,
                advisory=self.run.advisory,
            )
        return payload


class RunRegistry:
    """In-memory run table; the oldest finished runs are evicted past `max_runs`."""

    def __init__(self, max_runs: int = DEFAULT_MAX_RUNS) -> None:
        self.max_runs = max(1, int(max_runs))
        self._runs: OrderedDict[str, RunRecord] = OrderedDict()
        self._lock = threading.Lock()

    def create(self, total: int, backend: str) -> RunRecord:
        record = RunRecord(run_id=uuid.uuid4().hex, total=int(total), backend=backend)
        with self._lock:
            self._runs[record.run_id] = record
            self._evict()
        return record

    def get(self, run_id: str) -> RunRecord | None:
        with self._lock:
            return self._runs.get(run_id)

    def update(
        self,
        run_id: str,
        status: RunState | None = None,
        stage: str | None = None,
        pct: int | None = None,
        error: str | None = None,
    ) -> None:
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                return
            if status is not None:
                record.status = status
            if stage is not None:
                record.stage = stage
            if pct is not None:
                record.pct = max(record.pct, int(max(0, min(100, pct))))
            if error is not None:
                record.error = error
            record.updated_at = utc_now_iso()

    def complete(self, run_id: str, run: AnalysisRun) -> None:
        with self._lock:
            record = self._runs.get(run_id)
            if record is None:
                return
            record.run = run
        self.update(run_id, status="completed", pct=100 if not run.partial else None)

    def fail(self, run_id: str, error: str) -> None:
        self.update(run_id, status="failed", stage="failed", error=error)

    def __len__(self) -> int:
        return len(self._runs)

    def _evict(self) -> None:
        while len(self._runs) > self.max_runs:
            finished = [rid for rid, r in self._runs.items() if r.status in ("completed", "failed")]
            if not finished:
                break
            del self._runs[finished[0]]


async def execute_run(
    registry: RunRegistry,
    run_id: str,
    analyzer: Analyzer,
    texts: Sequence[str],
    nodes: Sequence[Node],
) -> None:
    registry.update(run_id, status="processing", stage="processing")
    try:
        run = await analyzer.analyze(
            texts,
            nodes,
            on_progress=lambda pct: registry.update(run_id, pct=pct),
            on_status=lambda message: registry.update(run_id, stage=message),
        )
    except Exception as exc:
        logger.exception("Run %s failed", run_id)
        registry.fail(run_id, str(exc) or exc.__class__.__name__)
        return
    registry.complete(run_id, run)
    logger.info("Run %s completed: %s", run_id, run.summary())
