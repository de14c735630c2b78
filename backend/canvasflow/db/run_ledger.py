"""
Run ledger — append/update-only store of workflow runs and node runs.

Two backends share one async interface:

- SupabaseRunLedger writes to the `workflow_runs` and `node_runs` tables.
  Columns mirror the fields of WorkflowRun / NodeRun; `inputs` and `outputs`
  are jsonb, timestamps are timestamptz.
- InMemoryRunLedger keeps rows in process memory (local development, tests).

Each NodeRun row has exactly one writer (the execution unit of its node), so
no row-level locking is needed.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable

from canvasflow import config
from canvasflow.models.ledger import (
    NodeRun,
    NodeRunStatus,
    RunStatus,
    WorkflowRun,
)

logger = logging.getLogger(__name__)


class RunNotFoundError(LookupError):
    """Raised when a workflow run id is not present in the ledger."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run {run_id} not found")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _elapsed_ms(started_at: datetime, finished_at: datetime) -> int:
    return max(0, int((finished_at - started_at).total_seconds() * 1000))


class RunLedger(ABC):
    """Async interface the scheduler and the status reader depend on."""

    @abstractmethod
    async def create_workflow_run(self, run: WorkflowRun) -> WorkflowRun: ...

    @abstractmethod
    async def get_workflow_run(self, run_id: str) -> WorkflowRun | None: ...

    @abstractmethod
    async def update_workflow_run_status(
        self, run_id: str, status: RunStatus
    ) -> WorkflowRun: ...

    @abstractmethod
    async def finish_workflow_run(
        self, run_id: str, status: RunStatus
    ) -> WorkflowRun:
        """Write the terminal status, finish time and duration (from started_at)."""

    @abstractmethod
    async def create_node_run(self, node_run: NodeRun) -> NodeRun: ...

    @abstractmethod
    async def finish_node_run(
        self,
        node_run_id: str,
        status: NodeRunStatus,
        *,
        duration_ms: int,
        outputs: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> NodeRun: ...

    @abstractmethod
    async def list_node_runs(self, run_id: str) -> list[NodeRun]:
        """Node runs of one workflow run, oldest first."""

    @abstractmethod
    async def list_workflow_runs(
        self, workflow_id: str, limit: int = 50
    ) -> list[WorkflowRun]:
        """Most recent runs of a workflow first."""


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class InMemoryRunLedger(RunLedger):
    def __init__(self) -> None:
        self._runs: dict[str, WorkflowRun] = {}
        self._node_runs: dict[str, NodeRun] = {}

    async def create_workflow_run(self, run: WorkflowRun) -> WorkflowRun:
        self._runs[run.id] = run.model_copy()
        return run.model_copy()

    async def get_workflow_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy() if run else None

    async def update_workflow_run_status(
        self, run_id: str, status: RunStatus
    ) -> WorkflowRun:
        run = self._require_run(run_id)
        updated = run.model_copy(update={"status": status})
        self._runs[run_id] = updated
        return updated.model_copy()

    async def finish_workflow_run(
        self, run_id: str, status: RunStatus
    ) -> WorkflowRun:
        run = self._require_run(run_id)
        finished_at = _utcnow()
        updated = run.model_copy(
            update={
                "status": status,
                "finished_at": finished_at,
                "duration_ms": _elapsed_ms(run.started_at, finished_at),
            }
        )
        self._runs[run_id] = updated
        return updated.model_copy()

    async def create_node_run(self, node_run: NodeRun) -> NodeRun:
        self._node_runs[node_run.id] = node_run.model_copy()
        return node_run.model_copy()

    async def finish_node_run(
        self,
        node_run_id: str,
        status: NodeRunStatus,
        *,
        duration_ms: int,
        outputs: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> NodeRun:
        node_run = self._node_runs.get(node_run_id)
        if node_run is None:
            raise LookupError(f"Node run {node_run_id} not found")
        updated = node_run.model_copy(
            update={
                "status": status,
                "finished_at": _utcnow(),
                "duration_ms": duration_ms,
                "outputs": outputs,
                "error": error,
            }
        )
        self._node_runs[node_run_id] = updated
        return updated.model_copy()

    async def list_node_runs(self, run_id: str) -> list[NodeRun]:
        rows = [nr for nr in self._node_runs.values() if nr.run_id == run_id]
        rows.sort(key=lambda nr: nr.started_at)
        return [nr.model_copy() for nr in rows]

    async def list_workflow_runs(
        self, workflow_id: str, limit: int = 50
    ) -> list[WorkflowRun]:
        rows = [r for r in self._runs.values() if r.workflow_id == workflow_id]
        rows.sort(key=lambda r: r.started_at, reverse=True)
        return [r.model_copy() for r in rows[:limit]]

    def _require_run(self, run_id: str) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run


# ---------------------------------------------------------------------------
# Supabase backend
# ---------------------------------------------------------------------------


class SupabaseRunLedger(RunLedger):
    """
    Ledger backed by Supabase tables.

    The supabase-py client is synchronous, so every query runs in a worker
    thread to keep the event loop free while a run's batch is in flight.
    """

    WORKFLOW_RUNS_TABLE = "workflow_runs"
    NODE_RUNS_TABLE = "node_runs"

    def __init__(self, client: Any | None = None) -> None:
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            from supabase import create_client

            supabase_url = config.supabase_url()
            supabase_key = config.supabase_service_role_key()
            if not supabase_url:
                raise ValueError("SUPABASE_URL environment variable is required")
            if not supabase_key:
                raise ValueError("SUPABASE_SERVICE_ROLE_KEY environment variable is required")
            try:
                self._client = create_client(supabase_url, supabase_key)
            except Exception as e:
                raise ValueError(f"Failed to create Supabase client: {str(e)}")
        return self._client

    async def _execute(self, build_query: Callable[[], Any]) -> list[dict[str, Any]]:
        result = await asyncio.to_thread(lambda: build_query().execute())
        return result.data or []

    async def create_workflow_run(self, run: WorkflowRun) -> WorkflowRun:
        rows = await self._execute(
            lambda: self.client.table(self.WORKFLOW_RUNS_TABLE).insert(
                run.model_dump(mode="json")
            )
        )
        return WorkflowRun.model_validate(rows[0]) if rows else run

    async def get_workflow_run(self, run_id: str) -> WorkflowRun | None:
        rows = await self._execute(
            lambda: self.client.table(self.WORKFLOW_RUNS_TABLE)
            .select("*")
            .eq("id", run_id)
        )
        return WorkflowRun.model_validate(rows[0]) if rows else None

    async def update_workflow_run_status(
        self, run_id: str, status: RunStatus
    ) -> WorkflowRun:
        rows = await self._execute(
            lambda: self.client.table(self.WORKFLOW_RUNS_TABLE)
            .update({"status": status.value})
            .eq("id", run_id)
        )
        if not rows:
            raise RunNotFoundError(run_id)
        return WorkflowRun.model_validate(rows[0])

    async def finish_workflow_run(
        self, run_id: str, status: RunStatus
    ) -> WorkflowRun:
        run = await self.get_workflow_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        finished_at = _utcnow()
        rows = await self._execute(
            lambda: self.client.table(self.WORKFLOW_RUNS_TABLE)
            .update(
                {
                    "status": status.value,
                    "finished_at": finished_at.isoformat(),
                    "duration_ms": _elapsed_ms(run.started_at, finished_at),
                }
            )
            .eq("id", run_id)
        )
        if not rows:
            raise RunNotFoundError(run_id)
        return WorkflowRun.model_validate(rows[0])

    async def create_node_run(self, node_run: NodeRun) -> NodeRun:
        rows = await self._execute(
            lambda: self.client.table(self.NODE_RUNS_TABLE).insert(
                node_run.model_dump(mode="json")
            )
        )
        return NodeRun.model_validate(rows[0]) if rows else node_run

    async def finish_node_run(
        self,
        node_run_id: str,
        status: NodeRunStatus,
        *,
        duration_ms: int,
        outputs: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> NodeRun:
        rows = await self._execute(
            lambda: self.client.table(self.NODE_RUNS_TABLE)
            .update(
                {
                    "status": status.value,
                    "finished_at": _utcnow().isoformat(),
                    "duration_ms": duration_ms,
                    "outputs": outputs,
                    "error": error,
                }
            )
            .eq("id", node_run_id)
        )
        if not rows:
            raise LookupError(f"Node run {node_run_id} not found")
        return NodeRun.model_validate(rows[0])

    async def list_node_runs(self, run_id: str) -> list[NodeRun]:
        rows = await self._execute(
            lambda: self.client.table(self.NODE_RUNS_TABLE)
            .select("*")
            .eq("run_id", run_id)
            .order("started_at")
        )
        return [NodeRun.model_validate(row) for row in rows]

    async def list_workflow_runs(
        self, workflow_id: str, limit: int = 50
    ) -> list[WorkflowRun]:
        rows = await self._execute(
            lambda: self.client.table(self.WORKFLOW_RUNS_TABLE)
            .select("*")
            .eq("workflow_id", workflow_id)
            .order("started_at", desc=True)
            .limit(limit)
        )
        return [WorkflowRun.model_validate(row) for row in rows]


@lru_cache(maxsize=1)
def get_run_ledger() -> RunLedger:
    """Get the process-wide run ledger for the configured backend."""
    backend = config.run_ledger_backend()
    logger.info("Using %s run ledger", backend)
    if backend == "supabase":
        return SupabaseRunLedger()
    return InMemoryRunLedger()
