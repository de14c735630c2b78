"""
Persisted records of workflow runs and node runs.

A WorkflowRun is created before scheduling starts and finalized once the batch
loop exits. A NodeRun is created when its node is selected for execution and
finalized exactly once when that node finishes.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


class RunStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class RunScope(str, Enum):
    FULL = "FULL"
    SINGLE = "SINGLE"


class NodeRunStatus(str, Enum):
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


TERMINAL_RUN_STATUSES = frozenset(
    {RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED}
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid4())


class WorkflowRun(BaseModel):
    id: str = Field(default_factory=_new_id)
    workflow_id: str
    status: RunStatus = RunStatus.RUNNING
    scope: RunScope = RunScope.FULL
    trigger_type: str = "MANUAL"
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
    duration_ms: int | None = None


class NodeRun(BaseModel):
    id: str = Field(default_factory=_new_id)
    run_id: str
    node_id: str
    status: NodeRunStatus = NodeRunStatus.RUNNING
    inputs: dict[str, Any] | None = None
    outputs: dict[str, Any] | None = None
    error: str | None = None
    started_at: datetime = Field(default_factory=_utcnow)
    finished_at: datetime | None = None
    duration_ms: int | None = None


class RunDetails(BaseModel):
    """A workflow run together with its node runs, oldest first."""

    run: WorkflowRun
    node_runs: list[NodeRun]
