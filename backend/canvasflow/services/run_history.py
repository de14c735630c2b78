"""
Read side of the run ledger.

Used by clients polling a run's progress and by the run history views.
"""

from __future__ import annotations

import logging

from canvasflow.db.run_ledger import RunLedger, RunNotFoundError
from canvasflow.models.ledger import RunDetails, WorkflowRun

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 50


async def get_run_details(run_id: str, ledger: RunLedger) -> RunDetails:
    """
    Get a run and its node runs (oldest first).

    Raises:
        RunNotFoundError: if the run does not exist.
    """
    run = await ledger.get_workflow_run(run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    node_runs = await ledger.list_node_runs(run_id)
    return RunDetails(run=run, node_runs=node_runs)


async def get_workflow_runs(
    workflow_id: str,
    ledger: RunLedger,
    limit: int = DEFAULT_HISTORY_LIMIT,
) -> list[WorkflowRun]:
    """Most recent runs of a workflow, newest first."""
    if limit <= 0:
        logger.debug("Non-positive history limit %d, using %d", limit, DEFAULT_HISTORY_LIMIT)
        limit = DEFAULT_HISTORY_LIMIT
    return await ledger.list_workflow_runs(workflow_id, limit=limit)
