"""
Run history API endpoints.
"""

from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from canvasflow.db.run_ledger import RunLedger, RunNotFoundError, get_run_ledger
from canvasflow.models.ledger import RunDetails, WorkflowRun
from canvasflow.services.run_history import get_run_details, get_workflow_runs

router = APIRouter(prefix="/history", tags=["history"])


@router.get("/runs/{run_id}", response_model=RunDetails)
async def read_run(
    run_id: str,
    ledger: RunLedger = Depends(get_run_ledger),
):
    """Get a run with its node runs."""
    try:
        return await get_run_details(run_id, ledger)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to get run: {str(e)}")


@router.get("/workflows/{workflow_id}/runs", response_model=List[WorkflowRun])
async def list_runs(
    workflow_id: str,
    limit: int = Query(50, ge=1, le=200),
    ledger: RunLedger = Depends(get_run_ledger),
):
    """List the most recent runs of a workflow."""
    try:
        return await get_workflow_runs(workflow_id, ledger, limit=limit)
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to list runs: {str(e)}")
