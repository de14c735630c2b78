"""
Execution API endpoints.

Full runs are started in the background and return a run id right away;
clients follow progress through the history endpoints. Single-node runs are
synchronous and return the generated text.
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from canvasflow.db.run_ledger import RunLedger, RunNotFoundError, get_run_ledger
from canvasflow.models.ledger import WorkflowRun
from canvasflow.services.graph_loader import GraphValidationError, load_graph

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/execution", tags=["execution"])


class ExecuteWorkflowRequest(BaseModel):
    workflow_id: str = Field(..., min_length=1)
    nodes: List[Dict[str, Any]] = Field(..., description="Editor nodes")
    edges: List[Dict[str, Any]] = Field(default_factory=list, description="Editor edges")


class ExecuteWorkflowResponse(BaseModel):
    run_id: str
    warnings: List[str] = []


class RunNodeRequest(BaseModel):
    node_id: str = Field(..., min_length=1)
    workflow_id: str = Field(..., min_length=1)
    user_message: str = ""
    system_prompt: Optional[str] = None
    images: List[str] = []
    temperature: Optional[float] = Field(None, ge=0, le=2)


class RunNodeResponse(BaseModel):
    output: str


@router.post("/runs", response_model=ExecuteWorkflowResponse, status_code=202)
async def start_workflow_run(
    request: ExecuteWorkflowRequest,
    ledger: RunLedger = Depends(get_run_ledger),
):
    """Validate an editor graph and start executing it in the background."""
    from canvasflow.services.workflow_executor import start_full_run

    try:
        graph = load_graph(request.nodes, request.edges)
    except GraphValidationError as e:
        raise HTTPException(
            status_code=422,
            detail={
                "message": "Invalid workflow graph",
                "diagnostics": [d.model_dump() for d in e.diagnostics],
            },
        )

    try:
        run_id = await start_full_run(request.workflow_id, graph.nodes, graph.edges, ledger)
    except Exception as e:
        logger.exception("Failed to start run for workflow %s", request.workflow_id)
        raise HTTPException(status_code=500, detail=f"Failed to start workflow run: {str(e)}")

    return ExecuteWorkflowResponse(
        run_id=run_id,
        warnings=[d.message for d in graph.diagnostics],
    )


@router.post("/nodes/run", response_model=RunNodeResponse)
async def run_node(
    request: RunNodeRequest,
    ledger: RunLedger = Depends(get_run_ledger),
):
    """Run a single llm node with the given inputs."""
    from canvasflow.services.workflow_executor import run_single_node

    if not request.user_message.strip():
        raise HTTPException(status_code=400, detail="Prompt is required")

    try:
        output = await run_single_node(
            request.node_id,
            request.user_message,
            ledger,
            system_prompt=request.system_prompt,
            images=request.images,
            temperature=request.temperature,
            workflow_id=request.workflow_id,
        )
    except Exception as e:
        raise HTTPException(status_code=502, detail=f"Generation failed: {str(e)}")

    return RunNodeResponse(output=output)


@router.post("/runs/{run_id}/cancel", response_model=WorkflowRun)
async def cancel_workflow_run(
    run_id: str,
    ledger: RunLedger = Depends(get_run_ledger),
):
    """Request cancellation; the run stops before its next batch."""
    from canvasflow.services.workflow_executor import cancel_run

    try:
        return await cancel_run(run_id, ledger)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Run not found")
    except HTTPException:
        raise
    except Exception as e:
        raise HTTPException(status_code=500, detail=f"Failed to cancel run: {str(e)}")
