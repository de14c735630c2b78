"""
Workflow execution engine.

Takes a typed node/edge graph, repeatedly picks the batch of nodes whose
dependencies have all completed, runs that batch concurrently, joins, and
recomputes. Every node attempt and every run is recorded in the run ledger.

Key concepts:
- Source nodes (text, upload-image, upload-video) pass their config through.
- llm nodes call the generation adapter; crop-image / extract-frame nodes call
  the media transform adapter.
- Fail-fast: the first node failure fails the whole run. Nodes already
  completed keep their records.
- Deadlock: nothing ready and nothing running while nodes remain (a cycle or
  a dependency on a node that is not in the graph). Stranded nodes are
  recorded as failed.
- Cancellation is cooperative and checked before each batch.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Awaitable, Callable, Literal

from pydantic import BaseModel

from canvasflow import config
from canvasflow.db.run_ledger import RunLedger, RunNotFoundError
from canvasflow.models.ledger import (
    NodeRun,
    NodeRunStatus,
    RunScope,
    RunStatus,
    TERMINAL_RUN_STATUSES,
    WorkflowRun,
)
from canvasflow.models.workflow import (
    ResolvedInputs,
    WorkflowEdge,
    WorkflowNode,
)
from canvasflow.services.graph_resolver import NodeOutput, ready_nodes, resolve_inputs

logger = logging.getLogger(__name__)

DEADLOCK_ERROR = "Workflow deadlock: dependency cycle or unreachable node."


class NodeInputError(ValueError):
    """A node is missing an input it cannot run without."""


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class NodeExecutionResult(BaseModel):
    node_id: str
    node_type: str | None = None
    status: Literal["completed", "error"]
    outputs: dict[str, Any] | None = None
    error: str | None = None
    execution_time_ms: int = 0


class WorkflowExecutionResult(BaseModel):
    run_id: str
    status: RunStatus
    node_outputs: dict[str, dict[str, Any]]
    node_results: list[NodeExecutionResult]
    total_execution_time_ms: int
    error: str | None = None


# ---------------------------------------------------------------------------
# Executor registry
# ---------------------------------------------------------------------------

# Maps node type names to their async executor functions.
# Each executor receives (node, inputs) and returns the node's output dict.
NodeExecutor = Callable[[Any, ResolvedInputs], Awaitable[NodeOutput]]
_registry: dict[str, NodeExecutor] = {}


def executor(node_type: str):
    """
    Decorator that registers an async executor function for a node type.

    Usage:
        @executor("my-node")
        async def _exec_my_node(node, inputs: ResolvedInputs) -> dict[str, Any]:
            return {"text": ...}
    """
    def decorator(fn: NodeExecutor) -> NodeExecutor:
        _registry[node_type] = fn
        return fn
    return decorator


# ---------------------------------------------------------------------------
# Node executors
# ---------------------------------------------------------------------------


@executor("text")
async def _exec_text(node, inputs: ResolvedInputs) -> NodeOutput:
    return {"text": node.data.text}


@executor("upload-image")
async def _exec_upload_image(node, inputs: ResolvedInputs) -> NodeOutput:
    return {"imageData": node.data.image_data}


@executor("upload-video")
async def _exec_upload_video(node, inputs: ResolvedInputs) -> NodeOutput:
    return {"videoUrl": node.data.video_url}


@executor("llm")
async def _exec_llm(node, inputs: ResolvedInputs) -> NodeOutput:
    """
    Generate text with the connected prompts and images.

    The user message comes from connected text nodes; when nothing is
    connected the node's own prompt is used.
    """
    from canvasflow.llm import gemini

    prompt = inputs.user_message or node.data.prompt or ""
    temperature = node.data.temperature
    if temperature is None:
        temperature = config.DEFAULT_TEMPERATURE

    text = await gemini.generate(
        prompt=prompt,
        system=inputs.system_prompt or None,
        images=inputs.images,
        temperature=temperature,
    )
    return {"text": text}


@executor("crop-image")
async def _exec_crop_image(node, inputs: ResolvedInputs) -> NodeOutput:
    from canvasflow.media import transform

    if not inputs.image_url:
        raise NodeInputError("No image input provided. Connect an image source.")

    result = await transform.transform(
        "crop",
        inputs.image_url,
        {
            "x": node.data.x,
            "y": node.data.y,
            "width": node.data.width,
            "height": node.data.height,
        },
    )
    return {"output": result["output"]}


@executor("extract-frame")
async def _exec_extract_frame(node, inputs: ResolvedInputs) -> NodeOutput:
    from canvasflow.media import transform

    if not inputs.video_url:
        raise NodeInputError("No video input provided. Connect a video source.")

    result = await transform.transform(
        "extract",
        inputs.video_url,
        {"timestamp": node.data.timestamp},
    )
    return {"output": result["output"]}


# ---------------------------------------------------------------------------
# Ledger helpers
# ---------------------------------------------------------------------------


def _persistable_outputs(outputs: NodeOutput | None) -> dict[str, Any] | None:
    """
    Outputs as written to the ledger.

    Payloads above NODE_RUN_OUTPUT_MAX_BYTES (inline images mostly) are
    replaced by a size summary. The in-memory output is never touched.
    """
    if outputs is None:
        return None
    payload_bytes = len(
        json.dumps(outputs, separators=(",", ":"), default=str).encode("utf-8")
    )
    max_bytes = config.node_run_output_max_bytes()
    if payload_bytes <= max_bytes:
        return outputs
    logger.info(
        "Node outputs too large to persist (%d bytes > %d); storing summary",
        payload_bytes,
        max_bytes,
    )
    return {"truncated": True, "payload_bytes": payload_bytes, "keys": sorted(outputs)}


async def _fail_stranded_nodes(
    ledger: RunLedger,
    run_id: str,
    nodes: list[WorkflowNode],
    completed: set[str],
) -> list[NodeExecutionResult]:
    stranded = [n for n in nodes if n.id not in completed]
    logger.warning(
        "Workflow deadlock in run %s: completed %d/%d, stranded %s",
        run_id,
        len(completed),
        len(nodes),
        [n.id for n in stranded],
    )
    for node in stranded:
        node_run = NodeRun(
            run_id=run_id,
            node_id=node.id,
            status=NodeRunStatus.FAILED,
            inputs=node.data.model_dump(mode="json", by_alias=True),
            error=DEADLOCK_ERROR,
        )
        node_run.finished_at = node_run.started_at
        node_run.duration_ms = 0
        await ledger.create_node_run(node_run)

    return [
        NodeExecutionResult(
            node_id=node.id,
            node_type=node.type,
            status="error",
            error=DEADLOCK_ERROR,
        )
        for node in stranded
    ]


# ---------------------------------------------------------------------------
# Full-graph execution
# ---------------------------------------------------------------------------


async def execute_workflow(
    run_id: str,
    nodes: list[WorkflowNode],
    edges: list[WorkflowEdge],
    ledger: RunLedger,
    cancel_event: asyncio.Event | None = None,
) -> WorkflowExecutionResult:
    """
    Drive one workflow run to a terminal state.

    The run row must already exist in the ledger (status RUNNING). The run is
    always finalized before this returns: COMPLETED when every node
    completed, FAILED on a node failure or a deadlock, and left as observed
    when it was cancelled or failed from outside.
    """
    run = await ledger.get_workflow_run(run_id)
    if run is None:
        raise RunNotFoundError(run_id)

    start_time = time.perf_counter()
    node_outputs: dict[str, NodeOutput] = {}
    node_results: list[NodeExecutionResult] = []
    completed: set[str] = set()
    running: set[str] = set()
    total_nodes = len(nodes)

    final_status = RunStatus.FAILED
    error: str | None = None

    async def execute_single_node(node: WorkflowNode) -> None:
        """Run one node and record it; re-raises the node's error after recording."""
        node_run = await ledger.create_node_run(NodeRun(
            run_id=run_id,
            node_id=node.id,
            status=NodeRunStatus.RUNNING,
            inputs=node.data.model_dump(mode="json", by_alias=True),
        ))
        node_start = time.perf_counter()

        try:
            exec_fn = _registry.get(node.type)
            if exec_fn is None:
                raise ValueError(f"No executor for node type '{node.type}'")

            resolved_inputs = resolve_inputs(node, edges, node_outputs)
            outputs = await exec_fn(node, resolved_inputs)

        except asyncio.CancelledError:
            elapsed_ms = int((time.perf_counter() - node_start) * 1000)
            logger.warning("Node %s cancelled while running", node.id)
            await ledger.finish_node_run(
                node_run.id,
                NodeRunStatus.FAILED,
                duration_ms=elapsed_ms,
                error="Node execution cancelled",
            )
            raise

        except Exception as e:
            elapsed_ms = int((time.perf_counter() - node_start) * 1000)
            logger.exception("Node %s failed: %s", node.id, e)
            node_results.append(NodeExecutionResult(
                node_id=node.id,
                node_type=node.type,
                status="error",
                error=str(e),
                execution_time_ms=elapsed_ms,
            ))
            await ledger.finish_node_run(
                node_run.id,
                NodeRunStatus.FAILED,
                duration_ms=elapsed_ms,
                error=str(e),
            )
            raise

        elapsed_ms = int((time.perf_counter() - node_start) * 1000)
        node_outputs[node.id] = outputs
        completed.add(node.id)
        running.discard(node.id)
        node_results.append(NodeExecutionResult(
            node_id=node.id,
            node_type=node.type,
            status="completed",
            outputs=outputs,
            execution_time_ms=elapsed_ms,
        ))
        await ledger.finish_node_run(
            node_run.id,
            NodeRunStatus.COMPLETED,
            duration_ms=elapsed_ms,
            outputs=_persistable_outputs(outputs),
        )

    try:
        while len(completed) < total_nodes:
            # Cooperative cancellation: nothing in flight is aborted, no new batch starts
            if cancel_event is not None and cancel_event.is_set():
                logger.info("Run %s cancelled, stopping before next batch", run_id)
                final_status = RunStatus.CANCELLED
                error = "Run cancelled"
                break
            current = await ledger.get_workflow_run(run_id)
            if current is not None and current.status in (RunStatus.FAILED, RunStatus.CANCELLED):
                logger.info("Run %s marked %s externally, stopping", run_id, current.status.value)
                final_status = current.status
                error = f"Run marked {current.status.value} externally"
                break

            ready = ready_nodes(nodes, edges, completed, running)

            if not ready and not running:
                node_results.extend(
                    await _fail_stranded_nodes(ledger, run_id, nodes, completed)
                )
                final_status = RunStatus.FAILED
                error = DEADLOCK_ERROR
                break

            if not ready:
                # Batches are joined before re-evaluating, so this means nodes
                # are still in flight with nothing else startable.
                logger.warning(
                    "Run %s: no ready nodes while %d are running, stopping",
                    run_id,
                    len(running),
                )
                error = "Execution stalled with nodes still running"
                break

            running.update(n.id for n in ready)
            logger.debug("Run %s starting batch %s", run_id, [n.id for n in ready])

            # Let every node in the batch finish (and be recorded) before failing the run
            results = await asyncio.gather(
                *(execute_single_node(n) for n in ready),
                return_exceptions=True,
            )
            failures = [(node, r) for node, r in zip(ready, results) if isinstance(r, BaseException)]
            if failures:
                failed_node, exc = failures[0]
                final_status = RunStatus.FAILED
                error = f"Execution stopped at node {failed_node.id}: {exc}"
                break
        else:
            final_status = RunStatus.COMPLETED

    except asyncio.CancelledError:
        logger.warning("Run %s task cancelled", run_id)
        final_status = RunStatus.CANCELLED
        error = "Run task cancelled"
        raise

    except Exception as e:
        logger.exception("Run %s crashed: %s", run_id, e)
        final_status = RunStatus.FAILED
        error = f"Internal error: {type(e).__name__}: {e}"

    finally:
        try:
            # A CANCELLED or FAILED status written from outside during the last
            # batch wins over the loop's own outcome.
            current = await ledger.get_workflow_run(run_id)
            if current is not None and current.status in (RunStatus.FAILED, RunStatus.CANCELLED):
                if current.status != final_status:
                    logger.info(
                        "Run %s was marked %s externally, keeping it",
                        run_id,
                        current.status.value,
                    )
                    error = error or f"Run marked {current.status.value} externally"
                final_status = current.status
            await ledger.finish_workflow_run(run_id, final_status)
        except Exception as e:
            logger.exception("Failed to finalize run %s: %s", run_id, e)

    total_ms = int((time.perf_counter() - start_time) * 1000)
    logger.info(
        "Run %s finished %s in %dms (%d/%d nodes completed)",
        run_id,
        final_status.value,
        total_ms,
        len(completed),
        total_nodes,
    )
    return WorkflowExecutionResult(
        run_id=run_id,
        status=final_status,
        node_outputs=node_outputs,
        node_results=node_results,
        total_execution_time_ms=total_ms,
        error=error,
    )


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

# run_id -> (coordinating task, cancel signal) for runs executing in this process.
_active_runs: dict[str, tuple[asyncio.Task, asyncio.Event]] = {}


def _on_run_done(run_id: str, task: asyncio.Task) -> None:
    _active_runs.pop(run_id, None)
    if task.cancelled():
        logger.warning("Background run %s was cancelled", run_id)
        return
    exc = task.exception()
    if exc is not None:
        logger.error("CRITICAL: background run %s crashed: %s", run_id, exc)
        return
    logger.info("Background run %s finished: %s", run_id, task.result().status.value)


async def start_full_run(
    workflow_id: str,
    nodes: list[WorkflowNode],
    edges: list[WorkflowEdge],
    ledger: RunLedger,
) -> str:
    """
    Create a FULL run and execute it in the background.

    Returns the run id immediately; progress is read back from the ledger.
    """
    run = await ledger.create_workflow_run(WorkflowRun(
        workflow_id=workflow_id,
        status=RunStatus.RUNNING,
        scope=RunScope.FULL,
    ))

    cancel_event = asyncio.Event()
    task = asyncio.create_task(
        execute_workflow(run.id, list(nodes), list(edges), ledger, cancel_event),
        name=f"workflow-run-{run.id}",
    )
    _active_runs[run.id] = (task, cancel_event)
    task.add_done_callback(lambda t: _on_run_done(run.id, t))

    logger.info(
        "Started run %s for workflow %s (%d nodes, %d edges)",
        run.id,
        workflow_id,
        len(nodes),
        len(edges),
    )
    return run.id


async def wait_for_run(run_id: str) -> WorkflowExecutionResult | None:
    """Await a background run started in this process, if it is still active."""
    entry = _active_runs.get(run_id)
    if entry is None:
        return None
    task, _ = entry
    return await task


async def cancel_run(run_id: str, ledger: RunLedger) -> WorkflowRun:
    """
    Ask a run to stop before its next batch.

    Writes CANCELLED to the ledger (which any process running the run will
    observe) and signals the in-process task directly when it lives here.
    Runs already in a terminal state are returned unchanged.
    """
    run = await ledger.get_workflow_run(run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    if run.status in TERMINAL_RUN_STATUSES:
        return run

    run = await ledger.update_workflow_run_status(run_id, RunStatus.CANCELLED)
    entry = _active_runs.get(run_id)
    if entry is not None:
        entry[1].set()
    logger.info("Cancellation requested for run %s", run_id)
    return run


async def run_single_node(
    node_id: str,
    user_message: str,
    ledger: RunLedger,
    *,
    workflow_id: str,
    system_prompt: str | None = None,
    images: list[str] | None = None,
    temperature: float | None = None,
) -> str:
    """
    Run one llm node with caller-supplied inputs (no graph traversal).

    Records a SINGLE-scope run with one node run and returns the generated
    text, or re-raises the generation error after recording it. The run is
    always finalized, even when recording the node run fails.
    """
    from canvasflow.llm import gemini

    images = images or []
    if temperature is None:
        temperature = config.DEFAULT_TEMPERATURE

    run = await ledger.create_workflow_run(WorkflowRun(
        workflow_id=workflow_id,
        status=RunStatus.RUNNING,
        scope=RunScope.SINGLE,
    ))

    final_status = RunStatus.FAILED
    try:
        node_run = await ledger.create_node_run(NodeRun(
            run_id=run.id,
            node_id=node_id,
            status=NodeRunStatus.RUNNING,
            inputs={
                "systemPrompt": system_prompt,
                "userMessage": user_message,
                "imagesCount": len(images),
            },
        ))

        node_start = time.perf_counter()
        try:
            output = await gemini.generate(
                prompt=user_message,
                system=system_prompt,
                images=images,
                temperature=temperature,
            )
        except Exception as e:
            elapsed_ms = int((time.perf_counter() - node_start) * 1000)
            logger.exception("Single node execution failed for %s: %s", node_id, e)
            try:
                await ledger.finish_node_run(
                    node_run.id,
                    NodeRunStatus.FAILED,
                    duration_ms=elapsed_ms,
                    error=str(e) or type(e).__name__,
                )
            except Exception as ledger_error:
                logger.exception(
                    "Failed to record node run %s: %s", node_run.id, ledger_error
                )
            raise

        elapsed_ms = int((time.perf_counter() - node_start) * 1000)
        await ledger.finish_node_run(
            node_run.id,
            NodeRunStatus.COMPLETED,
            duration_ms=elapsed_ms,
            outputs={"output": output},
        )
        final_status = RunStatus.COMPLETED
        return output

    finally:
        try:
            await ledger.finish_workflow_run(run.id, final_status)
        except Exception as e:
            logger.exception("Failed to finalize run %s: %s", run.id, e)
