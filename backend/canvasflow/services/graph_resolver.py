"""
Readiness checks and input resolution for workflow nodes.

Input routing is a finite dispatch table keyed by (node type, target handle).
Each route reads one completed upstream output and folds it into the
aggregate the node receives. Everything here is pure: no I/O, no mutation of
the arguments.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any, Callable

from canvasflow.models.workflow import ResolvedInputs, WorkflowEdge, WorkflowNode

logger = logging.getLogger(__name__)

NodeOutput = dict[str, Any]


# ---------------------------------------------------------------------------
# Dependency checks
# ---------------------------------------------------------------------------


def incoming_edges(node_id: str, edges: Iterable[WorkflowEdge]) -> list[WorkflowEdge]:
    return [e for e in edges if e.target == node_id]


def incoming_sources(node_id: str, edges: Iterable[WorkflowEdge]) -> set[str]:
    """Upstream node ids a node depends on (duplicates across handles count once)."""
    return {e.source for e in edges if e.target == node_id}


def ready_nodes(
    nodes: Iterable[WorkflowNode],
    edges: list[WorkflowEdge],
    completed: set[str],
    running: set[str],
) -> list[WorkflowNode]:
    """
    Nodes that can start now, in node-list order.

    A node is ready when it is neither completed nor running and every
    incoming edge's source has completed. Nodes without incoming edges are
    always ready. An edge whose source is not part of the graph keeps its
    target waiting forever, which the scheduler reports as a deadlock.
    """
    ready: list[WorkflowNode] = []
    for node in nodes:
        if node.id in completed or node.id in running:
            continue
        if incoming_sources(node.id, edges) <= completed:
            ready.append(node)
    return ready


# ---------------------------------------------------------------------------
# Input routing
# ---------------------------------------------------------------------------


@dataclass
class _InputAccumulator:
    system_prompts: list[str] = field(default_factory=list)
    user_messages: list[str] = field(default_factory=list)
    images: list[str] = field(default_factory=list)
    image_url: str | None = None
    video_url: str | None = None

    def build(self) -> ResolvedInputs:
        return ResolvedInputs(
            system_prompt="\n".join(self.system_prompts),
            user_message="\n".join(self.user_messages),
            images=list(self.images),
            image_url=self.image_url,
            video_url=self.video_url,
        )


def _text_of(output: Mapping[str, Any]) -> str:
    text = output.get("text")
    return text if isinstance(text, str) else ""


def _looks_like_media_ref(value: Any) -> bool:
    return isinstance(value, str) and (value.startswith("http") or value.startswith("data:"))


def _first_present(output: Mapping[str, Any], keys: tuple[str, ...]) -> str | None:
    for key in keys:
        candidate = output.get(key)
        # An upstream may hand over a wrapped {"text": ...} payload
        if isinstance(candidate, Mapping):
            candidate = candidate.get("text")
        if isinstance(candidate, str) and candidate:
            return candidate
    return None


def _route_system_prompt(acc: _InputAccumulator, output: NodeOutput, edge: WorkflowEdge) -> None:
    acc.system_prompts.append(_text_of(output))


def _route_user_message(acc: _InputAccumulator, output: NodeOutput, edge: WorkflowEdge) -> None:
    acc.user_messages.append(_text_of(output))


def _route_images(acc: _InputAccumulator, output: NodeOutput, edge: WorkflowEdge) -> None:
    if output.get("output"):
        acc.images.append(output["output"])
    elif output.get("imageData"):
        acc.images.append(output["imageData"])
    elif isinstance(output.get("images"), list):
        acc.images.extend(img for img in output["images"] if isinstance(img, str) and img)
    elif _looks_like_media_ref(output.get("text")):
        acc.images.append(output["text"])


def _route_image_url(acc: _InputAccumulator, output: NodeOutput, edge: WorkflowEdge) -> None:
    candidate = _first_present(output, ("output", "imageData", "text"))
    if candidate is None:
        return
    if acc.image_url is not None:
        logger.warning(
            "Node %s already has an image input; ignoring extra edge from %s",
            edge.target,
            edge.source,
        )
        return
    acc.image_url = candidate


def _route_video_url(acc: _InputAccumulator, output: NodeOutput, edge: WorkflowEdge) -> None:
    candidate = _first_present(output, ("output", "videoUrl", "text"))
    if candidate is None:
        return
    if acc.video_url is not None:
        logger.warning(
            "Node %s already has a video input; ignoring extra edge from %s",
            edge.target,
            edge.source,
        )
        return
    acc.video_url = candidate


Route = Callable[[_InputAccumulator, NodeOutput, WorkflowEdge], None]

INPUT_ROUTES: dict[tuple[str, str], Route] = {
    ("llm", "system_prompt-input"): _route_system_prompt,
    ("llm", "user_message-input"): _route_user_message,
    ("llm", "images-input"): _route_images,
    ("crop-image", "image-url-input"): _route_image_url,
    ("extract-frame", "video-url-input"): _route_video_url,
}


def resolve_inputs(
    node: WorkflowNode,
    edges: Iterable[WorkflowEdge],
    completed_outputs: Mapping[str, NodeOutput],
) -> ResolvedInputs:
    """
    Aggregate the inputs a node receives from its completed upstream nodes.

    Edges are visited in edge-list order, so concatenated values (prompt
    parts, image lists) keep that order. An edge whose source has not
    completed contributes nothing.
    """
    acc = _InputAccumulator()
    for edge in incoming_edges(node.id, edges):
        upstream = completed_outputs.get(edge.source)
        if upstream is None:
            continue

        route = INPUT_ROUTES.get((node.type, edge.target_handle or ""))
        if route is None:
            logger.debug(
                "No input route for %s handle %r (edge %s -> %s)",
                node.type,
                edge.target_handle,
                edge.source,
                edge.target,
            )
            continue
        route(acc, upstream, edge)

    return acc.build()
