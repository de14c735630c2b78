"""
Graph loader — turns an editor graph (plain node/edge dicts) into typed models.

Pipeline: Parse nodes → Parse edges → Check wiring

Hard errors (missing/duplicate ids, unknown node types, invalid node config,
malformed edges) are collected and raised together. Wiring problems are only
warnings: cycles and dangling dependencies are left for the scheduler, which
reports them as a deadlock at run time.
"""

from __future__ import annotations

import logging
from typing import Any

from pydantic import ValidationError

from canvasflow.models.node_registry import get_node_spec
from canvasflow.models.workflow import (
    GraphDiagnostic,
    WorkflowEdge,
    WorkflowGraph,
    WorkflowNode,
    node_adapter,
)

logger = logging.getLogger(__name__)


class GraphValidationError(Exception):
    """Raised when a graph cannot be loaded, with structured diagnostics."""

    def __init__(self, diagnostics: list[GraphDiagnostic]):
        self.diagnostics = diagnostics
        messages = "; ".join(d.message for d in diagnostics)
        super().__init__(f"Invalid workflow graph: {messages}")


def _first_validation_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return str(exc)
    first = errors[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first.get('msg')}" if location else str(first.get("msg"))


def _parse_nodes(
    nodes: list[dict[str, Any]],
) -> tuple[list[WorkflowNode], list[GraphDiagnostic]]:
    parsed: list[WorkflowNode] = []
    diagnostics: list[GraphDiagnostic] = []
    seen_ids: set[str] = set()

    for raw in nodes:
        nid = raw.get("id") if isinstance(raw, dict) else None
        if not nid:
            diagnostics.append(GraphDiagnostic(
                level="error", message="Node missing 'id' field"
            ))
            continue
        if nid in seen_ids:
            diagnostics.append(GraphDiagnostic(
                level="error", message=f"Duplicate node ID '{nid}'", node_id=nid
            ))
            continue
        seen_ids.add(nid)

        node_type = raw.get("type", "")
        if not get_node_spec(node_type):
            diagnostics.append(GraphDiagnostic(
                level="error",
                message=f"Unknown node type '{node_type}'",
                node_id=nid,
            ))
            continue

        try:
            parsed.append(node_adapter.validate_python(raw))
        except ValidationError as exc:
            diagnostics.append(GraphDiagnostic(
                level="error",
                message=f"Invalid config for node '{nid}' ({node_type}): "
                        f"{_first_validation_message(exc)}",
                node_id=nid,
            ))

    return parsed, diagnostics


def _parse_edges(
    edges: list[dict[str, Any]],
) -> tuple[list[WorkflowEdge], list[GraphDiagnostic]]:
    parsed: list[WorkflowEdge] = []
    diagnostics: list[GraphDiagnostic] = []
    for idx, raw in enumerate(edges):
        try:
            parsed.append(WorkflowEdge.model_validate(raw))
        except ValidationError as exc:
            edge_id = raw.get("id") if isinstance(raw, dict) else None
            diagnostics.append(GraphDiagnostic(
                level="error",
                message=f"Invalid edge #{idx}: {_first_validation_message(exc)}",
                edge_id=edge_id,
            ))
    return parsed, diagnostics


def _check_wiring(
    nodes: list[WorkflowNode],
    edges: list[WorkflowEdge],
) -> list[GraphDiagnostic]:
    node_types = {n.id: n.type for n in nodes}
    diagnostics: list[GraphDiagnostic] = []

    for edge in edges:
        source_type = node_types.get(edge.source)
        if source_type is None:
            diagnostics.append(GraphDiagnostic(
                level="warning",
                message=f"Edge source '{edge.source}' is not in the graph; "
                        f"node '{edge.target}' will never become ready",
                node_id=edge.target,
                edge_id=edge.id,
            ))
        elif edge.source_handle:
            source_spec = get_node_spec(source_type)
            if source_spec and edge.source_handle not in source_spec.output_handles:
                diagnostics.append(GraphDiagnostic(
                    level="warning",
                    message=f"Node type '{source_type}' has no output handle "
                            f"'{edge.source_handle}'",
                    node_id=edge.source,
                    edge_id=edge.id,
                ))
        target_type = node_types.get(edge.target)
        if target_type is None:
            diagnostics.append(GraphDiagnostic(
                level="warning",
                message=f"Edge target '{edge.target}' is not in the graph",
                edge_id=edge.id,
            ))
            continue

        spec = get_node_spec(target_type)
        if spec and edge.target_handle not in spec.input_handles:
            diagnostics.append(GraphDiagnostic(
                level="warning",
                message=f"Node type '{target_type}' has no input handle "
                        f"'{edge.target_handle}'; the edge only orders execution",
                node_id=edge.target,
                edge_id=edge.id,
            ))

    return diagnostics


def load_graph(
    nodes: list[dict[str, Any]],
    edges: list[dict[str, Any]],
) -> WorkflowGraph:
    """
    Validate an editor graph and return its typed form.

    Raises:
        GraphValidationError: when any node or edge fails to parse.
    """
    parsed_nodes, diagnostics = _parse_nodes(nodes)
    parsed_edges, edge_diagnostics = _parse_edges(edges)
    diagnostics.extend(edge_diagnostics)

    if any(d.level == "error" for d in diagnostics):
        raise GraphValidationError(diagnostics)

    warnings = _check_wiring(parsed_nodes, parsed_edges)
    for warning in warnings:
        logger.warning("Graph warning: %s", warning.message)

    return WorkflowGraph(nodes=parsed_nodes, edges=parsed_edges, diagnostics=warnings)
