"""
Node type registry — source of truth for which handles each node type exposes.

Keys match the editor node `type` values. Handle IDs come from the editor's
Handle definitions.
"""

from __future__ import annotations

from pydantic import BaseModel


class NodeTypeSpec(BaseModel):
    input_handles: list[str]
    output_handles: list[str]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

NODE_REGISTRY: dict[str, NodeTypeSpec] = {
    # ---- Source nodes ----
    "text": NodeTypeSpec(
        input_handles=[],
        output_handles=["text-output"],
    ),
    "upload-image": NodeTypeSpec(
        input_handles=[],
        output_handles=["image-output"],
    ),
    "upload-video": NodeTypeSpec(
        input_handles=[],
        output_handles=["video-output"],
    ),

    # ---- Processing nodes ----
    "llm": NodeTypeSpec(
        input_handles=["system_prompt-input", "user_message-input", "images-input"],
        output_handles=["text-output"],
    ),
    "crop-image": NodeTypeSpec(
        input_handles=["image-url-input"],
        output_handles=["output"],
    ),
    "extract-frame": NodeTypeSpec(
        input_handles=["video-url-input"],
        output_handles=["output"],
    ),
}


def get_node_spec(node_type: str) -> NodeTypeSpec | None:
    """Look up a node type spec, returning None if unknown."""
    return NODE_REGISTRY.get(node_type)
