"""
Workflow graph models — the frozen snapshot of editor nodes and edges handed to the engine.

Node `data` is a tagged union keyed by the node `type`, with one config record
per type. Wire names follow the editor (camelCase), Python attributes are
snake_case.
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationInfo, field_validator


NodeTypeName = Literal[
    "text",
    "upload-image",
    "upload-video",
    "llm",
    "crop-image",
    "extract-frame",
]


# ---------------------------------------------------------------------------
# Per-type node configuration
# ---------------------------------------------------------------------------


class NodeData(BaseModel):
    # Editor-only keys (label, locked, isExecuting, ...) ride along untouched.
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class TextNodeData(NodeData):
    text: str = ""

    @field_validator("text", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class UploadImageNodeData(NodeData):
    image_data: str | None = Field(default=None, alias="imageData")
    image_url: str | None = Field(default=None, alias="imageUrl")


class UploadVideoNodeData(NodeData):
    video_url: str | None = Field(default=None, alias="videoUrl")


class LLMNodeData(NodeData):
    prompt: str | None = None
    temperature: float | None = None
    model: str | None = None


class CropImageNodeData(NodeData):
    """Crop rectangle, every field a percentage (0-100) of the source image."""

    x: float = 0
    y: float = 0
    width: float = 100
    height: float = 100

    @field_validator("x", "y", "width", "height", mode="before")
    @classmethod
    def _blank_as_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return 100 if info.field_name in ("width", "height") else 0
        return value


class ExtractFrameNodeData(NodeData):
    """`timestamp` is seconds, or a string like "50%" for a fraction of the duration."""

    timestamp: float | str = 0

    @field_validator("timestamp", mode="before")
    @classmethod
    def _blank_as_zero(cls, value: Any) -> Any:
        if value is None or (isinstance(value, str) and not value.strip()):
            return 0
        return value


# ---------------------------------------------------------------------------
# Nodes (tagged union)
# ---------------------------------------------------------------------------


class _BaseNode(BaseModel):
    # position, measured, selected etc. come from the canvas and are dropped
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str


class TextNode(_BaseNode):
    type: Literal["text"]
    data: TextNodeData = Field(default_factory=TextNodeData)


class UploadImageNode(_BaseNode):
    type: Literal["upload-image"]
    data: UploadImageNodeData = Field(default_factory=UploadImageNodeData)


class UploadVideoNode(_BaseNode):
    type: Literal["upload-video"]
    data: UploadVideoNodeData = Field(default_factory=UploadVideoNodeData)


class LLMNode(_BaseNode):
    type: Literal["llm"]
    data: LLMNodeData = Field(default_factory=LLMNodeData)


class CropImageNode(_BaseNode):
    type: Literal["crop-image"]
    data: CropImageNodeData = Field(default_factory=CropImageNodeData)


class ExtractFrameNode(_BaseNode):
    type: Literal["extract-frame"]
    data: ExtractFrameNodeData = Field(default_factory=ExtractFrameNodeData)


WorkflowNode = Annotated[
    Union[
        TextNode,
        UploadImageNode,
        UploadVideoNode,
        LLMNode,
        CropImageNode,
        ExtractFrameNode,
    ],
    Field(discriminator="type"),
]

node_adapter: TypeAdapter[WorkflowNode] = TypeAdapter(WorkflowNode)


# ---------------------------------------------------------------------------
# Edges
# ---------------------------------------------------------------------------


class WorkflowEdge(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    id: str | None = None
    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")


# ---------------------------------------------------------------------------
# Resolved inputs
# ---------------------------------------------------------------------------


class ResolvedInputs(BaseModel):
    """Aggregated values a node receives from its completed upstream producers."""

    system_prompt: str = ""
    user_message: str = ""
    images: list[str] = Field(default_factory=list)
    image_url: str | None = None
    video_url: str | None = None


class GraphDiagnostic(BaseModel):
    level: Literal["error", "warning"]
    message: str
    node_id: str | None = None
    edge_id: str | None = None


class WorkflowGraph(BaseModel):
    nodes: list[WorkflowNode]
    edges: list[WorkflowEdge]
    diagnostics: list[GraphDiagnostic] = Field(default_factory=list)
