"""
Tests for readiness checks and input routing.
"""

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from canvasflow.models.workflow import WorkflowEdge, node_adapter
from canvasflow.services.graph_resolver import (
    incoming_sources,
    ready_nodes,
    resolve_inputs,
)


def make_node(node_id: str, node_type: str, **data):
    return node_adapter.validate_python({"id": node_id, "type": node_type, "data": data})


def make_edge(source: str, target: str, handle: str | None = None) -> WorkflowEdge:
    return WorkflowEdge(
        id=f"{source}->{target}:{handle}",
        source=source,
        target=target,
        target_handle=handle,
    )


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------


class TestReadyNodes:
    """Tests for ready-set computation."""

    def test_nodes_without_incoming_edges_are_ready_in_list_order(self):
        nodes = [make_node("b", "text"), make_node("a", "text"), make_node("c", "llm")]
        edges = [make_edge("a", "c", "user_message-input")]

        ready = ready_nodes(nodes, edges, completed=set(), running=set())

        assert [n.id for n in ready] == ["b", "a"]

    def test_node_waits_for_every_upstream(self):
        nodes = [make_node("s", "text"), make_node("u", "text"), make_node("l", "llm")]
        edges = [
            make_edge("s", "l", "system_prompt-input"),
            make_edge("u", "l", "user_message-input"),
        ]

        assert [n.id for n in ready_nodes(nodes, edges, {"s"}, set())] == ["u"]
        assert [n.id for n in ready_nodes(nodes, edges, {"s", "u"}, set())] == ["l"]

    def test_completed_and_running_nodes_are_excluded(self):
        nodes = [make_node("a", "text"), make_node("b", "text")]

        assert ready_nodes(nodes, [], completed={"a"}, running={"b"}) == []

    def test_edge_from_missing_node_blocks_target(self):
        nodes = [make_node("l", "llm")]
        edges = [make_edge("ghost", "l", "user_message-input")]

        assert ready_nodes(nodes, edges, completed=set(), running=set()) == []

    def test_duplicate_edges_count_once(self):
        edges = [
            make_edge("a", "l", "system_prompt-input"),
            make_edge("a", "l", "user_message-input"),
        ]
        assert incoming_sources("l", edges) == {"a"}


# ---------------------------------------------------------------------------
# Input routing
# ---------------------------------------------------------------------------


class TestResolveInputs:
    """Tests for the (node type, handle) routing table."""

    def test_llm_prompts_join_in_edge_order(self):
        node = make_node("l", "llm")
        edges = [
            make_edge("sys", "l", "system_prompt-input"),
            make_edge("u2", "l", "user_message-input"),
            make_edge("u1", "l", "user_message-input"),
        ]
        outputs = {
            "sys": {"text": "Be brief."},
            "u1": {"text": "first"},
            "u2": {"text": "second"},
        }

        inputs = resolve_inputs(node, edges, outputs)

        assert inputs.system_prompt == "Be brief."
        assert inputs.user_message == "second\nfirst"
        assert inputs.images == []

    def test_images_prefer_output_then_image_data(self):
        node = make_node("l", "llm")
        edges = [
            make_edge("crop", "l", "images-input"),
            make_edge("upload", "l", "images-input"),
            make_edge("gallery", "l", "images-input"),
            make_edge("link", "l", "images-input"),
            make_edge("plain", "l", "images-input"),
        ]
        outputs = {
            "crop": {"output": "data:image/png;base64,AAA", "imageData": "ignored"},
            "upload": {"imageData": "data:image/jpeg;base64,BBB"},
            "gallery": {"images": ["https://x/1.png", "", "https://x/2.png"]},
            "link": {"text": "https://x/3.png"},
            "plain": {"text": "not an image"},
        }

        inputs = resolve_inputs(node, edges, outputs)

        assert inputs.images == [
            "data:image/png;base64,AAA",
            "data:image/jpeg;base64,BBB",
            "https://x/1.png",
            "https://x/2.png",
            "https://x/3.png",
        ]

    def test_crop_image_url_first_source_wins(self):
        node = make_node("c", "crop-image")
        edges = [
            make_edge("empty", "c", "image-url-input"),
            make_edge("first", "c", "image-url-input"),
            make_edge("second", "c", "image-url-input"),
        ]
        outputs = {
            "empty": {"imageData": None},
            "first": {"imageData": "data:image/png;base64,AAA"},
            "second": {"output": "data:image/png;base64,BBB"},
        }

        assert resolve_inputs(node, edges, outputs).image_url == "data:image/png;base64,AAA"

    def test_wrapped_text_payload_is_unwrapped(self):
        node = make_node("f", "extract-frame")
        edges = [make_edge("v", "f", "video-url-input")]
        outputs = {"v": {"output": {"text": "https://cdn/video.mp4"}}}

        assert resolve_inputs(node, edges, outputs).video_url == "https://cdn/video.mp4"

    def test_video_url_from_upload_video(self):
        node = make_node("f", "extract-frame")
        edges = [make_edge("v", "f", "video-url-input")]

        inputs = resolve_inputs(node, edges, {"v": {"videoUrl": "https://cdn/a.mp4"}})

        assert inputs.video_url == "https://cdn/a.mp4"
        assert inputs.image_url is None

    def test_unknown_handle_contributes_nothing(self):
        node = make_node("c", "crop-image")
        edges = [make_edge("t", "c", "user_message-input")]

        inputs = resolve_inputs(node, edges, {"t": {"text": "https://x/y.png"}})

        assert inputs.image_url is None
        assert inputs.user_message == ""

    def test_incomplete_upstream_is_skipped(self):
        node = make_node("l", "llm")
        edges = [make_edge("pending", "l", "user_message-input")]

        assert resolve_inputs(node, edges, {}).user_message == ""

    def test_resolution_does_not_mutate_outputs(self):
        node = make_node("l", "llm")
        edges = [make_edge("g", "l", "images-input")]
        outputs = {"g": {"images": ["https://x/1.png"]}}

        inputs = resolve_inputs(node, edges, outputs)
        inputs.images.append("extra")

        assert outputs == {"g": {"images": ["https://x/1.png"]}}
