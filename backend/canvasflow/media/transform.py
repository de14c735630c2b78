"""
Media transform adapter — crops images and grabs still frames from videos.

Sources are materialized into temporary files, processed with Pillow (crop)
or OpenCV (duration probe + frame grab), and the result is returned as an
inline PNG data URL. Temporary files are always removed.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import os
import tempfile
from typing import Any, Literal

import cv2
from PIL import Image

from canvasflow import config
from canvasflow.media.sources import (
    decode_data_url,
    encode_data_url,
    fetch_bytes,
    is_data_url,
)

logger = logging.getLogger(__name__)

Operation = Literal["crop", "extract"]

OUTPUT_MIME_TYPE = "image/png"


class MediaTransformError(RuntimeError):
    """Single error type for every failure inside a media transform."""


# ---------------------------------------------------------------------------
# Parameter handling
# ---------------------------------------------------------------------------


def _as_percent(value: Any, name: str, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ValueError(f"Crop {name} must be a number, got {value!r}")


def crop_box(
    image_width: int,
    image_height: int,
    params: dict[str, Any],
) -> tuple[int, int, int, int]:
    """
    Translate percentage crop params into a pixel box (left, upper, right, lower).

    x/y locate the top-left corner, width/height size the rectangle, all as
    percentages of the source dimensions. The box is clamped to the image.
    """
    x = _as_percent(params.get("x"), "x", 0.0)
    y = _as_percent(params.get("y"), "y", 0.0)
    w = _as_percent(params.get("width"), "width", 100.0)
    h = _as_percent(params.get("height"), "height", 100.0)

    left = int(image_width * x / 100)
    upper = int(image_height * y / 100)
    right = left + int(image_width * w / 100)
    lower = upper + int(image_height * h / 100)

    left = max(0, min(left, image_width))
    upper = max(0, min(upper, image_height))
    right = max(left, min(right, image_width))
    lower = max(upper, min(lower, image_height))

    if right - left <= 0 or lower - upper <= 0:
        raise ValueError(
            f"Crop area is empty (x={x}, y={y}, width={w}, height={h})"
        )
    return left, upper, right, lower


def resolve_timestamp(timestamp: Any, duration: float | None) -> float:
    """
    Resolve a frame timestamp to seconds.

    Accepts seconds (number or numeric string) or a percentage string such as
    "50%", which needs the video duration.
    """
    if timestamp is None or timestamp == "":
        return 0.0

    if isinstance(timestamp, str) and timestamp.strip().endswith("%"):
        raw = timestamp.strip()[:-1]
        try:
            percentage = float(raw)
        except ValueError:
            raise ValueError(f"Invalid percentage timestamp: {timestamp!r}")
        if duration is None:
            raise ValueError("Video duration is required for a percentage timestamp")
        seconds = duration * (percentage / 100)
    else:
        try:
            seconds = float(timestamp)
        except (TypeError, ValueError):
            raise ValueError(f"Invalid timestamp: {timestamp!r}")

    if seconds < 0:
        raise ValueError(f"Timestamp must not be negative, got {seconds}")
    return seconds


# ---------------------------------------------------------------------------
# Blocking operations (run in a worker thread)
# ---------------------------------------------------------------------------


def _crop_image(input_path: str, output_path: str, params: dict[str, Any]) -> None:
    with Image.open(input_path) as img:
        img.load()
        box = crop_box(img.width, img.height, params)
        cropped = img.crop(box)
        if cropped.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            cropped = cropped.convert("RGBA")
        cropped.save(output_path, format="PNG")


def get_video_duration(video_path: str) -> float:
    """Video duration in seconds, from frame count and frame rate."""
    cap = cv2.VideoCapture(video_path)
    if not cap.isOpened():
        raise ValueError("Cannot open video source")
    try:
        fps = cap.get(cv2.CAP_PROP_FPS)
        frame_count = cap.get(cv2.CAP_PROP_FRAME_COUNT)
    finally:
        cap.release()
    return frame_count / fps if fps > 0 else 0.0


def _extract_frame(input_path: str, output_path: str, params: dict[str, Any]) -> float:
    timestamp = params.get("timestamp", 0)
    duration: float | None = None
    if isinstance(timestamp, str) and timestamp.strip().endswith("%"):
        duration = get_video_duration(input_path)
    seconds = resolve_timestamp(timestamp, duration)

    cap = cv2.VideoCapture(input_path)
    if not cap.isOpened():
        raise ValueError("Cannot open video source")
    try:
        cap.set(cv2.CAP_PROP_POS_MSEC, seconds * 1000)
        ret, frame = cap.read()
    finally:
        cap.release()

    if not ret or frame is None:
        raise ValueError(f"No frame could be decoded at t={seconds:.3f}s")
    if not cv2.imwrite(output_path, frame):
        raise ValueError("Failed to encode extracted frame")
    return seconds


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def _load_source(input_url: str) -> tuple[bytes, str]:
    """Return the source bytes and a file suffix matching its media type."""
    if is_data_url(input_url):
        mime_type, data = decode_data_url(input_url)
        return data, mimetypes.guess_extension(mime_type) or ""

    content, content_type = await fetch_bytes(input_url, timeout=config.media_fetch_timeout())
    suffix = os.path.splitext(input_url.split("?")[0])[-1]
    if not suffix and content_type:
        suffix = mimetypes.guess_extension(content_type) or ""
    return content, suffix


async def transform(
    operation: Operation,
    input_url: str,
    params: dict[str, Any] | None = None,
) -> dict[str, str]:
    """
    Run a media operation and return {"output": <PNG data URL>}.

    - crop: params x, y, width, height as percentages of the source image.
    - extract: params timestamp as seconds or "P%" of the video duration.

    Raises MediaTransformError for any failure (download, decode, bad params).
    """
    params = params or {}
    if operation not in ("crop", "extract"):
        raise MediaTransformError(f"Unsupported media operation: {operation}")

    input_path: str | None = None
    output_path: str | None = None
    try:
        logger.info("Loading %s source (%s)", operation, input_url[:80])
        source_bytes, suffix = await _load_source(input_url)

        with tempfile.NamedTemporaryFile(delete=False, prefix="input-", suffix=suffix) as f:
            f.write(source_bytes)
            input_path = f.name
        with tempfile.NamedTemporaryFile(delete=False, prefix="output-", suffix=".png") as f:
            output_path = f.name

        if operation == "crop":
            await asyncio.to_thread(_crop_image, input_path, output_path, params)
        else:
            seconds = await asyncio.to_thread(_extract_frame, input_path, output_path, params)
            logger.debug("Extracted frame at %.3fs", seconds)

        with open(output_path, "rb") as f:
            result = f.read()
        return {"output": encode_data_url(result, OUTPUT_MIME_TYPE)}

    except Exception as e:
        logger.error("Media %s failed: %s", operation, e)
        raise MediaTransformError(f"Media processing failed: {e}") from e

    finally:
        for path in (input_path, output_path):
            if path and os.path.exists(path):
                try:
                    os.unlink(path)
                except OSError as cleanup_error:
                    logger.warning("Failed to remove temp file %s: %s", path, cleanup_error)
