"""
Tests for the media transform adapter (crop and frame extraction).
"""

import io
import sys
import tempfile
from pathlib import Path

import cv2
import numpy as np
import pytest
from PIL import Image

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from canvasflow.media import MediaTransformError, SourceFetchError, decode_data_url, encode_data_url
from canvasflow.media import transform as media_transform
from canvasflow.media.transform import crop_box, resolve_timestamp


def png_data_url(width: int, height: int, color=(200, 30, 30)) -> str:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return encode_data_url(buffer.getvalue(), "image/png")


def decode_image(data_url: str) -> Image.Image:
    mime_type, data = decode_data_url(data_url)
    assert mime_type == "image/png"
    image = Image.open(io.BytesIO(data))
    image.load()
    return image


@pytest.fixture
def isolated_tmp(monkeypatch, tmp_path):
    """Point tempfile at an empty directory so leftovers are visible."""
    monkeypatch.setattr(tempfile, "tempdir", str(tmp_path))
    return tmp_path


@pytest.fixture
def gradient_video(tmp_path):
    """10 frames at 10 fps; frame i is a flat gray of brightness 20 * i."""
    path = tmp_path / "gradient.avi"
    writer = cv2.VideoWriter(str(path), cv2.VideoWriter_fourcc(*"MJPG"), 10, (64, 48))
    if not writer.isOpened():
        pytest.skip("OpenCV build cannot write MJPG video")
    for i in range(10):
        writer.write(np.full((48, 64, 3), 20 * i, dtype=np.uint8))
    writer.release()
    return path


class TestCropBox:

    def test_identity(self):
        assert crop_box(640, 480, {"x": 0, "y": 0, "width": 100, "height": 100}) == (0, 0, 640, 480)

    def test_percentages_floor_to_pixels(self):
        assert crop_box(101, 51, {"x": 10, "y": 50, "width": 50, "height": 25}) == (10, 25, 60, 37)

    def test_box_is_clamped_to_image(self):
        assert crop_box(200, 100, {"x": 75, "y": 0, "width": 50, "height": 100}) == (150, 0, 200, 100)

    def test_missing_params_default_to_full_image(self):
        assert crop_box(30, 20, {}) == (0, 0, 30, 20)

    @pytest.mark.parametrize("params", [
        {"width": 0},
        {"x": 100},
        {"width": "wide"},
    ])
    def test_invalid_boxes(self, params):
        with pytest.raises(ValueError):
            crop_box(100, 100, params)


class TestResolveTimestamp:

    def test_seconds(self):
        assert resolve_timestamp(2.5, None) == 2.5
        assert resolve_timestamp("3", None) == 3.0
        assert resolve_timestamp("", None) == 0.0

    def test_percentage_of_duration(self):
        assert resolve_timestamp("50%", 8.0) == 4.0

    def test_percentage_needs_duration(self):
        with pytest.raises(ValueError, match="duration"):
            resolve_timestamp("50%", None)

    @pytest.mark.parametrize("value", [-1, "abc", "x%"])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            resolve_timestamp(value, 10.0)


class TestTransform:

    @pytest.mark.asyncio
    async def test_identity_crop_keeps_dimensions(self, isolated_tmp):
        result = await media_transform.transform(
            "crop", png_data_url(40, 30), {"x": 0, "y": 0, "width": 100, "height": 100}
        )

        image = decode_image(result["output"])
        assert image.size == (40, 30)
        assert list(isolated_tmp.iterdir()) == []

    @pytest.mark.asyncio
    async def test_crop_region(self, isolated_tmp):
        result = await media_transform.transform(
            "crop", png_data_url(200, 100), {"x": 25, "y": 50, "width": 50, "height": 50}
        )

        assert decode_image(result["output"]).size == (100, 50)

    @pytest.mark.asyncio
    async def test_extract_middle_frame(self, gradient_video, monkeypatch):
        video_bytes = gradient_video.read_bytes()

        async def fake_fetch(url, timeout):
            return video_bytes, "video/x-msvideo"

        monkeypatch.setattr(media_transform, "fetch_bytes", fake_fetch)

        result = await media_transform.transform(
            "extract", "https://cdn.example.com/gradient.avi", {"timestamp": "50%"}
        )

        frame = np.asarray(decode_image(result["output"]).convert("L"), dtype=np.float32)
        # Frame 5 of 10; allow one frame of seek slack either way
        assert 80 <= frame.mean() <= 120

    @pytest.mark.asyncio
    async def test_download_error_is_wrapped(self, isolated_tmp, monkeypatch):
        async def not_found(url, timeout):
            raise SourceFetchError(url, 404, "Not Found")

        monkeypatch.setattr(media_transform, "fetch_bytes", not_found)

        with pytest.raises(MediaTransformError, match="Media processing failed: Failed to download file: HTTP 404 Not Found"):
            await media_transform.transform("extract", "https://cdn.example.com/missing.mp4", {})

    @pytest.mark.asyncio
    async def test_undecodable_image_is_wrapped_and_cleaned_up(self, isolated_tmp):
        bogus = encode_data_url(b"definitely not an image", "image/png")

        with pytest.raises(MediaTransformError, match="Media processing failed"):
            await media_transform.transform("crop", bogus, {})

        assert list(isolated_tmp.iterdir()) == []

    @pytest.mark.asyncio
    async def test_empty_crop_is_an_error(self, isolated_tmp):
        with pytest.raises(MediaTransformError, match="Crop area is empty"):
            await media_transform.transform("crop", png_data_url(10, 10), {"width": 0})

    @pytest.mark.asyncio
    async def test_unsupported_operation(self):
        with pytest.raises(MediaTransformError, match="Unsupported media operation"):
            await media_transform.transform("resize", png_data_url(10, 10), {})
