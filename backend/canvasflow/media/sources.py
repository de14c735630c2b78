"""
Media source helpers shared by the generation and media transform adapters.

A media reference is either an inline data URL (`data:<mime>;base64,<payload>`)
or a remote http(s) URL.
"""

from __future__ import annotations

import base64
import binascii
import re

import httpx

DATA_URL_PATTERN = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)

# Stricter form used when handing images to the model: mime must be type/subtype.
IMAGE_DATA_URL_PATTERN = re.compile(
    r"^data:([a-zA-Z0-9]+/[a-zA-Z0-9\-.+]+);base64,(.+)$", re.DOTALL
)


class SourceFetchError(RuntimeError):
    """Raised when a remote media source answers with a non-2xx status."""

    def __init__(self, url: str, status_code: int, reason: str = ""):
        self.url = url
        self.status_code = status_code
        detail = f"HTTP {status_code} {reason}".strip()
        super().__init__(f"Failed to download file: {detail}")


def is_data_url(value: str) -> bool:
    return value.startswith("data:")


def decode_data_url(
    url: str, pattern: re.Pattern[str] = DATA_URL_PATTERN
) -> tuple[str, bytes]:
    """Split a base64 data URL into (mime_type, raw bytes)."""
    match = pattern.match(url.strip())
    if not match:
        raise ValueError("Invalid base64 data URL format")
    mime_type, payload = match.group(1), match.group(2)
    try:
        data = base64.b64decode(payload)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc
    return mime_type, data


def encode_data_url(data: bytes, mime_type: str) -> str:
    encoded = base64.b64encode(data).decode("ascii")
    return f"data:{mime_type};base64,{encoded}"


async def fetch_bytes(url: str, timeout: float) -> tuple[bytes, str | None]:
    """
    Download a remote source.

    Returns (content, content_type) where content_type has any parameters
    (charset etc.) stripped. Raises SourceFetchError on a non-2xx answer.
    """
    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        resp = await client.get(url)
    if not resp.is_success:
        raise SourceFetchError(url, resp.status_code, resp.reason_phrase)
    content_type = resp.headers.get("content-type", "").split(";")[0].strip()
    return resp.content, content_type or None
