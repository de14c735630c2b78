"""
Text (and vision) generation with Gemini.

Tries a fixed chain of models once each, in order, and surfaces the last
error if every model fails. Images are attached as inline parts; images that
cannot be loaded are logged and dropped.
"""

from __future__ import annotations

import logging
from typing import Any

from google import genai
from google.genai import types

from canvasflow import config
from canvasflow.media.sources import (
    IMAGE_DATA_URL_PATTERN,
    decode_data_url,
    fetch_bytes,
    is_data_url,
)

logger = logging.getLogger(__name__)

MODEL_CHAIN: tuple[str, ...] = (
    "gemini-2.0-flash-lite",
    "gemini-2.5-flash",
    "gemini-2.0-flash",
)

DEFAULT_IMAGE_MIME_TYPE = "image/jpeg"

_client: genai.Client | None = None


def get_client() -> genai.Client:
    """Lazily create the shared Gemini client."""
    global _client
    if _client is None:
        api_key = config.gemini_api_key()
        if not api_key:
            raise RuntimeError("GEMINI_API_KEY is not configured")
        _client = genai.Client(api_key=api_key)
    return _client


def build_prompt_text(prompt: str, image_count: int) -> str:
    if image_count <= 0:
        return prompt
    return (
        f"I'm providing {image_count} image(s) for you to analyze.\n\n"
        f"Silently examine what you see in each image, then: {prompt}\n\n"
        'IMPORTANT: Do NOT include an "Image Analysis" section. Just provide the '
        "final requested output directly. Reference the visual content naturally "
        "in your response. Avoid using markdown formatting like **text** - use "
        "plain text only."
    )


async def load_image_part(image_ref: str) -> types.Part:
    """Turn an inline data URL or a remote URL into an inline image part."""
    if is_data_url(image_ref):
        mime_type, data = decode_data_url(image_ref, IMAGE_DATA_URL_PATTERN)
    else:
        data, content_type = await fetch_bytes(
            image_ref, timeout=config.image_fetch_timeout()
        )
        mime_type = content_type or DEFAULT_IMAGE_MIME_TYPE
    return types.Part.from_bytes(data=data, mime_type=mime_type)


async def _load_image_parts(images: list[str]) -> list[types.Part]:
    parts: list[types.Part] = []
    for idx, image_ref in enumerate(images):
        try:
            parts.append(await load_image_part(image_ref))
        except Exception as e:
            logger.warning(
                "Dropping image %d/%d (%s): %s",
                idx + 1,
                len(images),
                image_ref[:80],
                e,
            )
    return parts


def build_parts(
    prompt: str,
    system: str | None,
    image_parts: list[types.Part],
    image_count: int | None = None,
) -> list[types.Part]:
    """
    Assemble the request parts.

    `image_count` is the number of images the caller supplied; the prompt
    wrapper announces that many even when some could not be loaded.
    """
    parts: list[types.Part] = []
    if system:
        parts.append(types.Part(text=f"System Instruction: {system}\n\n"))
    parts.append(types.Part(text=build_prompt_text(
        prompt, len(image_parts) if image_count is None else image_count
    )))
    parts.extend(image_parts)
    return parts


async def _generate_with_model(
    client: Any,
    model: str,
    parts: list[types.Part],
    temperature: float,
) -> str:
    response = await client.aio.models.generate_content(
        model=model,
        contents=parts,
        config=types.GenerateContentConfig(temperature=temperature),
    )
    text = response.text
    if not text:
        raise RuntimeError(f"Model {model} returned an empty response")
    return text


async def generate(
    prompt: str,
    system: str | None = None,
    images: list[str] | None = None,
    temperature: float = config.DEFAULT_TEMPERATURE,
) -> str:
    """
    Generate text for a prompt, optionally with a system instruction and images.

    Args:
        prompt: The user prompt (required, must be non-empty)
        system: Optional system instruction, sent as a prefixed text block
        images: Optional image references (data URLs or http(s) URLs)
        temperature: Sampling temperature

    Returns:
        The generated text.

    Raises:
        ValueError: If prompt is empty.
        Exception: The last model error once every model in MODEL_CHAIN failed.
    """
    if not prompt:
        raise ValueError("Prompt is required")

    images = images or []
    image_parts = await _load_image_parts(images)
    parts = build_parts(prompt, system, image_parts, image_count=len(images))
    client = get_client()

    last_error: Exception = RuntimeError("No generation models configured")
    for attempt, model in enumerate(MODEL_CHAIN):
        try:
            text = await _generate_with_model(client, model, parts, temperature)
            if attempt > 0:
                logger.info("Generation succeeded with fallback model %s", model)
            return text
        except Exception as e:
            last_error = e
            if attempt + 1 < len(MODEL_CHAIN):
                logger.warning(
                    "Model %s failed, falling back to %s: %s",
                    model,
                    MODEL_CHAIN[attempt + 1],
                    e,
                )
            else:
                logger.error("All generation models failed: %s", e)

    raise last_error
