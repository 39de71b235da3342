"""Output normalization and step-to-step output mapping."""

from __future__ import annotations

from typing import Any

import structlog

from stationthis.pipeline.models import ToolOutput

logger = structlog.get_logger()

_OUTPUT_PREFIX = "output_"
_INPUT_PREFIX = "input_"
_IMAGE_SUFFIXES = (".png", ".jpg", ".jpeg", ".webp", ".gif")
_VIDEO_SUFFIXES = (".mp4", ".webm", ".mov")


def _collect_text(raw: dict[str, Any]) -> str | None:
    """Pick the canonical text field from the known LLM/engine reply variants."""
    for key in ("text", "result", "response"):
        value = raw.get(key)
        if isinstance(value, str):
            return value
    choices = raw.get("choices")
    if isinstance(choices, list) and choices:
        content = (choices[0].get("message") or {}).get("content")
        if isinstance(content, str):
            return content
    output = raw.get("output")
    if isinstance(output, str):
        return output
    return None


def _collect_urls(items: Any) -> list[str]:
    urls: list[str] = []
    if not isinstance(items, list):
        return urls
    for item in items:
        if isinstance(item, str):
            urls.append(item)
        elif isinstance(item, dict) and isinstance(item.get("url"), str):
            urls.append(item["url"])
    return urls


def normalize_output(raw: dict[str, Any] | None) -> ToolOutput:
    """Normalize a flat tool reply into the canonical ToolOutput.

    Recognized keys (text variants, images, videos) are lifted into their
    canonical slots; `output_*` keys and other scalar fields are kept in
    `fields`.
    """
    if not raw:
        return ToolOutput()

    text = _collect_text(raw)
    images = _collect_urls(raw.get("images"))
    videos = _collect_urls(raw.get("videos"))

    consumed = {"text", "result", "response", "choices", "images", "videos"}
    if text is not None and isinstance(raw.get("output"), str):
        consumed.add("output")
    fields = {k: v for k, v in raw.items() if k not in consumed}
    return ToolOutput(text=text, images=tuple(images), videos=tuple(videos), fields=fields)


def normalize_engine_outputs(outputs: list[dict[str, Any]] | None) -> ToolOutput:
    """Normalize a ComfyUI Deploy `outputs` list (one entry per output node)."""
    text: str | None = None
    images: list[str] = []
    videos: list[str] = []
    fields: dict[str, Any] = {}

    for entry in outputs or []:
        data = entry.get("data") or {}
        images.extend(_collect_urls(data.get("images")))
        for item in _collect_urls(data.get("gifs")) + _collect_urls(data.get("files")):
            lowered = item.lower()
            if lowered.endswith(_VIDEO_SUFFIXES):
                videos.append(item)
            elif lowered.endswith(_IMAGE_SUFFIXES):
                images.append(item)
        texts = data.get("text")
        if isinstance(texts, list) and texts and text is None:
            text = str(texts[0])
        elif isinstance(texts, str) and text is None:
            text = texts
        for key, value in data.items():
            if key.startswith(_OUTPUT_PREFIX):
                fields[key] = value

    return ToolOutput(text=text, images=tuple(images), videos=tuple(videos), fields=fields)


def map_outputs(payload: dict[str, Any], output_mappings: dict[str, str]) -> dict[str, Any]:
    """Rename canonical output keys into next-step input keys.

    Precedence per key: explicit mapping, then the `output_X -> input_X`
    convention, then carry-over (which never overwrites a renamed key).
    The first image URL becomes `input_image` unless `images` is mapped explicitly.
    """
    next_inputs: dict[str, Any] = {}

    images = payload.get("images")
    if "images" not in output_mappings and isinstance(images, list) and images:
        first = images[0]
        url = first.get("url") if isinstance(first, dict) else first
        if url:
            next_inputs["input_image"] = url

    for key, value in payload.items():
        # Canonical slots ("text") may be addressed as "output_text" in mappings
        mapped_key = next(
            (k for k in (key, _OUTPUT_PREFIX + key) if k in output_mappings), None
        )
        if mapped_key is not None:
            next_inputs[output_mappings[mapped_key]] = value
        elif key.startswith(_OUTPUT_PREFIX):
            next_inputs[_INPUT_PREFIX + key[len(_OUTPUT_PREFIX):]] = value
        elif key not in next_inputs:
            next_inputs[key] = value

    if payload and not next_inputs:
        logger.warning("output_mapping_empty", keys=sorted(payload))
    return next_inputs


def build_next_context(
    previous: dict[str, Any], payload: dict[str, Any], renamed: dict[str, Any]
) -> dict[str, Any]:
    """previous context | canonical output | renamed keys (later wins)."""
    return {**previous, **payload, **renamed}
