from __future__ import annotations

"""
Central place for capability rules based on endpoint paths and declared parameter names.

Rules here only look at an `EndpointDescriptor` (path + parameter names/types). Discovery
owns schema parsing, cache and fallback policy; the request builder owns body shaping.
"""

import math
from typing import Final

from ..types import EndpointDescriptor

# ---- Canonical parameter names used for detection ----

PROMPT_PARAMS: Final[frozenset[str]] = frozenset({"prompt", "text"})
IMAGE_PARAMS: Final[frozenset[str]] = frozenset({"image", "image_b64", "image_url"})
VIDEO_PARAMS: Final[frozenset[str]] = frozenset({"video", "video_b64", "video_url"})

# /generate heuristics only look at the two inline image names.
GENERATE_IMAGE_PARAMS: Final[frozenset[str]] = frozenset({"image", "image_b64"})

IMAGE_ARRAY_PARAM: Final[str] = "image_b64s"
KEYFRAME_ARRAY_PARAM: Final[str] = "images"

# ---- Well-known paths ----

GENERATE_PATH: Final[str] = "/generate"
TEXT2VIDEO_PATH: Final[str] = "/text2video"
IMAGE2VIDEO_PATH: Final[str] = "/image2video"
VIDEO2VIDEO_PATH: Final[str] = "/video2video"
EDIT_PATH: Final[str] = "/edit"
OPENAI_EDIT_PATH: Final[str] = "/v1/images/edits"
STANDARD_PREFIX: Final[str] = "/v1/"

EDIT_PATHS: Final[tuple[str, ...]] = (EDIT_PATH, OPENAI_EDIT_PATH)
_INFERENCE_PATHS: Final[frozenset[str]] = frozenset({GENERATE_PATH, TEXT2VIDEO_PATH, IMAGE2VIDEO_PATH, EDIT_PATH})

# LTX-2 style endpoints take width/height in multiples of 64.
DIMENSION_MULTIPLE: Final[int] = 64

_LTX_MARKER: Final[str] = "ltx"
_LTX_MIN_FRAMES: Final[int] = 9


def is_placeholder_path(path: str) -> bool:
    return "{" in path


def has_prompt(endpoint: EndpointDescriptor) -> bool:
    return endpoint.has_any_parameter(PROMPT_PARAMS)


def has_image(endpoint: EndpointDescriptor) -> bool:
    return endpoint.has_any_parameter(IMAGE_PARAMS)


def has_video(endpoint: EndpointDescriptor) -> bool:
    return endpoint.has_any_parameter(VIDEO_PARAMS)


def has_array_parameter(endpoint: EndpointDescriptor, name: str) -> bool:
    p = endpoint.parameter(name)
    return p is not None and p.type == "array"


def is_text_to_video_endpoint(endpoint: EndpointDescriptor) -> bool:
    return endpoint.path == TEXT2VIDEO_PATH or (has_prompt(endpoint) and not has_image(endpoint))


def is_image_to_video_endpoint(endpoint: EndpointDescriptor) -> bool:
    return endpoint.path == IMAGE2VIDEO_PATH or (has_prompt(endpoint) and has_image(endpoint))


def is_image_edit_endpoint(endpoint: EndpointDescriptor) -> bool:
    path = endpoint.path
    if path in EDIT_PATHS:
        return True
    prompt = has_prompt(endpoint)
    if "edit" in path and prompt and has_image(endpoint):
        return True
    # Qwen-style edit: /generate taking an array of base64 images.
    return path == GENERATE_PATH and prompt and has_array_parameter(endpoint, IMAGE_ARRAY_PARAM)


def is_video_to_video_endpoint(endpoint: EndpointDescriptor) -> bool:
    return endpoint.path == VIDEO2VIDEO_PATH or (has_prompt(endpoint) and has_video(endpoint))


def is_keyframe_endpoint(endpoint: EndpointDescriptor) -> bool:
    return "keyframe" in endpoint.path or has_array_parameter(endpoint, KEYFRAME_ARRAY_PARAM)


def is_inference_path(path: str) -> bool:
    return path in _INFERENCE_PATHS or path.startswith(STANDARD_PREFIX)


def is_strict_endpoint(endpoint: EndpointDescriptor) -> bool:
    # OpenAI-compatible routes validate their schema strictly.
    return endpoint.path.startswith(STANDARD_PREFIX)


def is_plain_generate_for_text(endpoint: EndpointDescriptor) -> bool:
    return (
        endpoint.path == GENERATE_PATH
        and has_prompt(endpoint)
        and not endpoint.has_any_parameter(GENERATE_IMAGE_PARAMS)
    )


def is_plain_generate_for_image(endpoint: EndpointDescriptor) -> bool:
    return endpoint.path == GENERATE_PATH and endpoint.has_any_parameter(GENERATE_IMAGE_PARAMS)


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def round_to_multiple(value: int, multiple: int = DIMENSION_MULTIPLE) -> int:
    return round_half_up(value / multiple) * multiple


def is_ltx_chute(chute_url: str | None) -> bool:
    return bool(chute_url) and _LTX_MARKER in chute_url.lower()


def ltx_frame_count(frames: int) -> int:
    """LTX-2 requires `num_frames = 8n + 1` (9, 17, 25, ...)."""
    n = round_half_up((frames - 1) / 8)
    return max(_LTX_MIN_FRAMES, 8 * n + 1)
