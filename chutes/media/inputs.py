from __future__ import annotations

import re
from typing import Any, Callable, Iterable, Mapping

from ._internal import capability_rules as rules
from ._internal.errors import invalid_request_error
from ._internal.http import download_bytes
from .types import bytes_to_base64

DEFAULT_DURATION_SECONDS = 5.0
DEFAULT_FPS = 24

_DATA_URL_RE = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)


def frames_for_duration(
    duration: float | None = None,
    fps: float | None = None,
    *,
    chute_url: str | None = None,
) -> int:
    duration = DEFAULT_DURATION_SECONDS if duration is None else float(duration)
    fps = DEFAULT_FPS if fps is None else float(fps)
    frames = rules.round_half_up(duration * fps)
    if rules.is_ltx_chute(chute_url):
        frames = rules.ltx_frame_count(frames)
    return frames


def video_inputs(
    prompt: str,
    *,
    resolution: str | None = None,
    steps: int | None = None,
    seed: int | None = None,
    duration: float | None = None,
    fps: float | None = None,
    chute_url: str | None = None,
) -> dict[str, Any]:
    """
    Logical parameter bag for the video operations.

    `frames` is derived from duration * fps (5s at 24fps by default).
    """
    out: dict[str, Any] = {"prompt": prompt}
    if resolution:
        out["resolution"] = resolution
    if steps:
        out["steps"] = steps
    if seed is not None:
        out["seed"] = seed
    effective_fps = DEFAULT_FPS if fps is None else fps
    out["frames"] = frames_for_duration(duration, effective_fps, chute_url=chute_url)
    out["fps"] = effective_fps
    return out


def normalize_image_input(
    value: bytes | bytearray | str | None,
    *,
    download: Callable[[str], bytes] | None = None,
) -> str:
    """
    Return base64 image data for bytes, a data URL, an http(s) URL or a base64 string.
    """
    if isinstance(value, (bytes, bytearray)):
        if not value:
            raise invalid_request_error("image data is empty")
        return bytes_to_base64(bytes(value))
    if not isinstance(value, str) or not value.strip():
        raise invalid_request_error("no image data provided")

    raw = value.strip()
    if raw.startswith("data:"):
        m = _DATA_URL_RE.match(raw)
        if m is None:
            raise invalid_request_error("invalid data URL format; expected data:image/TYPE;base64,BASE64_DATA")
        return m.group(2)
    if raw.startswith(("http://", "https://")):
        fetch = download or (lambda url: download_bytes(url=url))
        data = fetch(raw)
        if not data:
            raise invalid_request_error(f"downloaded image is empty: {raw}")
        return bytes_to_base64(data)
    return raw


def keyframe_images(
    items: Iterable[tuple[Any, int | None, float | None] | dict[str, Any] | str | bytes],
    *,
    download: Callable[[str], bytes] | None = None,
) -> list[dict[str, Any]]:
    out: list[dict[str, Any]] = []
    for item in items:
        if isinstance(item, dict):
            image = item.get("image") if "image" in item else item.get("image_b64")
            frame_index = item.get("frame_index")
            strength = item.get("strength")
        elif isinstance(item, (str, bytes, bytearray)):
            image, frame_index, strength = item, None, None
        else:
            image, frame_index, strength = item
        out.append(
            {
                "image_b64": normalize_image_input(image, download=download),
                "frame_index": 0 if frame_index is None else int(frame_index),
                "strength": 1.0 if strength is None else float(strength),
            }
        )
    return out


def prepare_image_inputs(
    inputs: Mapping[str, Any],
    *,
    download: Callable[[str], bytes] | None = None,
) -> dict[str, Any]:
    """
    Copy `inputs` with every image source turned into base64 data.

    Covers `image`/`image_b64`, each `image_b64s` entry and each keyframe in `images`.
    Missing or empty values are left for the chute to reject.
    """
    out = dict(inputs)
    for key in ("image", "image_b64"):
        value = out.get(key)
        if isinstance(value, (bytes, bytearray)) or (isinstance(value, str) and value.strip()):
            out[key] = normalize_image_input(value, download=download)
    items = out.get("image_b64s")
    if isinstance(items, (list, tuple)):
        out["image_b64s"] = [normalize_image_input(v, download=download) for v in items]
    frames = out.get("images")
    if isinstance(frames, (list, tuple)) and frames:
        out["images"] = keyframe_images(frames, download=download)
    return out
