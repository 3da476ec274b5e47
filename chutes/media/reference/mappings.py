from __future__ import annotations

from types import MappingProxyType
from typing import Final, Mapping, TypedDict


class ParameterMapping(TypedDict):
    name: str
    aliases: list[str]
    notes: str


# Logical parameter name -> wire names to try, in order, against an endpoint's
# declared parameters. The first declared alias wins.
PARAMETER_ALIASES: Final[Mapping[str, tuple[str, ...]]] = MappingProxyType(
    {
        "prompt": ("prompt", "text", "description"),
        "image": ("image", "image_b64", "image_url", "input_image"),
        # No aliases: an image array must never collapse back to `image`.
        "image_b64s": ("image_b64s",),
        "resolution": ("resolution", "size", "dimensions"),
        "steps": ("steps", "num_inference_steps", "sampling_steps"),
        "fps": ("fps", "frame_rate", "frames_per_second"),
        "frames": ("frames", "num_frames", "frame_num"),
        "seed": ("seed", "random_seed"),
        "n": ("n", "num_images", "num_outputs"),
        "response_format": ("response_format", "format", "output_format"),
        # LTX-2 uses cfg_guidance_scale.
        "guidance_scale": ("cfg_guidance_scale", "guidance_scale", "true_cfg_scale", "cfg_scale"),
        "negative_prompt": ("negative_prompt", "neg_prompt"),
    }
)

_NOTES: Final[dict[str, str]] = {
    "image_b64s": "never aliased to image",
    "guidance_scale": "LTX-2 first",
    "n": "number of outputs",
    "response_format": "url / b64_json",
}


def aliases_for(name: str) -> tuple[str, ...]:
    return PARAMETER_ALIASES.get(name, ())


def get_parameter_mappings() -> list[ParameterMapping]:
    return [
        {"name": name, "aliases": list(aliases), "notes": _NOTES.get(name, "")}
        for name, aliases in PARAMETER_ALIASES.items()
    ]
