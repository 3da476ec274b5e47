from __future__ import annotations

import logging
from typing import Any, Final, Mapping

from ._internal import capability_rules as rules
from .reference.mappings import PARAMETER_ALIASES
from .types import EDIT_OPERATIONS, CapabilityDescriptor, EndpointDescriptor, Operation, RequestPlan

logger = logging.getLogger(__name__)

_FALLBACK_PATHS: Final[dict[str, str]] = {
    "text2video": rules.TEXT2VIDEO_PATH,
    "edit": rules.EDIT_PATH,
    "image_edit": rules.EDIT_PATH,
}


def resolve_endpoint(operation: Operation, capabilities: CapabilityDescriptor) -> EndpointDescriptor | None:
    """
    Pick the discovered endpoint for an operation.

    Order: preferred capability path, operation heuristic, then any `/generate`.
    """
    endpoints = capabilities.endpoints
    target = capabilities.find_endpoint(capabilities.preferred_path(operation))

    if target is None:
        if operation == "text2video":
            target = next((e for e in endpoints if rules.is_plain_generate_for_text(e)), None)
        elif operation == "image2video":
            target = next((e for e in endpoints if rules.is_plain_generate_for_image(e)), None)
        elif operation in EDIT_OPERATIONS:
            target = next((e for e in endpoints if e.path in rules.EDIT_PATHS), None)

    if target is None:
        target = capabilities.find_endpoint(rules.GENERATE_PATH)
    return target


def _split_resolution(value: object) -> tuple[int, int] | None:
    if not isinstance(value, str):
        return None
    parts = value.split("*")
    if len(parts) != 2:
        return None
    try:
        width = int(parts[0].strip())
        height = int(parts[1].strip())
    except ValueError:
        return None
    return width, height


def _decompose_resolution(inputs: dict[str, Any], endpoint: EndpointDescriptor) -> None:
    if "resolution" not in inputs or endpoint.has_parameter("resolution"):
        return
    if not (endpoint.has_parameter("width") or endpoint.has_parameter("height")):
        return
    dims = _split_resolution(inputs["resolution"])
    if dims is None:
        return
    width = rules.round_to_multiple(dims[0])
    height = rules.round_to_multiple(dims[1])
    logger.debug("converted resolution %r to width=%d height=%d", inputs["resolution"], width, height)
    inputs["width"] = width
    inputs["height"] = height
    del inputs["resolution"]


def _compose_size(inputs: dict[str, Any], endpoint: EndpointDescriptor) -> None:
    width = inputs.get("width")
    height = inputs.get("height")
    if not width or not height or not endpoint.has_parameter("size"):
        return
    inputs["size"] = f"{width}x{height}"
    logger.debug("converted width=%s height=%s to size=%s", width, height, inputs["size"])
    if not endpoint.has_parameter("width"):
        del inputs["width"]
    if not endpoint.has_parameter("height"):
        del inputs["height"]


def _coerce_image_array(operation: str, inputs: dict[str, Any], endpoint: EndpointDescriptor) -> None:
    # Edit chutes (Qwen image edit) take 1-3 images; video chutes keep the singular image.
    if operation not in EDIT_OPERATIONS:
        return
    if not inputs.get("image") or inputs.get(rules.IMAGE_ARRAY_PARAM) is not None:
        return
    if not rules.has_array_parameter(endpoint, rules.IMAGE_ARRAY_PARAM):
        return
    inputs[rules.IMAGE_ARRAY_PARAM] = [inputs.pop("image")]
    logger.debug("wrapped singular image into image_b64s for %s", operation)


def _wire_name(key: str, endpoint: EndpointDescriptor) -> str | None:
    if endpoint.has_parameter(key):
        return key
    for alias in PARAMETER_ALIASES.get(key, ()):
        if endpoint.has_parameter(alias):
            return alias
    return None


def map_parameters(inputs: Mapping[str, Any], endpoint: EndpointDescriptor) -> dict[str, Any]:
    """
    Map logical keys onto the endpoint's declared parameter names.

    Unmapped keys pass through for custom chute routes and are dropped for `/v1/` routes.
    """
    strict = rules.is_strict_endpoint(endpoint)
    body: dict[str, Any] = {}
    for key, value in inputs.items():
        wire = _wire_name(key, endpoint)
        if wire is not None:
            if wire != key:
                logger.debug("mapped %s -> %s for %s", key, wire, endpoint.path)
            body[wire] = value
            continue
        if strict:
            logger.warning("skipping unmapped parameter %r for strict endpoint %s", key, endpoint.path)
            continue
        body[key] = value
    return body


def build_request_body(
    operation: Operation,
    capabilities: CapabilityDescriptor,
    inputs: Mapping[str, Any],
) -> RequestPlan | None:
    """
    Build the endpoint + flat JSON body for `operation` against a discovered chute.

    Pure and synchronous; never validates caller input. Callers should still handle `None`,
    although every current path yields a plan.
    """
    endpoint = resolve_endpoint(operation, capabilities)
    if endpoint is None:
        path = _FALLBACK_PATHS.get(operation, rules.GENERATE_PATH)
        logger.info("using final fallback endpoint %s for operation %s", path, operation)
        return RequestPlan(endpoint=path, body=dict(inputs))

    modified = dict(inputs)
    _decompose_resolution(modified, endpoint)
    _compose_size(modified, endpoint)
    _coerce_image_array(operation, modified, endpoint)
    body = map_parameters(modified, endpoint)
    logger.debug("endpoint %s body keys: %s", endpoint.path, ",".join(body))
    return RequestPlan(endpoint=endpoint.path, body=body)
