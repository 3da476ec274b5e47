"""
Chute capability discovery.

Fetches a chute's `openapi.json`, caches it per base URL for one hour and interprets it into a
`CapabilityDescriptor`. Discovery is best effort: fetch failures, malformed bodies and
placeholder schemas all degrade to a synthetic fallback descriptor instead of raising.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Final, Protocol

from ._internal import capability_rules as rules
from ._internal.config import normalize_base_url
from ._internal.errors import ChutesError
from ._internal.http import request_json
from .types import (
    CapabilityDescriptor,
    EndpointDescriptor,
    EndpointParameter,
    SchemaCacheEntry,
    normalize_primitive_type,
)

logger = logging.getLogger(__name__)

SCHEMA_CACHE_TTL_SECONDS: Final[float] = 3600.0
SCHEMA_PATH: Final[str] = "/openapi.json"

_BODY_METHODS: Final[frozenset[str]] = frozenset({"post", "put"})
_INPUT_ARGS: Final[str] = "input_args"


class SchemaFetcher(Protocol):
    def __call__(self, url: str, *, headers: dict[str, str]) -> dict[str, Any] | None: ...


class SchemaCache:
    """
    Per-base-URL schema cache with a fixed TTL.

    Expired entries are treated as absent but stay in place until overwritten or cleared.
    """

    def __init__(
        self,
        *,
        ttl_seconds: float = SCHEMA_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, SchemaCacheEntry] = {}

    @property
    def ttl_seconds(self) -> float:
        return self._ttl_seconds

    def entry(self, base_url: str) -> SchemaCacheEntry | None:
        entry = self._entries.get(normalize_base_url(base_url))
        if entry is None:
            return None
        if self._clock() - entry.fetched_at >= self._ttl_seconds:
            return None
        return entry

    def get(self, base_url: str) -> dict[str, Any] | None:
        entry = self.entry(base_url)
        return None if entry is None else entry.schema

    def set(self, base_url: str, schema: dict[str, Any]) -> None:
        self._entries[normalize_base_url(base_url)] = SchemaCacheEntry(schema=schema, fetched_at=self._clock())

    def clear(self, base_url: str | None = None) -> int:
        if base_url is None:
            n = len(self._entries)
            self._entries.clear()
            return n
        return 1 if self._entries.pop(normalize_base_url(base_url), None) is not None else 0

    def __contains__(self, base_url: object) -> bool:
        return isinstance(base_url, str) and self.entry(base_url) is not None

    def __len__(self) -> int:
        return sum(1 for key in self._entries if self.entry(key) is not None)


def schema_url(base_url: str) -> str:
    return f"{normalize_base_url(base_url)}{SCHEMA_PATH}"


def auth_headers(api_key: str | None) -> dict[str, str]:
    if not api_key:
        return {}
    return {"Authorization": f"Bearer {api_key}"}


def fetch_openapi_schema(
    url: str,
    *,
    headers: dict[str, str],
    timeout_ms: int | None = None,
    proxy_url: str | None = None,
) -> dict[str, Any] | None:
    """Default fetcher: GET the schema, returning None on any HTTP or decoding failure."""
    try:
        schema = request_json(method="GET", url=url, headers=headers, timeout_ms=timeout_ms, proxy_url=proxy_url)
    except ChutesError as e:
        logger.warning("failed to fetch OpenAPI schema from %s: %s: %s", url, e.info.type, e.info.message)
        return None
    return schema


# ---- Schema interpretation ----


def _object_properties(schema: object) -> tuple[dict[str, Any], list[str]]:
    if not isinstance(schema, dict):
        return {}, []
    props = schema.get("properties")
    if not isinstance(props, dict):
        return {}, []
    required = schema.get("required")
    if not isinstance(required, list):
        required = []
    return props, [r for r in required if isinstance(r, str)]


def _request_body_schema(operation: dict[str, Any]) -> object:
    body = operation.get("requestBody")
    if not isinstance(body, dict):
        return None
    content = body.get("content")
    if not isinstance(content, dict):
        return None
    json_content = content.get("application/json")
    if not isinstance(json_content, dict):
        return None
    return json_content.get("schema")


def extract_parameters(operation: dict[str, Any]) -> tuple[EndpointParameter, ...]:
    """
    Flatten the JSON request body properties of one operation.

    A top-level `input_args` object is unwrapped into its nested properties.
    """
    props, required = _object_properties(_request_body_schema(operation))
    out: list[EndpointParameter] = []
    seen: set[str] = set()

    def _add(name: str, prop: object, required_names: list[str]) -> None:
        if name in seen:
            return
        seen.add(name)
        raw_type = prop.get("type") if isinstance(prop, dict) else None
        out.append(
            EndpointParameter(
                name=name,
                required=name in required_names,
                type=normalize_primitive_type(raw_type),
            )
        )

    for name, prop in props.items():
        if not isinstance(name, str):
            continue
        if name == _INPUT_ARGS and isinstance(prop, dict) and prop.get("type") == "object":
            nested, nested_required = _object_properties(prop)
            if nested:
                logger.debug("unwrapping input_args: %s", list(nested))
                for nested_name, nested_prop in nested.items():
                    if isinstance(nested_name, str):
                        _add(nested_name, nested_prop, nested_required)
                continue
        _add(name, prop, required)
    return tuple(out)


def is_broken_schema(schema: dict[str, Any]) -> bool:
    paths = schema.get("paths")
    if not isinstance(paths, dict):
        return False
    return any(isinstance(p, str) and rules.is_placeholder_path(p) for p in paths)


def parse_endpoints(schema: dict[str, Any]) -> list[EndpointDescriptor]:
    paths = schema.get("paths")
    if not isinstance(paths, dict):
        return []
    endpoints: list[EndpointDescriptor] = []
    for path, path_item in paths.items():
        if not isinstance(path, str) or not isinstance(path_item, dict):
            continue
        for method, operation in path_item.items():
            if not isinstance(method, str) or method.lower() not in _BODY_METHODS:
                continue
            if not isinstance(operation, dict):
                operation = {}
            endpoints.append(
                EndpointDescriptor(
                    path=path,
                    method=method.upper(),  # type: ignore[arg-type]
                    parameters=extract_parameters(operation),
                )
            )
    return endpoints


def _param(name: str, type_: str = "string", *, required: bool = False) -> EndpointParameter:
    return EndpointParameter(name=name, required=required, type=normalize_primitive_type(type_))


# Union of the parameters seen across known chute families (Wan, LTX-2, Qwen image edit).
FALLBACK_ENDPOINTS: Final[tuple[EndpointDescriptor, ...]] = (
    EndpointDescriptor(
        path=rules.GENERATE_PATH,
        method="POST",
        parameters=(
            _param("prompt", required=True),
            _param("image"),
            _param("image_b64"),
            _param("image_url"),
            _param("video_b64"),
            _param("video_url"),
            _param("image_b64s", "array"),
            _param("width", "integer"),
            _param("height", "integer"),
            _param("num_frames", "integer"),
            _param("frame_rate", "integer"),
            _param("negative_prompt"),
            _param("num_inference_steps", "integer"),
            _param("cfg_guidance_scale", "number"),
            _param("true_cfg_scale", "number"),
            _param("seed", "integer"),
            _param("distilled", "boolean"),
        ),
    ),
    EndpointDescriptor(
        path=rules.TEXT2VIDEO_PATH,
        method="POST",
        parameters=(_param("prompt", required=True),),
    ),
    EndpointDescriptor(
        path=rules.IMAGE2VIDEO_PATH,
        method="POST",
        parameters=(_param("prompt", required=True), _param("image_b64", required=True)),
    ),
)


def interpret_schema(schema: dict[str, Any] | None) -> CapabilityDescriptor:
    """
    Turn a raw OpenAPI document (or None) into a `CapabilityDescriptor`.

    Detection is first-match-wins in schema declaration order. The result is
    over-inclusive: unknown chutes get synthetic endpoints and optimistic T2V/I2V support.
    """
    usable: dict[str, Any] | None = schema if isinstance(schema, dict) else None
    if usable is not None and is_broken_schema(usable):
        logger.warning(
            "detected placeholder schema with paths %s; using fallback endpoints", list(usable["paths"])
        )
        usable = None

    endpoints: list[EndpointDescriptor] = parse_endpoints(usable) if usable is not None else []

    found: dict[str, str] = {}
    detectors: tuple[tuple[str, Callable[[EndpointDescriptor], bool]], ...] = (
        ("text2video", rules.is_text_to_video_endpoint),
        ("image2video", rules.is_image_to_video_endpoint),
        ("edit", rules.is_image_edit_endpoint),
        ("video2video", rules.is_video_to_video_endpoint),
        ("keyframe", rules.is_keyframe_endpoint),
    )
    for endpoint in endpoints:
        logger.debug(
            "path %s %s: prompt=%s image=%s params=%s",
            endpoint.method,
            endpoint.path,
            rules.has_prompt(endpoint),
            rules.has_image(endpoint),
            ",".join(endpoint.parameter_names()),
        )
        for capability, detect in detectors:
            if capability not in found and detect(endpoint):
                logger.debug("detected %s support at %s", capability, endpoint.path)
                found[capability] = endpoint.path

    supports_image_edit = "edit" in found
    image_edit_path = found.get("edit")

    if not endpoints or not any(rules.is_inference_path(e.path) for e in endpoints):
        logger.info("no inference endpoints discovered; adding fallback endpoints")
        endpoints.extend(FALLBACK_ENDPOINTS)
        supports_image_edit = True
        image_edit_path = rules.GENERATE_PATH

    supports_t2v = "text2video" in found
    supports_i2v = "image2video" in found
    if not supports_t2v and not supports_i2v:
        # Unknown chutes: assume both video modes.
        supports_t2v = True
        supports_i2v = True

    return CapabilityDescriptor(
        endpoints=tuple(endpoints),
        supports_text_to_video=supports_t2v,
        supports_image_to_video=supports_i2v,
        supports_image_edit=supports_image_edit,
        supports_video_to_video="video2video" in found,
        supports_keyframe_interp="keyframe" in found,
        text_to_video_path=found.get("text2video") or rules.GENERATE_PATH,
        image_to_video_path=found.get("image2video") or rules.GENERATE_PATH,
        image_edit_path=image_edit_path or rules.EDIT_PATH,
        video_to_video_path=found.get("video2video"),
        keyframe_interp_path=found.get("keyframe"),
        schema_found=usable is not None,
    )


# ---- Entry points ----


def _cached_schema(cache: SchemaCache | None, base_url: str) -> dict[str, Any] | None:
    if cache is None:
        return None
    return cache.get(base_url)


def _safe_fetch(fetcher: SchemaFetcher, url: str, headers: dict[str, str]) -> dict[str, Any] | None:
    logger.info("fetching schema from %s", url)
    try:
        schema = fetcher(url, headers=headers)
    except Exception as e:  # noqa: BLE001
        logger.warning("error fetching OpenAPI schema from %s: %s", url, e)
        return None
    if not isinstance(schema, dict):
        if schema is not None:
            logger.warning("ignoring non-object OpenAPI schema from %s", url)
        return None
    paths = schema.get("paths")
    logger.info("parsed schema from %s with paths: %s", url, list(paths) if isinstance(paths, dict) else "NO PATHS")
    return schema


def _safe_interpret(schema: dict[str, Any] | None, base_url: str) -> CapabilityDescriptor:
    try:
        return interpret_schema(schema)
    except Exception as e:  # noqa: BLE001
        logger.warning("failed to interpret schema for %s: %s; using fallback", base_url, e)
        return interpret_schema(None)


def discover_capabilities(
    base_url: str,
    api_key: str | None,
    *,
    cache: SchemaCache | None = None,
    fetcher: SchemaFetcher = fetch_openapi_schema,
) -> CapabilityDescriptor:
    """
    Discover what a chute supports. Total: never raises.

    A live cache entry for `base_url` is reused; otherwise the schema is fetched once and,
    when it decodes to a JSON object, stored before interpretation.
    """
    base = normalize_base_url(base_url)
    schema = _cached_schema(cache, base)
    if schema is None:
        schema = _safe_fetch(fetcher, schema_url(base), auth_headers(api_key))
        if schema is not None and cache is not None:
            cache.set(base, schema)
    return _safe_interpret(schema, base)


async def discover_capabilities_async(
    base_url: str,
    api_key: str | None,
    *,
    cache: SchemaCache | None = None,
    fetcher: SchemaFetcher = fetch_openapi_schema,
) -> CapabilityDescriptor:
    """
    Async variant of `discover_capabilities()`.

    Implementation: the fetch runs in a worker thread via `asyncio.to_thread`. The cache is
    read before and written after the await, so concurrent first calls may both fetch.
    """
    base = normalize_base_url(base_url)
    schema = _cached_schema(cache, base)
    if schema is None:
        schema = await asyncio.to_thread(_safe_fetch, fetcher, schema_url(base), auth_headers(api_key))
        if schema is not None and cache is not None:
            cache.set(base, schema)
    return _safe_interpret(schema, base)
