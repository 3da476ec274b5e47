from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any, Callable, Mapping

from ._internal.config import (
    ResourceType,
    get_api_key,
    get_default_timeout_ms,
    load_env_files,
    normalize_base_url,
    resolve_chute_base_url,
)
from ._internal.errors import ChutesError, invalid_request_error, not_supported_error, provider_error
from ._internal.http import HttpResponse, download_bytes, request
from .discovery import (
    SchemaCache,
    SchemaFetcher,
    discover_capabilities,
    discover_capabilities_async,
    fetch_openapi_schema,
)
from .inputs import prepare_image_inputs
from .request_builder import build_request_body
from .types import (
    EDIT_OPERATIONS,
    OPERATIONS,
    VIDEO_OPERATIONS,
    CapabilityDescriptor,
    InferenceResult,
    Operation,
    RequestPlan,
    extension_for_mime_type,
    sniff_image_mime_type,
    sniff_video_mime_type,
)

logger = logging.getLogger(__name__)

__version__ = "0.1.0"

USER_AGENT = f"chutes-media-sdk/{__version__}"
SOURCE_HEADER = "chutes-media-sdk"

MAX_RATE_LIMIT_RETRIES = 3
RETRY_BASE_DELAY_SECONDS = 1.0
LOW_RATE_LIMIT_REMAINING = 10

_FILE_PREFIXES: dict[str, str] = {
    "text2video": "generated-video",
    "image2video": "animated-video",
    "video2video": "transformed-video",
    "keyframe": "interpolated-video",
    "edit": "edited-image",
    "image_edit": "edited-image",
}


class Client:
    """
    Chute discovery + request planning, with an optional HTTP transport.

    One `Client` owns one schema cache; create separate clients for independent cache
    lifetimes (e.g. per tenant).
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        proxy_url: str | None = None,
        cache: SchemaCache | None = None,
        fetcher: SchemaFetcher | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        load_env_files()
        self._api_key = api_key.strip() if isinstance(api_key, str) and api_key.strip() else get_api_key()
        self._proxy_url = proxy_url.strip() if isinstance(proxy_url, str) and proxy_url.strip() else None
        self._cache = cache if cache is not None else SchemaCache()
        self._fetcher: SchemaFetcher = fetcher if fetcher is not None else self._fetch_schema
        self._sleep = sleep
        self._default_timeout_ms = get_default_timeout_ms()

    @property
    def cache(self) -> SchemaCache:
        return self._cache

    def _fetch_schema(self, url: str, *, headers: dict[str, str]) -> dict[str, Any] | None:
        return fetch_openapi_schema(
            url,
            headers=headers,
            timeout_ms=self._default_timeout_ms,
            proxy_url=self._proxy_url,
        )

    def _download_image(self, url: str) -> bytes:
        return download_bytes(url=url, timeout_ms=self._default_timeout_ms, proxy_url=self._proxy_url)

    def resolve_base_url(self, resource_type: ResourceType | None = None, *, chute_url: str | None = None) -> str:
        return resolve_chute_base_url(resource_type, custom_url=chute_url)

    def discover(self, chute_url: str) -> CapabilityDescriptor:
        return discover_capabilities(chute_url, self._api_key, cache=self._cache, fetcher=self._fetcher)

    async def discover_async(self, chute_url: str) -> CapabilityDescriptor:
        return await discover_capabilities_async(
            chute_url, self._api_key, cache=self._cache, fetcher=self._fetcher
        )

    def clear_schema_cache(self, chute_url: str | None = None) -> int:
        return self._cache.clear(chute_url)

    def plan(self, operation: str, chute_url: str, inputs: Mapping[str, Any]) -> RequestPlan:
        """
        Discover the chute and map `inputs` onto its wire body.

        Image sources (bytes, data URLs, http(s) URLs) are converted to base64 first.
        """
        op = _normalize_operation(operation)
        inputs = prepare_image_inputs(inputs, download=self._download_image)
        caps = self.discover(chute_url)
        logger.debug(
            "capabilities for %s: t2v=%s i2v=%s edit=%s endpoints=%s",
            chute_url,
            caps.supports_text_to_video,
            caps.supports_image_to_video,
            caps.supports_image_edit,
            [e.path for e in caps.endpoints],
        )
        plan = build_request_body(op, caps, inputs)
        if plan is None:
            raise not_supported_error(f"could not find a suitable endpoint for {op}")
        return plan

    def execute(
        self,
        plan: RequestPlan,
        chute_url: str,
        *,
        operation: Operation | None = None,
        timeout_ms: int | None = None,
    ) -> InferenceResult:
        """
        POST a plan to `{chute_url}{plan.endpoint}`.

        Rate-limited calls are retried up to 3 times with exponential backoff (1s, 2s, 4s).
        """
        if not self._api_key:
            raise invalid_request_error("CHUTES_MEDIA_API_KEY/CHUTES_API_KEY not configured")
        url = f"{normalize_base_url(chute_url)}{plan.endpoint}"
        headers = {
            "Authorization": f"Bearer {self._api_key}",
            "Accept": "*/*",
            "User-Agent": USER_AGENT,
            "X-Chutes-Source": SOURCE_HEADER,
        }
        effective_timeout = self._default_timeout_ms if timeout_ms is None else timeout_ms

        attempt = 0
        while True:
            try:
                resp = request(
                    method="POST",
                    url=url,
                    headers=headers,
                    json_body=plan.body,
                    timeout_ms=effective_timeout,
                    proxy_url=self._proxy_url,
                )
                break
            except ChutesError as e:
                if e.info.type != "RateLimitError" or attempt >= MAX_RATE_LIMIT_RETRIES:
                    raise
                delay = RETRY_BASE_DELAY_SECONDS * (2**attempt)
                logger.info("rate limited by %s; retrying in %.1fs", url, delay)
                self._sleep(delay)
                attempt += 1

        _warn_low_rate_limit(resp)
        return _to_result(resp, endpoint=plan.endpoint, operation=operation)

    def run(
        self,
        operation: str,
        chute_url: str,
        inputs: Mapping[str, Any],
        *,
        timeout_ms: int | None = None,
    ) -> InferenceResult:
        op = _normalize_operation(operation)
        plan = self.plan(op, chute_url, inputs)
        logger.info("running %s via %s%s", op, normalize_base_url(chute_url), plan.endpoint)
        return self.execute(plan, chute_url, operation=op, timeout_ms=timeout_ms)

    async def run_async(
        self,
        operation: str,
        chute_url: str,
        inputs: Mapping[str, Any],
        *,
        timeout_ms: int | None = None,
    ) -> InferenceResult:
        """
        Async wrapper for `run()`.

        Implementation: run sync HTTP calls in a worker thread via `asyncio.to_thread`.
        """
        return await asyncio.to_thread(self.run, operation, chute_url, inputs, timeout_ms=timeout_ms)


def _normalize_operation(operation: str) -> Operation:
    op = operation.strip().lower() if isinstance(operation, str) else ""
    if op not in OPERATIONS:
        raise invalid_request_error(f"unknown operation: {operation} (expected one of {', '.join(OPERATIONS)})")
    return op  # type: ignore[return-value]


def _warn_low_rate_limit(resp: HttpResponse) -> None:
    raw = resp.header("x-ratelimit-remaining")
    if raw is None:
        return
    try:
        remaining = int(raw)
    except ValueError:
        return
    if remaining < LOW_RATE_LIMIT_REMAINING:
        logger.warning("low Chutes rate limit: %d requests remaining", remaining)


def _is_json_content_type(content_type: str) -> bool:
    return content_type == "application/json" or content_type.endswith("+json")


def _to_result(resp: HttpResponse, *, endpoint: str, operation: str | None) -> InferenceResult:
    content_type = resp.content_type
    if _is_json_content_type(content_type):
        try:
            obj = json.loads(resp.body) if resp.body else {}
        except ValueError:
            raise provider_error("invalid json response", retryable=True)
        if obj is None:
            # `null` is treated like an empty body.
            obj = {}
        return InferenceResult(endpoint=endpoint, status=resp.status, content_type=content_type, json=obj)

    mime = content_type if content_type.startswith(("image/", "video/")) else None
    if mime is None:
        mime = sniff_video_mime_type(resp.body) or sniff_image_mime_type(resp.body)
    if mime is None and operation in VIDEO_OPERATIONS:
        mime = "video/mp4"
    if mime is None and operation in EDIT_OPERATIONS:
        mime = "image/png"
    prefix = _FILE_PREFIXES.get(operation or "", "output")
    file_name = f"{prefix}-{int(time.time() * 1000)}{extension_for_mime_type(mime)}"
    return InferenceResult(
        endpoint=endpoint,
        status=resp.status,
        content_type=content_type,
        data=resp.body,
        mime_type=mime,
        file_name=file_name,
    )
