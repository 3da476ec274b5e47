from __future__ import annotations

import argparse
import os
from hmac import compare_digest
from typing import Any, TypedDict

from .client import Client


class CacheClearInfo(TypedDict):
    cleared: int


class RequestPlanInfo(TypedDict):
    endpoint: str
    body: dict[str, Any]


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value


def _get_host_port() -> tuple[str, int]:
    host = os.environ.get("CHUTES_MEDIA_MCP_HOST", "").strip() or "127.0.0.1"
    port = _env_int("CHUTES_MEDIA_MCP_PORT", 6011)
    if port < 1:
        port = 1
    if port > 65535:
        port = 65535
    return host, port


def build_server(
    *,
    proxy_url: str | None = None,
    host: str | None = None,
    port: int | None = None,
    client: Client | None = None,
):
    """
    Build a FastMCP server that exposes:
    - discover_capabilities: what a chute supports (flags, preferred paths, endpoints)
    - build_request: the endpoint + JSON body for an operation against a chute
    - clear_schema_cache: drop cached OpenAPI schemas

    Notes for LLM tool callers:
    - `chute_url` is the chute base URL, e.g. "https://chutes-ltx-2.chutes.ai".
    - Call `discover_capabilities` first when unsure which operations a chute supports.
    """
    try:
        from mcp.server.fastmcp import FastMCP
    except ModuleNotFoundError as e:  # pragma: no cover
        raise SystemExit("missing dependency: install `mcp` to run the MCP server") from e

    try:
        from pydantic import Field
    except ModuleNotFoundError as e:  # pragma: no cover
        raise SystemExit("missing dependency: install `mcp` to run the MCP server") from e
    from typing import Annotated
    from starlette.requests import Request
    from starlette.responses import JSONResponse, Response

    from ._internal.errors import ChutesError, describe_error
    from .types import OPERATIONS

    if host is None or port is None:
        host, port = _get_host_port()
    server = FastMCP(name="ChutesMedia", host=host, port=port)
    sdk = client if client is not None else Client(proxy_url=proxy_url)

    @server.custom_route("/healthz", methods=["GET"], include_in_schema=False)
    async def healthz(request: Request) -> Response:
        return JSONResponse({"status": "ok", "cached_schemas": len(sdk.cache)})

    def discover_capabilities(chute_url: str, refresh: bool = False) -> dict[str, Any]:
        """
        Discover what a chute supports from its OpenAPI schema.

        Never fails: unreachable or malformed schemas yield fallback endpoints with
        `schema_found=false`.
        """
        if refresh:
            sdk.clear_schema_cache(chute_url)
        return sdk.discover(chute_url).to_dict()

    def build_request(operation: str, chute_url: str, inputs: dict[str, Any]) -> RequestPlanInfo:
        """
        Build the endpoint path and flat JSON body for `operation`.

        `inputs` uses logical names (prompt, image, resolution, steps, frames, fps, seed,
        guidance_scale, negative_prompt, ...); they are mapped onto the chute's declared names.
        """
        try:
            plan = sdk.plan(operation, chute_url, inputs)
        except ChutesError as e:
            raise ValueError(describe_error(e)) from None
        return {"endpoint": plan.endpoint, "body": dict(plan.body)}

    def clear_schema_cache(chute_url: str | None = None) -> CacheClearInfo:
        """Drop the cached schema for one chute, or all cached schemas when omitted."""
        return {"cleared": sdk.clear_schema_cache(chute_url)}

    discover_capabilities.__annotations__["chute_url"] = Annotated[
        str,
        Field(description="Chute base URL.", examples=["https://chutes-ltx-2.chutes.ai"]),
    ]
    discover_capabilities.__annotations__["refresh"] = Annotated[
        bool,
        Field(default=False, description="Re-fetch the schema even if cached."),
    ]
    build_request.__annotations__["operation"] = Annotated[
        str,
        Field(description=f"One of: {', '.join(OPERATIONS)}.", examples=["text2video"]),
    ]
    build_request.__annotations__["chute_url"] = Annotated[
        str,
        Field(description="Chute base URL."),
    ]
    build_request.__annotations__["inputs"] = Annotated[
        dict[str, Any],
        Field(
            description="Logical parameter bag.",
            examples=[{"prompt": "a red fox running through snow", "resolution": "1280*720"}],
        ),
    ]
    clear_schema_cache.__annotations__["chute_url"] = Annotated[
        str | None,
        Field(default=None, description="Chute base URL; omit to clear every entry."),
    ]

    server.tool(structured_output=True)(discover_capabilities)
    server.tool(structured_output=True)(build_request)
    server.tool(structured_output=True)(clear_schema_cache)
    return server


def build_http_app(server: Any) -> Any:
    from starlette.routing import Mount, Route

    app = server.streamable_http_app()
    sse = server.sse_app()
    sse_path = server.settings.sse_path
    message_path = server.settings.message_path.rstrip("/")

    for route in sse.router.routes:
        if isinstance(route, Route) and route.path == sse_path:
            app.router.routes.append(route)
            continue
        if isinstance(route, Mount) and route.path.rstrip("/") == message_path:
            app.router.routes.append(route)
            continue
    return app


def main(argv: list[str] | None = None) -> None:
    from ._internal.config import load_env_files

    load_env_files()

    parser = argparse.ArgumentParser(
        prog="chutes-media-mcp-server",
        description="chutes-media-sdk MCP server (Streamable HTTP: /mcp, SSE: /sse)",
    )
    parser.add_argument(
        "--proxy",
        dest="proxy_url",
        help="HTTP proxy URL for chute requests (e.g. http://127.0.0.1:7890)",
    )
    parser.add_argument(
        "--bearer-token",
        dest="bearer_token",
        help="Require HTTP Authorization: Bearer <token> for all endpoints (or set CHUTES_MEDIA_MCP_BEARER_TOKEN).",
    )
    args = parser.parse_args(argv)
    bearer = (args.bearer_token or os.environ.get("CHUTES_MEDIA_MCP_BEARER_TOKEN") or "").strip()

    server_host, server_port = _get_host_port()
    server = build_server(proxy_url=args.proxy_url, host=server_host, port=server_port)
    app = build_http_app(server)
    if bearer:
        app.add_middleware(_BearerAuthMiddleware, token=bearer)

    try:
        import uvicorn
    except ModuleNotFoundError as e:  # pragma: no cover
        raise SystemExit("missing dependency: install `uvicorn` to run the MCP server") from e

    uvicorn.run(app, host=server_host, port=server_port, log_level=server.settings.log_level.lower())


class _BearerAuthMiddleware:
    def __init__(self, app: Any, *, token: str) -> None:
        self.app = app
        token = token.strip() if isinstance(token, str) else ""
        if not token:
            raise ValueError("missing auth config: pass token=...")
        self._token = token

    def _authorized(self, scope: Any) -> bool:
        raw = None
        for k, v in scope.get("headers") or []:
            if k.lower() == b"authorization":
                raw = v
                break
        if not raw:
            return False
        header = raw.decode("utf-8", errors="replace").strip()
        if not header.lower().startswith("bearer "):
            return False
        return compare_digest(header[7:].strip(), self._token)

    async def __call__(self, scope: Any, receive: Any, send: Any) -> None:
        if scope.get("type") != "http" or self._authorized(scope):
            await self.app(scope, receive, send)
            return
        await _send_unauthorized(send)


async def _send_unauthorized(send: Any) -> None:
    body = b'{"error":"invalid_token","error_description":"Authentication required"}'
    await send(
        {
            "type": "http.response.start",
            "status": 401,
            "headers": [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
                (b"www-authenticate", b'Bearer error="invalid_token", error_description="Authentication required"'),
            ],
        }
    )
    await send({"type": "http.response.body", "body": body})


if __name__ == "__main__":  # pragma: no cover
    main()
