from __future__ import annotations

import errno
import http.client
import ipaddress
import json
import os
import socket
import ssl
import urllib.parse
from base64 import b64encode
from dataclasses import dataclass, field
from typing import Any

from .config import get_default_timeout_ms, get_prefixed_env
from .errors import (
    auth_error,
    invalid_request_error,
    not_supported_error,
    provider_error,
    rate_limit_error,
    timeout_error,
)


def _timeout_seconds(timeout_ms: int | None) -> float:
    if timeout_ms is None:
        timeout_ms = get_default_timeout_ms()
    return max(0.001, timeout_ms / 1000.0)


def _env_truthy(name: str) -> bool:
    return os.environ.get(name) in {"1", "true", "TRUE", "yes", "YES"}


def _default_download_max_bytes() -> int:
    raw = get_prefixed_env("URL_DOWNLOAD_MAX_BYTES")
    if raw is None:
        return 64 * 1024 * 1024
    try:
        value = int(raw)
    except ValueError:
        return 64 * 1024 * 1024
    return max(1, value)


def _is_private_ip(ip: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    return bool(
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_multicast
        or ip.is_reserved
        or ip.is_unspecified
    )


def _resolve_host_ips(host: str) -> list[ipaddress.IPv4Address | ipaddress.IPv6Address]:
    out: list[ipaddress.IPv4Address | ipaddress.IPv6Address] = []
    try:
        infos = socket.getaddrinfo(host, None, proto=socket.IPPROTO_TCP)
    except OSError:
        return out
    for family, _, _, _, sockaddr in infos:
        if family not in {socket.AF_INET, socket.AF_INET6}:
            continue
        try:
            ip = ipaddress.ip_address(sockaddr[0])
        except ValueError:
            continue
        if ip not in out:
            out.append(ip)
    return out


def _resolve_url_host_ips(host: str) -> tuple[list[ipaddress.IPv4Address | ipaddress.IPv6Address], bool]:
    """
    Resolve a URL host once and classify it as private/loopback.

    Returns: (resolved_ips, is_private)
    """
    h = host.strip().lower().rstrip(".")
    if h in {"localhost"} or h.endswith(".localhost"):
        return [], True
    try:
        ip = ipaddress.ip_address(h)
    except ValueError:
        ip = None
    if ip is not None:
        return [ip], _is_private_ip(ip)
    resolved = _resolve_host_ips(h)
    return resolved, any(_is_private_ip(x) for x in resolved)


def _proxy_tunnel_headers(proxy: urllib.parse.ParseResult) -> dict[str, str] | None:
    user = proxy.username
    pw = proxy.password
    if user is None and pw is None:
        return None
    user = "" if user is None else user
    pw = "" if pw is None else pw
    token = b64encode(f"{user}:{pw}".encode("utf-8")).decode("ascii")
    return {"Proxy-Authorization": f"Basic {token}"}


class _PinnedHTTPConnection(http.client.HTTPConnection):
    """HTTP connection that keeps `host` for the request but connects to `connect_host`."""

    def __init__(self, host: str, port: int, *, connect_host: str, timeout: float) -> None:
        super().__init__(host, port, timeout=timeout)
        self._connect_host = connect_host

    def connect(self) -> None:
        self.sock = self._create_connection(
            (self._connect_host, self.port),
            self.timeout,
            self.source_address,
        )
        try:
            self.sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as e:
            if e.errno != errno.ENOPROTOOPT:
                raise
        if self._tunnel_host:
            self._tunnel()


class _PinnedHTTPSConnection(http.client.HTTPSConnection):
    def __init__(
        self,
        host: str,
        port: int,
        *,
        connect_host: str,
        tls_server_hostname: str,
        timeout: float,
        context: ssl.SSLContext,
    ) -> None:
        super().__init__(host, port, timeout=timeout, context=context)
        self._connect_host = connect_host
        self._tls_server_hostname = tls_server_hostname

    def connect(self) -> None:
        self.sock = self._create_connection(
            (self._connect_host, self.port),
            self.timeout,
            self.source_address,
        )
        try:
            self.sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        except OSError as e:
            if e.errno != errno.ENOPROTOOPT:
                raise
        if self._tunnel_host:
            self._tunnel()
        self.sock = self._context.wrap_socket(self.sock, server_hostname=self._tls_server_hostname)


def _make_connection(
    parsed: urllib.parse.ParseResult,
    timeout_s: float,
    *,
    proxy_url: str | None,
    connect_host: str | None = None,
    tls_server_hostname: str | None = None,
) -> http.client.HTTPConnection:
    scheme = parsed.scheme.lower()
    target_host = parsed.hostname
    if not target_host:
        raise invalid_request_error(f"invalid url: {parsed.geturl()}")
    is_https = scheme == "https"
    if not is_https and scheme != "http":
        raise invalid_request_error(f"unsupported url scheme: {scheme}")
    target_port = parsed.port or (443 if is_https else 80)

    target_connect_host = target_host if connect_host is None else connect_host
    tls_hostname = target_host if tls_server_hostname is None else tls_server_hostname

    if proxy_url:
        p = urllib.parse.urlparse(proxy_url)
        if not p.hostname:
            raise invalid_request_error(f"invalid proxy url: {proxy_url}")
        if p.scheme.lower() not in {"http", "https"}:
            raise invalid_request_error(f"unsupported proxy url scheme: {p.scheme}")
        proxy_port = p.port or (443 if p.scheme == "https" else 80)
        if is_https:
            conn: http.client.HTTPConnection = _PinnedHTTPSConnection(
                p.hostname,
                proxy_port,
                connect_host=p.hostname,
                tls_server_hostname=tls_hostname,
                timeout=timeout_s,
                context=ssl.create_default_context(),
            )
        else:
            conn = http.client.HTTPConnection(p.hostname, proxy_port, timeout=timeout_s)
        conn.set_tunnel(target_connect_host, target_port, headers=_proxy_tunnel_headers(p))
        return conn

    if is_https:
        ctx = ssl.create_default_context()
        if target_connect_host != target_host or tls_hostname != target_host:
            return _PinnedHTTPSConnection(
                target_host,
                target_port,
                connect_host=target_connect_host,
                tls_server_hostname=tls_hostname,
                timeout=timeout_s,
                context=ctx,
            )
        return http.client.HTTPSConnection(target_host, target_port, timeout=timeout_s, context=ctx)
    if target_connect_host != target_host:
        return _PinnedHTTPConnection(
            target_host,
            target_port,
            connect_host=target_connect_host,
            timeout=timeout_s,
        )
    return http.client.HTTPConnection(target_host, target_port, timeout=timeout_s)


def _path_with_query(parsed: urllib.parse.ParseResult) -> str:
    path = parsed.path or "/"
    if parsed.query:
        return f"{path}?{parsed.query}"
    return path


def _extract_error_message(body: bytes) -> tuple[str, str | None]:
    if not body:
        return "empty error body", None
    try:
        obj = json.loads(body)
    except ValueError:
        text = body.decode("utf-8", errors="replace")
        return text[:2_000], None

    if isinstance(obj, dict):
        if isinstance(obj.get("error"), dict):
            err = obj["error"]
            msg = err.get("message") or err.get("detail") or str(err)
            code = err.get("code") or err.get("status") or None
            return str(msg)[:2_000], str(code) if code is not None else None
        msg = obj.get("detail") or obj.get("message") or str(obj)
        code = obj.get("code") or obj.get("status") or None
        return str(msg)[:2_000], str(code) if code is not None else None

    return str(obj)[:2_000], None


def _raise_for_status(status: int, body: bytes) -> None:
    message, provider_code = _extract_error_message(body)
    if status in (401, 403):
        raise auth_error(message, provider_code=provider_code)
    if status == 429:
        raise rate_limit_error(message, provider_code=provider_code)
    if status in (400, 404, 409, 415, 422):
        raise invalid_request_error(message, provider_code=provider_code)
    if status in (408, 504):
        raise timeout_error(message)
    if 500 <= status <= 599:
        raise provider_error(message, provider_code=provider_code, retryable=True)
    raise provider_error(message, provider_code=provider_code, retryable=False)


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    body: bytes
    headers: dict[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @property
    def content_type(self) -> str:
        raw = self.header("Content-Type") or ""
        return raw.split(";", 1)[0].strip().lower()


def request(
    *,
    method: str,
    url: str,
    headers: dict[str, str] | None = None,
    json_body: Any | None = None,
    timeout_ms: int | None = None,
    proxy_url: str | None = None,
) -> HttpResponse:
    """
    Issue one HTTP request and return the raw response.

    Non-2xx statuses are mapped to `ChutesError` via `_raise_for_status`.
    """
    body = None if json_body is None else json.dumps(json_body, separators=(",", ":")).encode("utf-8")
    req_headers: dict[str, str] = {}
    if body is not None:
        req_headers["Content-Type"] = "application/json"
        req_headers["Content-Length"] = str(len(body))
    if headers:
        req_headers.update(headers)

    parsed = urllib.parse.urlparse(url)
    path = _path_with_query(parsed)
    timeout_s = _timeout_seconds(timeout_ms)
    conn = _make_connection(parsed, timeout_s, proxy_url=proxy_url)
    try:
        conn.request(method.upper(), path, body=body, headers=req_headers)
        resp = conn.getresponse()
        raw = resp.read()
        if resp.status < 200 or resp.status >= 300:
            _raise_for_status(resp.status, raw)
        resp_headers = {k.lower(): v for k, v in (resp.getheaders() or [])}
        return HttpResponse(status=resp.status, body=raw, headers=resp_headers)
    except (socket.timeout, TimeoutError):
        raise timeout_error("request timeout")
    except (ssl.SSLError, http.client.HTTPException, OSError) as e:
        raise provider_error(f"network error: {type(e).__name__}", retryable=True)
    finally:
        conn.close()


def request_json(
    *,
    method: str,
    url: str,
    headers: dict[str, str] | None = None,
    json_body: Any | None = None,
    timeout_ms: int | None = None,
    proxy_url: str | None = None,
) -> dict[str, Any]:
    req_headers = {"Accept": "application/json"}
    if headers:
        req_headers.update(headers)
    resp = request(
        method=method,
        url=url,
        headers=req_headers,
        json_body=json_body,
        timeout_ms=timeout_ms,
        proxy_url=proxy_url,
    )
    if not resp.body:
        return {}
    try:
        obj = json.loads(resp.body)
    except ValueError:
        raise provider_error("invalid json response", retryable=True)
    if not isinstance(obj, dict):
        raise provider_error("invalid json response", retryable=True)
    return obj


def download_bytes(
    *,
    url: str,
    timeout_ms: int | None = None,
    max_bytes: int | None = None,
    proxy_url: str | None = None,
) -> bytes:
    """
    Download a URL into memory, following up to 5 redirects.

    Security: rejects private/loopback hosts unless `CHUTES_MEDIA_ALLOW_PRIVATE_URLS=1`.
    """
    effective_max = _default_download_max_bytes() if max_bytes is None else max_bytes
    if effective_max <= 0:
        raise invalid_request_error("max_bytes must be positive")

    cur = url
    for _ in range(5):
        parsed = urllib.parse.urlparse(cur)
        if parsed.scheme.lower() not in {"http", "https"}:
            raise invalid_request_error(f"unsupported url scheme: {parsed.scheme}")
        if not parsed.hostname:
            raise invalid_request_error(f"invalid url: {cur}")
        resolved, is_private = _resolve_url_host_ips(parsed.hostname)
        if is_private and not _env_truthy("CHUTES_MEDIA_ALLOW_PRIVATE_URLS"):
            raise invalid_request_error(
                "url host is private/loopback; set CHUTES_MEDIA_ALLOW_PRIVATE_URLS=1 to allow"
            )
        if not resolved:
            raise provider_error(f"dns resolution failed: {parsed.hostname}", retryable=True)

        # Connect to the address that was checked; never re-resolve the name.
        conn = _make_connection(
            parsed,
            _timeout_seconds(timeout_ms),
            proxy_url=proxy_url,
            connect_host=str(resolved[0]),
            tls_server_hostname=parsed.hostname,
        )
        try:
            req_headers = {"Accept": "*/*"}
            if proxy_url:
                default_port = 443 if parsed.scheme.lower() == "https" else 80
                target_port = parsed.port or default_port
                req_headers["Host"] = (
                    parsed.hostname if target_port == default_port else f"{parsed.hostname}:{target_port}"
                )
            conn.request("GET", _path_with_query(parsed), headers=req_headers)
            resp = conn.getresponse()
            if resp.status in {301, 302, 303, 307, 308}:
                loc = resp.getheader("Location")
                if not loc:
                    raise provider_error("redirect response missing Location header")
                cur = urllib.parse.urljoin(cur, loc)
                continue
            if resp.status < 200 or resp.status >= 300:
                raw = resp.read(64 * 1024 + 1)
                _raise_for_status(resp.status, raw[: 64 * 1024])

            chunks: list[bytes] = []
            total = 0
            while True:
                chunk = resp.read(64 * 1024)
                if not chunk:
                    break
                total += len(chunk)
                if total > effective_max:
                    raise not_supported_error(
                        f"url download exceeded limit ({total} > {effective_max}); "
                        "set CHUTES_MEDIA_URL_DOWNLOAD_MAX_BYTES"
                    )
                chunks.append(chunk)
            return b"".join(chunks)
        except (socket.timeout, TimeoutError):
            raise timeout_error("request timeout")
        except (ssl.SSLError, http.client.HTTPException, OSError) as e:
            raise provider_error(f"network error: {type(e).__name__}", retryable=True)
        finally:
            conn.close()

    raise provider_error("too many redirects", retryable=False)
