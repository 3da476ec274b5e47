from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any

from .client import Client
from ._internal.errors import ChutesError, describe_error
from .reference import get_parameter_mappings
from .types import OPERATIONS, CapabilityDescriptor


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="chutes-media", description="chutes-media-sdk CLI (discovery + request planning)"
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    disc = sub.add_parser("discover", help="Discover what a chute supports from its OpenAPI schema")
    disc.add_argument("--chute-url", required=True, help="Chute base URL (e.g. https://x-ltx-2.chutes.ai)")
    disc.add_argument("--refresh", action="store_true", help="Drop any cached schema before discovery")
    disc.add_argument("--json", action="store_true", help="Print the full descriptor as JSON")

    pl = sub.add_parser("plan", help="Print the endpoint + body that would be sent")
    _add_request_args(pl)

    run = sub.add_parser("run", help="Discover, plan and execute against a chute")
    _add_request_args(run)
    run.add_argument("--output-path", help="Write binary output to this file")
    run.add_argument(
        "--timeout-ms",
        type=int,
        help="Timeout budget in milliseconds (overrides CHUTES_MEDIA_TIMEOUT_MS)",
    )

    sub.add_parser("mapping", help="Print parameter alias table")

    args = parser.parse_args(argv)
    _configure_logging(verbose=bool(args.verbose))

    timeout_ms: int | None = getattr(args, "timeout_ms", None)
    if timeout_ms is not None and timeout_ms < 1:
        raise SystemExit("--timeout-ms must be >= 1")

    if args.command == "mapping":
        try:
            _print_mappings()
        except BrokenPipeError:
            return
        return

    try:
        client = Client()
        if args.command == "discover":
            if args.refresh:
                client.clear_schema_cache(args.chute_url)
            caps = client.discover(args.chute_url)
            if args.json:
                print(json.dumps(caps.to_dict(), ensure_ascii=False, indent=2))
            else:
                _print_capabilities(caps)
            return

        inputs = _parse_inputs(params=args.param or [], params_json=args.params_json)
        if args.command == "plan":
            plan = client.plan(args.operation, args.chute_url, inputs)
            print(json.dumps(plan.to_dict(), ensure_ascii=False, indent=2))
            return

        if args.command == "run":
            result = client.run(args.operation, args.chute_url, inputs, timeout_ms=timeout_ms)
            if not result.is_binary:
                print(json.dumps(result.json, ensure_ascii=False, indent=2))
                return
            data = result.data or b""
            path = args.output_path or result.file_name or "chutes_output.bin"
            with open(path, "wb") as f:
                f.write(data)
            print(f"[OK] wrote {path} ({result.mime_type}, {len(data)} bytes)")
            return

        raise SystemExit(f"unknown command: {args.command}")
    except ChutesError as e:
        raise SystemExit(describe_error(e)) from None


def _add_request_args(p: argparse.ArgumentParser) -> None:
    p.add_argument("--chute-url", required=True, help="Chute base URL")
    p.add_argument("--operation", required=True, choices=list(OPERATIONS), help="Operation to plan")
    p.add_argument(
        "--param",
        action="append",
        metavar="KEY=VALUE",
        help="Logical input (repeatable); VALUE is parsed as JSON when possible",
    )
    p.add_argument("--params-json", help="Logical inputs as a JSON object (merged before --param)")


def _configure_logging(*, verbose: bool) -> None:
    level_name = os.environ.get("CHUTES_LOG_LEVEL", "").strip().upper()
    if verbose:
        level_name = "DEBUG"
    if not level_name:
        return
    level = getattr(logging, level_name, None)
    if not isinstance(level, int):
        raise SystemExit(f"invalid CHUTES_LOG_LEVEL: {level_name}")
    logging.basicConfig(level=level, stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _parse_inputs(*, params: list[str], params_json: str | None) -> dict[str, Any]:
    inputs: dict[str, Any] = {}
    if params_json:
        try:
            obj = json.loads(params_json)
        except ValueError as e:
            raise SystemExit(f"invalid --params-json: {e}") from None
        if not isinstance(obj, dict):
            raise SystemExit("--params-json must be a JSON object")
        inputs.update(obj)
    for item in params:
        if "=" not in item:
            raise SystemExit(f"invalid --param (expected KEY=VALUE): {item}")
        key, raw = item.split("=", 1)
        key = key.strip()
        if not key:
            raise SystemExit(f"invalid --param (empty key): {item}")
        inputs[key] = _parse_value(raw)
    return inputs


def _print_capabilities(caps: CapabilityDescriptor) -> None:
    print(f"schema_found: {caps.schema_found}")
    rows = [
        ("text2video", caps.supports_text_to_video, caps.text_to_video_path),
        ("image2video", caps.supports_image_to_video, caps.image_to_video_path),
        ("edit", caps.supports_image_edit, caps.image_edit_path),
        ("video2video", caps.supports_video_to_video, caps.video_to_video_path),
        ("keyframe", caps.supports_keyframe_interp, caps.keyframe_interp_path),
    ]
    for name, supported, path in rows:
        flag = "yes" if supported else "no"
        print(f"{name:12} {flag:4} {path or '-'}")
    print()
    for e in caps.endpoints:
        print(f"{e.method:5} {e.path:24} {','.join(e.parameter_names())}")


def _print_mappings() -> None:
    for m in get_parameter_mappings():
        note = f"  # {m['notes']}" if m["notes"] else ""
        print(f"{m['name']:16} -> {', '.join(m['aliases'])}{note}")


if __name__ == "__main__":
    main()
