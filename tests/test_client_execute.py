import asyncio
import os
import unittest
from unittest.mock import patch


def _dual_schema() -> dict:
    def _op(props: dict) -> dict:
        return {"requestBody": {"content": {"application/json": {"schema": {"type": "object", "properties": props}}}}}

    return {
        "paths": {
            "/text2video": {"post": _op({"prompt": {"type": "string"}, "num_frames": {"type": "integer"}})},
            "/image2video": {"post": _op({"prompt": {"type": "string"}, "image_b64": {"type": "string"}})},
        }
    }


def _make_client(*, fetcher=None, sleep=None, api_key: str | None = "k"):  # type: ignore[no-untyped-def]
    from chutes.media.client import Client

    sleeps: list[float] = []
    client = Client(
        api_key=api_key,
        fetcher=fetcher or (lambda url, *, headers: _dual_schema()),
        sleep=sleep or sleeps.append,
    )
    return client, sleeps


class TestClientExecute(unittest.TestCase):
    def test_json_response(self) -> None:
        from chutes.media._internal.http import HttpResponse
        from chutes.media.types import RequestPlan

        client, _ = _make_client()
        resp = HttpResponse(status=200, body=b'{"url":"https://cdn/x.mp4"}', headers={"content-type": "application/json"})
        with patch("chutes.media.client.request", return_value=resp) as req:
            result = client.execute(RequestPlan(endpoint="/generate", body={"prompt": "p"}), "https://x.chutes.ai/")

        self.assertFalse(result.is_binary)
        self.assertEqual(result.json, {"url": "https://cdn/x.mp4"})
        kwargs = req.call_args.kwargs
        self.assertEqual(kwargs["method"], "POST")
        self.assertEqual(kwargs["url"], "https://x.chutes.ai/generate")
        self.assertEqual(kwargs["json_body"], {"prompt": "p"})
        self.assertEqual(kwargs["headers"]["Authorization"], "Bearer k")
        self.assertEqual(kwargs["headers"]["X-Chutes-Source"], "chutes-media-sdk")
        self.assertTrue(kwargs["headers"]["User-Agent"].startswith("chutes-media-sdk/"))

    def test_binary_response_is_sniffed(self) -> None:
        from chutes.media._internal.http import HttpResponse
        from chutes.media.types import RequestPlan

        client, _ = _make_client()
        mp4 = b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 16
        resp = HttpResponse(status=200, body=mp4, headers={"content-type": "application/octet-stream"})
        with patch("chutes.media.client.request", return_value=resp):
            result = client.execute(
                RequestPlan(endpoint="/generate", body={}), "https://x.chutes.ai", operation="text2video"
            )

        self.assertTrue(result.is_binary)
        self.assertEqual(result.data, mp4)
        self.assertEqual(result.mime_type, "video/mp4")
        assert result.file_name is not None
        self.assertTrue(result.file_name.startswith("generated-video-"))
        self.assertTrue(result.file_name.endswith(".mp4"))

    def test_edit_binary_defaults(self) -> None:
        from chutes.media._internal.http import HttpResponse
        from chutes.media.types import RequestPlan

        client, _ = _make_client()
        resp = HttpResponse(status=200, body=b"\x89PNG\r\n\x1a\n....", headers={"content-type": "image/png"})
        with patch("chutes.media.client.request", return_value=resp):
            result = client.execute(RequestPlan(endpoint="/edit", body={}), "https://x.chutes.ai", operation="edit")

        self.assertEqual(result.mime_type, "image/png")
        assert result.file_name is not None
        self.assertTrue(result.file_name.startswith("edited-image-"))
        self.assertTrue(result.file_name.endswith(".png"))

    def test_rate_limit_is_retried_with_backoff(self) -> None:
        from chutes.media._internal.errors import rate_limit_error
        from chutes.media._internal.http import HttpResponse
        from chutes.media.types import RequestPlan

        client, sleeps = _make_client()
        ok = HttpResponse(status=200, body=b"{}", headers={"content-type": "application/json"})
        with patch(
            "chutes.media.client.request",
            side_effect=[rate_limit_error("slow"), rate_limit_error("slow"), ok],
        ) as req:
            result = client.execute(RequestPlan(endpoint="/generate", body={}), "https://x.chutes.ai")

        self.assertEqual(req.call_count, 3)
        self.assertEqual(sleeps, [1.0, 2.0])
        self.assertEqual(result.json, {})

    def test_rate_limit_gives_up_after_three_retries(self) -> None:
        from chutes.media._internal.errors import ChutesError, rate_limit_error
        from chutes.media.types import RequestPlan

        client, sleeps = _make_client()
        with patch("chutes.media.client.request", side_effect=rate_limit_error("slow")) as req:
            with self.assertRaises(ChutesError) as cm:
                client.execute(RequestPlan(endpoint="/generate", body={}), "https://x.chutes.ai")

        self.assertEqual(cm.exception.info.type, "RateLimitError")
        self.assertEqual(req.call_count, 4)
        self.assertEqual(sleeps, [1.0, 2.0, 4.0])

    def test_other_errors_are_not_retried(self) -> None:
        from chutes.media._internal.errors import ChutesError, provider_error
        from chutes.media.types import RequestPlan

        client, sleeps = _make_client()
        with patch("chutes.media.client.request", side_effect=provider_error("boom", retryable=True)) as req:
            with self.assertRaises(ChutesError):
                client.execute(RequestPlan(endpoint="/generate", body={}), "https://x.chutes.ai")

        self.assertEqual(req.call_count, 1)
        self.assertEqual(sleeps, [])

    def test_missing_api_key(self) -> None:
        from chutes.media._internal.errors import ChutesError
        from chutes.media.types import RequestPlan

        with patch.dict(os.environ, {}, clear=True):
            with patch("chutes.media.client.load_env_files", return_value=[]):
                client, _ = _make_client(api_key=None)
            with patch("chutes.media.client.request") as req:
                with self.assertRaises(ChutesError) as cm:
                    client.execute(RequestPlan(endpoint="/generate", body={}), "https://x.chutes.ai")

        self.assertEqual(cm.exception.info.type, "InvalidRequestError")
        req.assert_not_called()

    def test_low_rate_limit_is_logged(self) -> None:
        from chutes.media._internal.http import HttpResponse
        from chutes.media.types import RequestPlan

        client, _ = _make_client()
        resp = HttpResponse(
            status=200,
            body=b"{}",
            headers={"content-type": "application/json", "x-ratelimit-remaining": "3"},
        )
        with patch("chutes.media.client.request", return_value=resp):
            with self.assertLogs("chutes.media.client", level="WARNING") as logs:
                client.execute(RequestPlan(endpoint="/generate", body={}), "https://x.chutes.ai")

        self.assertIn("3 requests remaining", logs.output[0])

    def test_null_json_body_is_a_json_result(self) -> None:
        from chutes.media._internal.http import HttpResponse
        from chutes.media.types import RequestPlan

        client, _ = _make_client()
        resp = HttpResponse(status=200, body=b"null", headers={"content-type": "application/json"})
        with patch("chutes.media.client.request", return_value=resp):
            result = client.execute(RequestPlan(endpoint="/generate", body={}), "https://x.chutes.ai")

        self.assertFalse(result.is_binary)
        self.assertEqual(result.json, {})
        self.assertIsNone(result.data)


class TestClientRun(unittest.TestCase):
    def test_run_discovers_plans_and_posts(self) -> None:
        from chutes.media._internal.http import HttpResponse

        client, _ = _make_client()
        resp = HttpResponse(status=200, body=b"{}", headers={"content-type": "application/json"})
        with patch("chutes.media.client.request", return_value=resp) as req:
            client.run("text2video", "https://x.chutes.ai", {"prompt": "p", "frames": 121})

        kwargs = req.call_args.kwargs
        self.assertEqual(kwargs["url"], "https://x.chutes.ai/text2video")
        self.assertEqual(kwargs["json_body"], {"prompt": "p", "num_frames": 121})

    def test_plan_uses_cached_schema(self) -> None:
        calls: list[str] = []

        def _fetch(url: str, *, headers: dict[str, str]):  # type: ignore[no-untyped-def]
            calls.append(url)
            return _dual_schema()

        client, _ = _make_client(fetcher=_fetch)
        first = client.plan("image2video", "https://x.chutes.ai", {"prompt": "p", "image": "AAAA"})
        second = client.plan("image2video", "https://x.chutes.ai/", {"prompt": "p", "image": "AAAA"})

        self.assertEqual(calls, ["https://x.chutes.ai/openapi.json"])
        self.assertEqual(first, second)
        self.assertEqual(first.endpoint, "/image2video")
        self.assertEqual(first.body, {"prompt": "p", "image_b64": "AAAA"})

        self.assertEqual(client.clear_schema_cache(), 1)
        client.plan("image2video", "https://x.chutes.ai", {"prompt": "p"})
        self.assertEqual(len(calls), 2)

    def test_image_url_is_downloaded_and_encoded(self) -> None:
        client, _ = _make_client()
        with patch("chutes.media.client.download_bytes", return_value=b"abc") as dl:
            plan = client.plan("image2video", "https://x.chutes.ai", {"prompt": "p", "image": "https://example.com/cat.png"})

        self.assertEqual(dl.call_args.kwargs["url"], "https://example.com/cat.png")
        self.assertEqual(plan.endpoint, "/image2video")
        self.assertEqual(plan.body, {"prompt": "p", "image_b64": "YWJj"})

    def test_data_url_and_bytes_images_are_normalized(self) -> None:
        client, _ = _make_client()
        with patch("chutes.media.client.download_bytes") as dl:
            from_data_url = client.plan(
                "image2video", "https://x.chutes.ai", {"prompt": "p", "image": "data:image/png;base64,QUJD"}
            )
            from_bytes = client.plan("image2video", "https://x.chutes.ai", {"prompt": "p", "image": b"abc"})

        dl.assert_not_called()
        self.assertEqual(from_data_url.body["image_b64"], "QUJD")
        self.assertEqual(from_bytes.body["image_b64"], "YWJj")

    def test_run_posts_downloaded_image(self) -> None:
        from chutes.media._internal.http import HttpResponse

        client, _ = _make_client()
        resp = HttpResponse(status=200, body=b"{}", headers={"content-type": "application/json"})
        with patch("chutes.media.client.download_bytes", return_value=b"abc"):
            with patch("chutes.media.client.request", return_value=resp) as req:
                client.run("image2video", "https://x.chutes.ai", {"prompt": "p", "image": "https://example.com/cat.png"})

        self.assertEqual(req.call_args.kwargs["json_body"], {"prompt": "p", "image_b64": "YWJj"})

    def test_unknown_operation(self) -> None:
        from chutes.media._internal.errors import ChutesError

        client, _ = _make_client()
        with self.assertRaises(ChutesError) as cm:
            client.plan("upscale", "https://x.chutes.ai", {})
        self.assertEqual(cm.exception.info.type, "InvalidRequestError")

    def test_run_async(self) -> None:
        from chutes.media._internal.http import HttpResponse

        client, _ = _make_client()
        resp = HttpResponse(status=200, body=b'{"ok":true}', headers={"content-type": "application/json"})
        with patch("chutes.media.client.request", return_value=resp):
            result = asyncio.run(client.run_async("text2video", "https://x.chutes.ai", {"prompt": "p"}))

        self.assertEqual(result.json, {"ok": True})

    def test_resolve_base_url(self) -> None:
        client, _ = _make_client()

        self.assertEqual(
            client.resolve_base_url("videoGeneration", chute_url="https://chutes-wan.chutes.ai/"),
            "https://chutes-wan.chutes.ai",
        )


if __name__ == "__main__":
    unittest.main()
