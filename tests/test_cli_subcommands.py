import io
import json
import os
import tempfile
import unittest
from contextlib import redirect_stderr
from contextlib import redirect_stdout
from unittest.mock import MagicMock, patch


class TestCliSubcommands(unittest.TestCase):
    def test_mapping_subcommand(self) -> None:
        import chutes.media.cli as cli

        with patch.object(cli, "_print_mappings") as fn:
            cli.main(["mapping"])
            fn.assert_called_once()

    def test_mapping_output(self) -> None:
        import chutes.media.cli as cli

        buf = io.StringIO()
        with redirect_stdout(buf):
            cli.main(["mapping"])
        lines = buf.getvalue().splitlines()
        self.assertEqual(len(lines), 12)
        guidance = next(line for line in lines if line.startswith("guidance_scale"))
        self.assertIn("cfg_guidance_scale, guidance_scale", guidance)

    def test_command_is_required(self) -> None:
        import chutes.media.cli as cli

        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                cli.main([])

    def test_plan_parses_params(self) -> None:
        import chutes.media.cli as cli
        from chutes.media.types import RequestPlan

        fake = MagicMock()
        fake.plan.return_value = RequestPlan(endpoint="/generate", body={"prompt": "hi", "num_inference_steps": 30})
        buf = io.StringIO()
        with patch.object(cli, "Client", return_value=fake):
            with redirect_stdout(buf):
                cli.main(
                    [
                        "plan",
                        "--chute-url",
                        "https://x.chutes.ai",
                        "--operation",
                        "text2video",
                        "--params-json",
                        '{"seed": 1, "steps": 10}',
                        "--param",
                        "prompt=hi",
                        "--param",
                        "steps=30",
                    ]
                )

        fake.plan.assert_called_once_with(
            "text2video", "https://x.chutes.ai", {"seed": 1, "steps": 30, "prompt": "hi"}
        )
        self.assertEqual(json.loads(buf.getvalue())["endpoint"], "/generate")

    def test_plan_rejects_bad_param(self) -> None:
        import chutes.media.cli as cli

        with patch.object(cli, "Client"):
            with self.assertRaises(SystemExit) as cm:
                cli.main(["plan", "--chute-url", "https://x", "--operation", "edit", "--param", "novalue"])
        self.assertIn("KEY=VALUE", str(cm.exception.code))

    def test_plan_rejects_unknown_operation(self) -> None:
        import chutes.media.cli as cli

        with redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                cli.main(["plan", "--chute-url", "https://x", "--operation", "upscale"])

    def test_discover_json(self) -> None:
        import chutes.media.cli as cli
        from chutes.media.discovery import interpret_schema

        fake = MagicMock()
        fake.discover.return_value = interpret_schema(None)
        buf = io.StringIO()
        with patch.object(cli, "Client", return_value=fake):
            with redirect_stdout(buf):
                cli.main(["discover", "--chute-url", "https://x.chutes.ai", "--json", "--refresh"])

        fake.clear_schema_cache.assert_called_once_with("https://x.chutes.ai")
        out = json.loads(buf.getvalue())
        self.assertFalse(out["schema_found"])
        self.assertEqual(out["image_edit_path"], "/generate")

    def test_discover_table(self) -> None:
        import chutes.media.cli as cli
        from chutes.media.discovery import interpret_schema

        fake = MagicMock()
        fake.discover.return_value = interpret_schema(None)
        buf = io.StringIO()
        with patch.object(cli, "Client", return_value=fake):
            with redirect_stdout(buf):
                cli.main(["discover", "--chute-url", "https://x.chutes.ai"])

        out = buf.getvalue()
        self.assertIn("schema_found: False", out)
        self.assertIn("/text2video", out)

    def test_chutes_error_becomes_fail_exit(self) -> None:
        import chutes.media.cli as cli
        from chutes.media._internal.errors import not_supported_error

        fake = MagicMock()
        fake.plan.side_effect = not_supported_error("no endpoint")
        with patch.object(cli, "Client", return_value=fake):
            with self.assertRaises(SystemExit) as cm:
                cli.main(["plan", "--chute-url", "https://x", "--operation", "keyframe"])

        self.assertEqual(str(cm.exception.code), "[FAIL]: NotSupportedError: no endpoint")

    def test_run_writes_binary_output(self) -> None:
        import chutes.media.cli as cli
        from chutes.media.types import InferenceResult

        fake = MagicMock()
        fake.run.return_value = InferenceResult(
            endpoint="/generate",
            status=200,
            content_type="video/mp4",
            data=b"video-bytes",
            mime_type="video/mp4",
            file_name="generated-video-1.mp4",
        )
        with tempfile.TemporaryDirectory() as d:
            path = os.path.join(d, "out.mp4")
            buf = io.StringIO()
            with patch.object(cli, "Client", return_value=fake):
                with redirect_stdout(buf):
                    cli.main(
                        [
                            "run",
                            "--chute-url",
                            "https://x",
                            "--operation",
                            "text2video",
                            "--param",
                            "prompt=a fox",
                            "--output-path",
                            path,
                            "--timeout-ms",
                            "5000",
                        ]
                    )
            with open(path, "rb") as f:
                self.assertEqual(f.read(), b"video-bytes")

        self.assertIn("[OK] wrote", buf.getvalue())
        fake.run.assert_called_once_with("text2video", "https://x", {"prompt": "a fox"}, timeout_ms=5000)

    def test_run_prints_json_result_without_writing_a_file(self) -> None:
        import chutes.media.cli as cli
        from chutes.media.types import InferenceResult

        fake = MagicMock()
        fake.run.return_value = InferenceResult(
            endpoint="/generate", status=200, content_type="application/json", json={}
        )
        with tempfile.TemporaryDirectory() as d:
            cwd = os.getcwd()
            os.chdir(d)
            try:
                buf = io.StringIO()
                with patch.object(cli, "Client", return_value=fake):
                    with redirect_stdout(buf):
                        cli.main(["run", "--chute-url", "https://x", "--operation", "text2video"])
                self.assertEqual(os.listdir(d), [])
            finally:
                os.chdir(cwd)

        self.assertEqual(json.loads(buf.getvalue()), {})
        self.assertNotIn("[OK] wrote", buf.getvalue())

    def test_run_rejects_non_positive_timeout(self) -> None:
        import chutes.media.cli as cli

        with self.assertRaises(SystemExit) as cm:
            cli.main(["run", "--chute-url", "https://x", "--operation", "edit", "--timeout-ms", "0"])
        self.assertEqual(str(cm.exception.code), "--timeout-ms must be >= 1")


if __name__ == "__main__":
    unittest.main()
