from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


class ConfigEnvLoadingTests(unittest.TestCase):
    def _run_import(self, bot_env_file: str) -> subprocess.CompletedProcess[str]:
        root = Path(__file__).resolve().parents[1]
        env = os.environ.copy()
        env["BOT_ENV_FILE"] = bot_env_file
        return subprocess.run(
            [sys.executable, "-c", "import config; print('ok')"],
            cwd=str(root),
            env=env,
            capture_output=True,
            text=True,
        )

    def test_missing_bot_env_file_fails_fast(self) -> None:
        missing_path = "data/__definitely_missing_env_for_test__.env"
        result = self._run_import(missing_path)
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("bot_env_file", details)
        self.assertIn("does not exist", details)

    def test_existing_bot_env_file_is_applied(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("UNITTEST_BOT_ENV_FLAG=loaded\n", encoding="utf-8")
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            env["BOT_ENV_FILE"] = str(env_path)
            result = subprocess.run(
                [
                    sys.executable,
                    "-c",
                    "import os, config; print(os.getenv('UNITTEST_BOT_ENV_FLAG', ''))",
                ],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "loaded")

    def test_autonomous_keys_are_loaded_from_env(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text(
                "\n".join(
                    [
                        "AUTONOMOUS_TICK_SECONDS=120",
                        "AUTONOMOUS_HOURLY_BUY_LIMIT=3",
                        "MAX_LIQUIDITY_SHARE=0.05",
                    ]
                )
                + "\n",
                encoding="utf-8",
            )
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            env["BOT_ENV_FILE"] = str(env_path)
            result = subprocess.run(
                [
                    sys.executable,
                    "-c",
                    (
                        "import config; "
                        "print(f\"{config.AUTONOMOUS_TICK_SECONDS}|"
                        "{config.AUTONOMOUS_HOURLY_BUY_LIMIT}|"
                        "{config.MAX_LIQUIDITY_SHARE}\")"
                    ),
                ],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "120|3|0.05")

    def test_out_of_range_values_are_clamped(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text(
                "\n".join(
                    [
                        "AUTONOMOUS_TICK_SECONDS=1",
                        "AUTONOMOUS_HOURLY_BUY_LIMIT=0",
                        "MAX_LIQUIDITY_SHARE=5",
                        "CHAIN_RECEIPT_TIMEOUT_SECONDS=0",
                        "CHAIN_POLL_SECONDS=0",
                    ]
                )
                + "\n",
                encoding="utf-8",
            )
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            env["BOT_ENV_FILE"] = str(env_path)
            result = subprocess.run(
                [
                    sys.executable,
                    "-c",
                    (
                        "import config; "
                        "print(f\"{config.AUTONOMOUS_TICK_SECONDS}|"
                        "{config.AUTONOMOUS_HOURLY_BUY_LIMIT}|"
                        "{config.MAX_LIQUIDITY_SHARE}|"
                        "{config.CHAIN_RECEIPT_TIMEOUT_SECONDS}|"
                        "{config.CHAIN_POLL_SECONDS}\")"
                    ),
                ],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "5|1|1.0|5.0|0.1")


if __name__ == "__main__":
    unittest.main()
