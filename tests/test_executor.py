from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory
import unittest

from gradr.config import BuildConfig
from gradr.errors import ExecutorFault
from gradr.executor import CommandExecutor
from gradr.models import BuildRequest


class LocalCommandExecutor(CommandExecutor):
    """Skips git; the work directory starts empty."""

    def checkout(self, request: BuildRequest, workdir: Path) -> None:
        workdir.mkdir(parents=True)
        (workdir / "BRANCH").write_text(request.branch, encoding="utf-8")


class CommandExecutorTest(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = TemporaryDirectory()
        self.request = BuildRequest("https://example.com/r.git", "main", "abc123")

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def _executor(self, command: str, **kwargs: object) -> CommandExecutor:
        config = BuildConfig(command_template=command, workdir=Path(self.temp_dir.name), **kwargs)
        return LocalCommandExecutor(config)

    def test_passing_build(self) -> None:
        result = self._executor("cat BRANCH && echo ' {commit}'").whole_build(self.request)
        self.assertTrue(result.passed)
        self.assertEqual(result.returncode, 0)
        self.assertIn("main abc123", result.output)

    def test_failing_build_is_a_result(self) -> None:
        result = self._executor("echo failing test >&2; exit 3").whole_build(self.request)
        self.assertFalse(result.passed)
        self.assertEqual(result.returncode, 3)
        self.assertIn("failing test", result.output)

    def test_output_is_truncated(self) -> None:
        executor = self._executor("echo noise >&2; printf 'x%.0s' $(seq 1 100)", max_output_chars=10)
        result = executor.whole_build(self.request)
        self.assertTrue(result.output.endswith("x" * 10))
        self.assertTrue(result.output.startswith("[truncated]"))

    def test_streams_keep_their_order(self) -> None:
        result = self._executor("echo first; echo second >&2; echo third").whole_build(self.request)
        self.assertIn("first\nsecond\nthird\n", result.output)

    def test_unrenderable_template_is_a_fault(self) -> None:
        executor = self._executor("make test HOME=${HOME}")
        with self.assertRaises(ExecutorFault) as caught:
            executor.whole_build(self.request)
        self.assertIn("HOME", str(caught.exception))
        self.assertEqual(list(Path(self.temp_dir.name).iterdir()), [])

    def test_escaped_braces_reach_the_shell(self) -> None:
        result = self._executor("echo ${{GRADR_BRANCH:-{branch}}}").whole_build(self.request)
        self.assertIn("main", result.output)

    def test_unusable_workdir_is_a_fault(self) -> None:
        blocker = Path(self.temp_dir.name) / "not-a-dir"
        blocker.write_text("", encoding="utf-8")
        config = BuildConfig(command_template="true", workdir=blocker / "scratch")
        with self.assertRaises(ExecutorFault):
            LocalCommandExecutor(config).whole_build(self.request)

    def test_timeout_is_a_fault(self) -> None:
        with self.assertRaises(ExecutorFault):
            self._executor("sleep 5", timeout_seconds=1).whole_build(self.request)

    def test_checkout_failure_is_a_fault(self) -> None:
        missing = Path(self.temp_dir.name) / "missing-repo"
        executor = CommandExecutor(BuildConfig(command_template="true", workdir=Path(self.temp_dir.name)))
        with self.assertRaises(ExecutorFault):
            executor.whole_build(BuildRequest(str(missing), "main"))

    def test_scratch_directory_removed(self) -> None:
        self._executor("true").whole_build(self.request)
        self.assertEqual(list(Path(self.temp_dir.name).iterdir()), [])


if __name__ == "__main__":
    unittest.main()
