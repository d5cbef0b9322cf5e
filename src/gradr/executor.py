from __future__ import annotations

import subprocess
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

from .config import BuildConfig
from .errors import ExecutorFault
from .models import BuildRequest, BuildResult
from .utils import truncate_output


class BuildExecutor(ABC):
    @abstractmethod
    def whole_build(self, request: BuildRequest) -> BuildResult:
        """Build and test one request.

        A failing build is returned as a result with ``passed=False``;
        ExecutorFault is reserved for runs that produced no result at all.
        """
        raise NotImplementedError


class CommandExecutor(BuildExecutor):
    """Checks out the pushed branch and runs a shell command against it."""

    def __init__(self, build_config: BuildConfig) -> None:
        self.build_config = build_config

    def _run(
        self,
        cmd: list[str],
        *,
        cwd: Path | None = None,
        merge_output: bool = False,
    ) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                cmd,
                cwd=cwd,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT if merge_output else subprocess.PIPE,
                text=True,
                check=False,
                timeout=self.build_config.timeout_seconds,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExecutorFault(f"{cmd[0]} timed out after {exc.timeout}s") from exc
        except OSError as exc:
            raise ExecutorFault(f"{cmd[0]} could not be started: {exc}") from exc

    def checkout(self, request: BuildRequest, workdir: Path) -> None:
        cmd = [
            "git",
            "clone",
            "--quiet",
            "--depth",
            "1",
            "--branch",
            request.branch,
            request.clone_url,
            str(workdir),
        ]
        process = self._run(cmd)
        if process.returncode != 0:
            output = process.stderr.strip() or process.stdout.strip()
            raise ExecutorFault(f"checkout of {request.clone_url}@{request.branch} failed: {output}")

    def render_command(self, request: BuildRequest, workdir: Path) -> str:
        try:
            return self.build_config.command_template.format(
                workdir=workdir,
                clone_url=request.clone_url,
                branch=request.branch,
                commit=request.commit or "",
            )
        except (KeyError, IndexError, ValueError) as exc:
            raise ExecutorFault(
                f"cannot render command template {self.build_config.command_template!r}: {exc!r}"
                " (write literal braces as {{ and }})"
            ) from exc

    def whole_build(self, request: BuildRequest) -> BuildResult:
        scratch_root = self.build_config.workdir
        try:
            if scratch_root is not None:
                scratch_root.mkdir(parents=True, exist_ok=True)
            scratch = tempfile.TemporaryDirectory(prefix="gradr-", dir=scratch_root)
        except OSError as exc:
            raise ExecutorFault(f"cannot create work directory under {scratch_root}: {exc}") from exc
        with scratch as temp_dir:
            workdir = Path(temp_dir) / "src"
            command = self.render_command(request, workdir)
            self.checkout(request, workdir)
            process = self._run(["bash", "-lc", command], cwd=workdir, merge_output=True)
        output = truncate_output(process.stdout, self.build_config.max_output_chars)
        return BuildResult(
            passed=process.returncode == 0,
            output=output,
            returncode=process.returncode,
            details={"command": command},
        )
