from __future__ import annotations

import logging
import shutil
import subprocess
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from stepwright.constants import DEFAULT_BROWSER, DEFAULT_RUNNER_COMMAND, OUTPUT_DIR_NAME, RUNNER_REPORTER

LOGGER = logging.getLogger("stepwright.runner")


class RunnerLaunchError(RuntimeError):
    """The runner process could not be started at all."""

    def __init__(self, message: str, stdout: str = "", stderr: str = "", output_reset: bool = False) -> None:
        super().__init__(message)
        self.stdout = stdout
        self.stderr = stderr
        # False means the output directory may still hold a previous run's files
        self.output_reset = output_reset


@dataclass
class RunnerInvocation:
    target: Optional[str] = None
    browser_project: str = DEFAULT_BROWSER
    headless: bool = True
    reporter: str = RUNNER_REPORTER


@dataclass
class RunnerOutcome:
    exit_ok: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    output_dir: Path
    manifest: List[Path] = field(default_factory=list)


def build_manifest(root: Path) -> List[Path]:
    """List every file under root, depth first, entries visited in name order."""
    if not root.is_dir():
        return []
    found: List[Path] = []
    for entry in sorted(root.iterdir(), key=lambda p: p.name):
        if entry.is_dir():
            found.extend(build_manifest(entry))
        elif entry.is_file():
            found.append(entry)
    return found


class PlaywrightProcessRunner:
    """Run the Playwright CLI as a local child process."""

    def __init__(
        self,
        command: Optional[Sequence[str]] = None,
        output_dir_name: str = OUTPUT_DIR_NAME,
    ) -> None:
        self._command = list(command or DEFAULT_RUNNER_COMMAND)
        self._output_dir_name = output_dir_name

    def output_dir(self, project_path: Path) -> Path:
        return project_path / self._output_dir_name

    def build_command(self, invocation: RunnerInvocation) -> List[str]:
        args = list(self._command)
        if invocation.target:
            args.append(invocation.target)
        args.append(f"--reporter={invocation.reporter}")
        args.append(f"--project={invocation.browser_project}")
        if not invocation.headless:
            args.append("--headed")
        return args

    def prepare_output_dir(self, project_path: Path) -> Path:
        target = self.output_dir(project_path)
        if target.exists():
            LOGGER.debug("Removing previous output directory %s", target)
            shutil.rmtree(target)
        target.mkdir(parents=True, exist_ok=True)
        return target

    def execute(self, invocation: RunnerInvocation, project_path: Path) -> RunnerOutcome:
        """Run the suite and capture its output; a failing exit code is not an error."""
        if not project_path.is_dir():
            raise RunnerLaunchError(
                f"Project directory {project_path} does not exist",
                stderr=f"Project directory {project_path} does not exist",
            )
        try:
            output_dir = self.prepare_output_dir(project_path)
        except OSError as exc:
            raise RunnerLaunchError(f"Could not reset {self._output_dir_name}: {exc}", stderr=str(exc)) from exc
        args = self.build_command(invocation)
        LOGGER.info("Running %s in %s", " ".join(args), project_path)
        started = time.monotonic()
        try:
            proc = subprocess.run(
                args,
                cwd=str(project_path),
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except (OSError, ValueError, subprocess.SubprocessError) as exc:
            LOGGER.error("Failed to launch runner %r: %s", args[0], exc)
            stdout = getattr(exc, "stdout", None) or ""
            stderr = getattr(exc, "stderr", None) or str(exc)
            raise RunnerLaunchError(
                f"Failed to launch {args[0]!r}: {exc}",
                stdout=stdout,
                stderr=stderr,
                output_reset=True,
            ) from exc
        duration_ms = int((time.monotonic() - started) * 1000)
        if proc.returncode != 0:
            LOGGER.info("Runner exited with code %s after %d ms", proc.returncode, duration_ms)
        return RunnerOutcome(
            exit_ok=proc.returncode == 0,
            exit_code=proc.returncode,
            stdout=proc.stdout or "",
            stderr=proc.stderr or "",
            duration_ms=duration_ms,
            output_dir=output_dir,
            manifest=build_manifest(output_dir),
        )
