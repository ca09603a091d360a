from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from stepwright.constants import SWEEP_OWNER_KEY
from stepwright.schemas import ExecutionMode, ExecutionResponse, NormalizedResult
from stepwright.services.artifacts import ArtifactStore, get_artifact_store
from stepwright.services.harvester import ArtifactHarvester, Harvest
from stepwright.services.materializer import ScriptMaterializer
from stepwright.services.recorder import ExecutionRecorder
from stepwright.services.report import ReportNormalizer
from stepwright.services.runner import (
    PlaywrightProcessRunner,
    RunnerInvocation,
    RunnerLaunchError,
    RunnerOutcome,
)
from stepwright.services.storage import StepwrightRepository, get_repository

LOGGER = logging.getLogger("stepwright.orchestrator")

LAUNCH_FAILURE_MESSAGE = "Test execution failed"


class ExecutionState(str, Enum):
    idle = "idle"
    preparing = "preparing"
    running = "running"
    parsing = "parsing"
    recording = "recording"
    done = "done"


@dataclass
class RunOptions:
    browser: Optional[str] = None
    headless: Optional[bool] = None
    initiator_id: Optional[str] = None


@dataclass
class _RunTarget:
    project: Dict[str, Any]
    project_path: Path
    test_case: Optional[Dict[str, Any]]
    browser: str

    @property
    def owner_key(self) -> str:
        if self.test_case is None:
            return SWEEP_OWNER_KEY
        return f"test-{self.test_case['id']}"


def combine_output(stdout: str, stderr: str) -> str:
    return stdout + (f"\nErrors:\n{stderr}" if stderr else "")


# One lock per project, shared across orchestrator instances.
_project_locks: Dict[str, threading.Lock] = {}
_project_locks_guard = threading.Lock()


def project_lock(project_id: str) -> threading.Lock:
    with _project_locks_guard:
        lock = _project_locks.get(project_id)
        if lock is None:
            lock = threading.Lock()
            _project_locks[project_id] = lock
        return lock


class ExecutionOrchestrator:
    """Sequence one runner invocation from launch to the persisted history row."""

    def __init__(
        self,
        repo: StepwrightRepository,
        store: ArtifactStore,
        runner: Optional[PlaywrightProcessRunner] = None,
        normalizer: Optional[ReportNormalizer] = None,
        harvester: Optional[ArtifactHarvester] = None,
        recorder: Optional[ExecutionRecorder] = None,
        materializer: Optional[ScriptMaterializer] = None,
    ) -> None:
        config = repo.get_config()
        self._repo = repo
        self._store = store
        self._runner = runner or PlaywrightProcessRunner(
            command=config["runner_command"],
            output_dir_name=config["output_dir_name"],
        )
        self._normalizer = normalizer or ReportNormalizer()
        self._harvester = harvester or ArtifactHarvester(store)
        self._recorder = recorder or ExecutionRecorder(repo)
        self._materializer = materializer or ScriptMaterializer(tests_dir_name=config["tests_dir_name"])
        self._states: Dict[str, ExecutionState] = {}
        self._pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="stepwright-collect")

    # -- Public API --------------------------------------------------------------
    def state(self, project_id: str) -> ExecutionState:
        return self._states.get(project_id, ExecutionState.idle)

    def run(
        self,
        mode: ExecutionMode,
        target_id: str,
        options: Optional[RunOptions] = None,
    ) -> ExecutionResponse:
        options = options or RunOptions()
        target = self._resolve(ExecutionMode(mode), target_id, options)
        project_id = target.project["id"]
        with project_lock(project_id):
            try:
                return self._execute(target, options)
            finally:
                self._states.pop(project_id, None)

    def run_test_case(self, test_case_id: str, options: Optional[RunOptions] = None) -> ExecutionResponse:
        return self.run(ExecutionMode.single_test_case, test_case_id, options)

    def run_project(self, project_id: str, options: Optional[RunOptions] = None) -> ExecutionResponse:
        return self.run(ExecutionMode.whole_project, project_id, options)

    # -- Internals ---------------------------------------------------------------
    def _transition(self, project_id: str, state: ExecutionState) -> None:
        previous = self.state(project_id)
        self._states[project_id] = state
        LOGGER.debug("Project %s run: %s -> %s", project_id, previous.value, state.value)

    def _resolve(self, mode: ExecutionMode, target_id: str, options: RunOptions) -> _RunTarget:
        test_case: Optional[Dict[str, Any]] = None
        if mode is ExecutionMode.single_test_case:
            test_case = self._repo.get_test_case(target_id)
            if not test_case:
                raise ValueError(f"Test case {target_id} does not exist")
            project = self._repo.get_project(test_case["project_id"])
        else:
            project = self._repo.get_project(target_id)
        if not project:
            raise ValueError(f"Project for {target_id} does not exist")
        if not project.get("playwright_project_path"):
            raise ValueError(f"Project {project['id']} has no Playwright project path")
        browser = options.browser or project.get("browser") or self._repo.get_config()["default_browser"]
        return _RunTarget(
            project=project,
            project_path=Path(project["playwright_project_path"]),
            test_case=test_case,
            browser=getattr(browser, "value", browser),
        )

    def _invocation(self, target: _RunTarget, options: RunOptions) -> RunnerInvocation:
        script: Optional[str] = None
        if target.test_case is not None:
            path = self._materializer.script_path(target.project_path, target.test_case["name"])
            script = path.relative_to(target.project_path).as_posix()
        headless = options.headless
        if headless is None:
            headless = self._repo.get_config()["headless"]
        return RunnerInvocation(target=script, browser_project=target.browser, headless=headless)

    def _step_records(self, target: _RunTarget) -> List[Mapping[str, Any]]:
        if target.test_case is None:
            return []
        return self._repo.list_steps(test_case_id=target.test_case["id"], include_disabled=False)

    def _execute(self, target: _RunTarget, options: RunOptions) -> ExecutionResponse:
        project_id = target.project["id"]
        test_case_id = target.test_case["id"] if target.test_case else None
        self._transition(project_id, ExecutionState.preparing)
        self._repo.mark_project_run(project_id, last_run_by=options.initiator_id)
        invocation = self._invocation(target, options)
        step_records = self._step_records(target)

        self._transition(project_id, ExecutionState.running)
        try:
            outcome = self._runner.execute(invocation, target.project_path)
        except RunnerLaunchError as exc:
            return self._launch_failed(target, options, exc)

        self._transition(project_id, ExecutionState.parsing)
        result, harvest = self._collect(target, outcome, step_records)
        success = outcome.exit_ok and (result is None or result.success)
        output = combine_output(outcome.stdout, outcome.stderr)

        self._transition(project_id, ExecutionState.recording)
        common = dict(
            project_id=project_id,
            test_case_id=test_case_id,
            browser=target.browser,
            initiator_id=options.initiator_id,
            output=output,
            duration_ms=outcome.duration_ms,
            result=result,
            video_ref=harvest.video_ref,
        )
        if success:
            history_id = self._recorder.record_success(**common)
        else:
            error_message = outcome.stderr.strip() or LAUNCH_FAILURE_MESSAGE
            history_id = self._recorder.record_failure(error_message=error_message, **common)
        self._transition(project_id, ExecutionState.done)
        LOGGER.info(
            "Run for %s finished: success=%s exit=%s duration=%dms",
            test_case_id or f"project {project_id}",
            success,
            outcome.exit_code,
            outcome.duration_ms,
        )
        return ExecutionResponse(
            success=success,
            output=output,
            duration=outcome.duration_ms,
            steps=result.step_results if result is not None and target.test_case is not None else None,
            screenshots=harvest.screenshot_uris,
            test_results=result,
            video_url=harvest.video_ref,
            history_id=history_id,
        )

    def _collect(
        self,
        target: _RunTarget,
        outcome: RunnerOutcome,
        step_records: List[Mapping[str, Any]],
    ) -> tuple[Optional[NormalizedResult], Harvest]:
        parse_future = self._pool.submit(self._normalizer.normalize, outcome.stdout, step_records, outcome.stderr)
        harvest_future = self._pool.submit(
            self._harvester.collect, outcome.output_dir, target.owner_key, outcome.manifest
        )
        result: Optional[NormalizedResult] = None
        harvest = Harvest()
        try:
            result = parse_future.result()
        except Exception:
            LOGGER.exception("Report normalization failed for project %s", target.project["id"])
        try:
            harvest = harvest_future.result()
        except Exception:
            LOGGER.exception("Artifact harvesting failed for project %s", target.project["id"])
        return result, harvest

    def _launch_failed(
        self,
        target: _RunTarget,
        options: RunOptions,
        exc: RunnerLaunchError,
    ) -> ExecutionResponse:
        project_id = target.project["id"]
        self._transition(project_id, ExecutionState.parsing)
        harvest = Harvest()
        if exc.output_reset:
            try:
                harvest = self._harvester.collect(self._runner.output_dir(target.project_path), target.owner_key)
            except Exception:
                LOGGER.exception("Artifact harvesting failed for project %s", project_id)
        else:
            LOGGER.warning("Output directory for project %s was not reset; skipping harvest", project_id)
        output = combine_output(exc.stdout, exc.stderr)
        self._transition(project_id, ExecutionState.recording)
        history_id = self._recorder.record_failure(
            project_id=project_id,
            test_case_id=target.test_case["id"] if target.test_case else None,
            browser=target.browser,
            initiator_id=options.initiator_id,
            output=output,
            error_message=exc.stderr.strip() or str(exc) or LAUNCH_FAILURE_MESSAGE,
            video_ref=harvest.video_ref,
        )
        self._transition(project_id, ExecutionState.done)
        return ExecutionResponse(
            success=False,
            output=output,
            screenshots=harvest.screenshot_uris,
            video_url=harvest.video_ref,
            history_id=history_id,
        )


_orchestrator: Optional[ExecutionOrchestrator] = None


def get_orchestrator() -> ExecutionOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = ExecutionOrchestrator(get_repository(), get_artifact_store())
    return _orchestrator


def reset_orchestrator() -> None:
    """Drop the cached orchestrator so the next request picks up new settings."""
    global _orchestrator
    _orchestrator = None
