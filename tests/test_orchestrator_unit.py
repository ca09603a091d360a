from __future__ import annotations

import json
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from stepwright.schemas import ExecutionMode
from stepwright.services.artifacts import ArtifactStore
from stepwright.services.orchestrator import ExecutionOrchestrator, ExecutionState, RunOptions
from stepwright.services import runner as runner_module
from stepwright.services.runner import (
    PlaywrightProcessRunner,
    RunnerInvocation,
    RunnerLaunchError,
    RunnerOutcome,
    build_manifest,
)
from stepwright.services.storage import LocalDocumentStorage, StepwrightRepository

PASSING_REPORT = json.dumps(
    {
        "stats": {"expected": 1, "unexpected": 0},
        "suites": [
            {
                "title": "checkout.spec.ts",
                "specs": [
                    {
                        "title": "Checkout",
                        "ok": True,
                        "tests": [
                            {
                                "title": "Checkout",
                                "status": "passed",
                                "steps": [{"title": "open cart [step:STEP]", "duration": 4}],
                            }
                        ],
                    }
                ],
            }
        ],
    }
)


class StubRunner:
    """Stands in for the Playwright CLI: writes artifacts, then returns a canned outcome."""

    def __init__(
        self,
        stdout: str = "",
        stderr: str = "",
        exit_code: int = 0,
        files: Optional[Dict[str, bytes]] = None,
        launch_error: Optional[RunnerLaunchError] = None,
        on_execute: Optional[Callable[[], None]] = None,
    ) -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.files = files or {}
        self.launch_error = launch_error
        self.on_execute = on_execute
        self.invocations: List[RunnerInvocation] = []

    def output_dir(self, project_path: Path) -> Path:
        return project_path / "test-results"

    def execute(self, invocation: RunnerInvocation, project_path: Path) -> RunnerOutcome:
        self.invocations.append(invocation)
        if self.on_execute is not None:
            self.on_execute()
        output_dir = self.output_dir(project_path)
        for rel, payload in self.files.items():
            target = output_dir / rel
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(payload)
        if self.launch_error is not None:
            raise self.launch_error
        return RunnerOutcome(
            exit_ok=self.exit_code == 0,
            exit_code=self.exit_code,
            stdout=self.stdout,
            stderr=self.stderr,
            duration_ms=42,
            output_dir=output_dir,
            manifest=build_manifest(output_dir),
        )


@pytest.fixture
def repo(tmp_path: Path) -> StepwrightRepository:
    return StepwrightRepository(LocalDocumentStorage(tmp_path / "db.json"))


@pytest.fixture
def store(tmp_path: Path) -> ArtifactStore:
    return ArtifactStore(root=tmp_path / "artifacts")


@pytest.fixture
def project(repo: StepwrightRepository, tmp_path: Path) -> Dict:
    project_dir = tmp_path / "pw-project"
    project_dir.mkdir()
    return repo.create_project(
        {
            "name": "Shop",
            "url": "https://shop.test",
            "browser": "firefox",
            "playwright_project_path": str(project_dir),
        }
    )


@pytest.fixture
def test_case(repo: StepwrightRepository, project: Dict) -> Dict:
    return repo.create_test_case({"project_id": project["id"], "name": "Checkout"})


def _orchestrator(repo: StepwrightRepository, store: ArtifactStore, runner: StubRunner) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(repo, store, runner=runner)


@pytest.mark.unit
def test_passing_single_test_case_run(repo, store, project, test_case) -> None:
    step = repo.create_step({"action": "open cart"}, test_case_id=test_case["id"])
    runner = StubRunner(stdout=PASSING_REPORT.replace("STEP", step["id"]))

    response = _orchestrator(repo, store, runner).run_test_case(
        test_case["id"], RunOptions(initiator_id="user-7")
    )

    assert response.success is True
    assert response.duration == 42
    assert response.output == PASSING_REPORT.replace("STEP", step["id"])
    assert response.test_results is not None
    assert response.steps is not None
    assert [(s.action, s.step_id, s.success) for s in response.steps] == [("open cart", step["id"], True)]
    invocation = runner.invocations[0]
    assert invocation.target == "tests/checkout.spec.ts"
    assert invocation.browser_project == "firefox"
    assert invocation.headless is True

    items, total = repo.list_history(project["id"])
    assert total == 1
    assert items[0]["id"] == response.history_id
    assert items[0]["status"] == "passed"
    assert items[0]["test_case_id"] == test_case["id"]
    assert items[0]["last_run_by"] == "user-7"
    assert repo.get_test_case(test_case["id"])["status"] == "passed"
    assert repo.get_project(project["id"])["last_run"] is not None


@pytest.mark.unit
def test_failing_exit_with_partial_output(repo, store, project, test_case) -> None:
    runner = StubRunner(
        stdout="garbage",
        stderr="Error: locator.click: Timeout 30000ms exceeded",
        exit_code=1,
        files={"shot1.png": b"\x89PNG not really"},
    )

    response = _orchestrator(repo, store, runner).run_test_case(test_case["id"])

    assert response.success is False
    assert response.test_results is None
    assert response.output == "garbage\nErrors:\nError: locator.click: Timeout 30000ms exceeded"
    assert len(response.screenshots) == 1
    items, _ = repo.list_history(project["id"])
    assert items[0]["status"] == "failed"
    assert items[0]["result_data"] is None
    assert items[0]["error_message"] == "Error: locator.click: Timeout 30000ms exceeded"
    assert items[0]["execution_time"] == 42
    assert repo.get_test_case(test_case["id"])["status"] == "failed"


@pytest.mark.unit
def test_clean_exit_with_unexpected_failures_is_a_failure(repo, store, project) -> None:
    report = json.dumps(
        {
            "stats": {"expected": 0, "unexpected": 1},
            "suites": [{"title": "s", "specs": [{"title": "t", "ok": True, "tests": []}]}],
        }
    )
    runner = StubRunner(stdout=report)

    response = _orchestrator(repo, store, runner).run_project(project["id"])

    assert response.success is False
    assert response.test_results is not None
    assert response.test_results.success is False
    items, _ = repo.list_history(project["id"])
    assert items[0]["status"] == "failed"
    assert items[0]["error_message"] == "Test execution failed"


@pytest.mark.unit
def test_stderr_noise_does_not_fail_a_clean_run(repo, store, project) -> None:
    runner = StubRunner(stdout=PASSING_REPORT, stderr="DeprecationWarning: something")

    response = _orchestrator(repo, store, runner).run_project(project["id"])

    assert response.success is True
    assert response.output.endswith("\nErrors:\nDeprecationWarning: something")


@pytest.mark.unit
def test_project_sweep_keeps_one_video_and_omits_steps(repo, store, project) -> None:
    runner = StubRunner(
        stdout=PASSING_REPORT,
        files={"a/video.webm": b"first", "b/video.webm": b"second"},
    )

    response = _orchestrator(repo, store, runner).run(ExecutionMode.whole_project, project["id"])

    assert response.success is True
    assert response.steps is None
    assert response.video_url is not None
    assert response.video_url.startswith("all-tests-")
    assert len(list(store.videos_dir.iterdir())) == 1
    assert runner.invocations[0].target is None
    items, _ = repo.list_history(project["id"])
    assert items[0]["test_case_id"] is None
    assert items[0]["video_url"] == response.video_url
    assert repo.get_project(project["id"])["status"] == "passed"


@pytest.mark.unit
def test_single_run_video_is_keyed_by_test_case(repo, store, project, test_case) -> None:
    runner = StubRunner(stdout=PASSING_REPORT, files={"x/video.webm": b"v"})

    response = _orchestrator(repo, store, runner).run_test_case(test_case["id"])

    assert response.video_url.startswith(f"test-{test_case['id']}-")


@pytest.mark.unit
def test_launch_failure_is_recorded(repo, store, project, test_case) -> None:
    error = RunnerLaunchError("spawn npx ENOENT", stdout="", stderr="spawn npx ENOENT", output_reset=True)
    runner = StubRunner(launch_error=error, files={"left/video.webm": b"v"})

    response = _orchestrator(repo, store, runner).run_test_case(test_case["id"])

    assert response.success is False
    assert response.duration is None
    assert response.output == "\nErrors:\nspawn npx ENOENT"
    assert response.video_url is not None
    items, total = repo.list_history(project["id"])
    assert total == 1
    assert items[0]["execution_time"] is None
    assert items[0]["error_message"] == "spawn npx ENOENT"
    assert items[0]["video_url"] == response.video_url


@pytest.mark.unit
def test_browser_override_and_headed_mode(repo, store, project, test_case) -> None:
    runner = StubRunner(stdout=PASSING_REPORT)

    _orchestrator(repo, store, runner).run_test_case(
        test_case["id"], RunOptions(browser="webkit", headless=False)
    )

    assert runner.invocations[0].browser_project == "webkit"
    assert runner.invocations[0].headless is False
    items, _ = repo.list_history(project["id"])
    assert items[0]["browser"] == "webkit"


@pytest.mark.unit
def test_history_write_failure_does_not_change_the_response(
    repo, store, project, test_case, monkeypatch: pytest.MonkeyPatch
) -> None:
    def _broken(payload):
        raise OSError("read-only database")

    monkeypatch.setattr(repo, "create_history", _broken)
    runner = StubRunner(stdout=PASSING_REPORT)

    response = _orchestrator(repo, store, runner).run_test_case(test_case["id"])

    assert response.success is True
    assert response.history_id is None


@pytest.mark.unit
def test_unknown_targets_are_rejected(repo, store, project) -> None:
    orchestrator = _orchestrator(repo, store, StubRunner())

    with pytest.raises(ValueError):
        orchestrator.run_test_case("missing")
    with pytest.raises(ValueError):
        orchestrator.run_project("missing")


@pytest.mark.unit
def test_project_without_path_is_rejected(repo, store) -> None:
    bare = repo.create_project({"name": "Bare"})

    with pytest.raises(ValueError):
        _orchestrator(repo, store, StubRunner()).run_project(bare["id"])


@pytest.mark.unit
def test_state_is_tracked_during_a_run(repo, store, project) -> None:
    seen: List[ExecutionState] = []
    runner = StubRunner(stdout=PASSING_REPORT)
    orchestrator = _orchestrator(repo, store, runner)
    runner.on_execute = lambda: seen.append(orchestrator.state(project["id"]))

    orchestrator.run_project(project["id"])

    assert seen == [ExecutionState.running]
    assert orchestrator.state(project["id"]) is ExecutionState.idle


@pytest.mark.unit
def test_launch_failure_before_output_reset_skips_harvest(repo, store, project, test_case) -> None:
    error = RunnerLaunchError("Could not reset test-results", stderr="Permission denied")
    runner = StubRunner(launch_error=error, files={"old/video.webm": b"stale", "stale.png": b"p"})

    response = _orchestrator(repo, store, runner).run_test_case(test_case["id"])

    assert response.success is False
    assert response.video_url is None
    assert response.screenshots == []
    items, total = repo.list_history(project["id"])
    assert total == 1
    assert items[0]["video_url"] is None
    assert items[0]["error_message"] == "Permission denied"


@pytest.mark.unit
def test_stale_video_is_not_attributed_when_output_dir_cannot_be_cleared(
    repo, store, project, monkeypatch: pytest.MonkeyPatch
) -> None:
    stale = Path(project["playwright_project_path"]) / "test-results" / "old" / "video.webm"
    stale.parent.mkdir(parents=True)
    stale.write_bytes(b"previous run")

    def _locked(path, *args, **kwargs):
        raise PermissionError(13, "Permission denied", str(path))

    monkeypatch.setattr(runner_module.shutil, "rmtree", _locked)
    runner = PlaywrightProcessRunner(command=[sys.executable, "-c", "pass"])

    response = ExecutionOrchestrator(repo, store, runner=runner).run_project(project["id"])

    assert response.success is False
    assert response.video_url is None
    items, total = repo.list_history(project["id"])
    assert total == 1
    assert items[0]["video_url"] is None


@pytest.mark.unit
def test_nul_byte_in_runner_command_is_recorded_as_failure(repo, store, project) -> None:
    runner = PlaywrightProcessRunner(command=["np\x00x", "playwright", "test"])

    response = ExecutionOrchestrator(repo, store, runner=runner).run_project(project["id"])

    assert response.success is False
    assert response.duration is None
    items, total = repo.list_history(project["id"])
    assert total == 1
    assert items[0]["status"] == "failed"
    assert items[0]["error_message"]
    assert repo.get_project(project["id"])["status"] == "failed"


@pytest.mark.unit
def test_headless_defaults_to_application_setting(repo, store, project) -> None:
    repo.set_headless_default(False)
    runner = StubRunner(stdout=PASSING_REPORT)

    _orchestrator(repo, store, runner).run_project(project["id"])

    assert runner.invocations[0].headless is False


@pytest.mark.unit
def test_runs_for_one_project_are_serialized_across_orchestrators(repo, store, project) -> None:
    started = threading.Event()
    release = threading.Event()

    def _block() -> None:
        started.set()
        release.wait(5)

    first_runner = StubRunner(stdout=PASSING_REPORT, on_execute=_block)
    second_runner = StubRunner(stdout=PASSING_REPORT)
    first = _orchestrator(repo, store, first_runner)
    second = _orchestrator(repo, store, second_runner)
    responses = []

    first_thread = threading.Thread(target=lambda: responses.append(first.run_project(project["id"])))
    first_thread.start()
    assert started.wait(5)
    second_thread = threading.Thread(target=lambda: responses.append(second.run_project(project["id"])))
    second_thread.start()
    second_thread.join(timeout=0.3)

    assert second_thread.is_alive()
    assert second_runner.invocations == []

    release.set()
    first_thread.join(timeout=5)
    second_thread.join(timeout=5)

    assert len(second_runner.invocations) == 1
    assert [r.success for r in responses] == [True, True]
    _items, total = repo.list_history(project["id"])
    assert total == 2
