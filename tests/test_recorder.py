from __future__ import annotations

import json
from pathlib import Path
from typing import Tuple

import pytest

from stepwright.schemas import NormalizedResult, NormalizedSpec, NormalizedSuite
from stepwright.services.recorder import ExecutionRecorder
from stepwright.services.storage import LocalDocumentStorage, StepwrightRepository


@pytest.fixture
def repo(tmp_path: Path) -> StepwrightRepository:
    return StepwrightRepository(LocalDocumentStorage(tmp_path / "db.json"))


@pytest.fixture
def project_with_cases(repo: StepwrightRepository) -> Tuple[dict, dict, dict]:
    project = repo.create_project({"name": "Shop", "playwright_project_path": "/tmp/shop"})
    alpha = repo.create_test_case({"project_id": project["id"], "name": "alpha"})
    beta = repo.create_test_case({"project_id": project["id"], "name": "beta"})
    return project, alpha, beta


def _history(repo: StepwrightRepository, project_id: str):
    items, total = repo.list_history(project_id, limit=100)
    return items, total


@pytest.mark.unit
def test_success_writes_one_row_and_updates_test_case(repo, project_with_cases) -> None:
    project, alpha, _ = project_with_cases
    result = NormalizedResult(success=True, stats={"expected": 1})

    history_id = ExecutionRecorder(repo).record_success(
        project_id=project["id"],
        test_case_id=alpha["id"],
        browser="chromium",
        initiator_id="user-1",
        output="ok",
        duration_ms=120,
        result=result,
        video_ref="test-1-1.webm",
    )

    items, total = _history(repo, project["id"])
    assert total == 1
    row = items[0]
    assert row["id"] == history_id
    assert row["success"] is True
    assert row["status"] == "passed"
    assert row["execution_time"] == 120
    assert row["last_run_by"] == "user-1"
    assert row["video_url"] == "test-1-1.webm"
    assert json.loads(row["result_data"])["success"] is True
    updated = repo.get_test_case(alpha["id"])
    assert updated["status"] == "passed"
    assert updated["last_run"] is not None
    assert updated["last_run_by"] == "user-1"


@pytest.mark.unit
def test_failure_without_report_stores_null_result(repo, project_with_cases) -> None:
    project, alpha, _ = project_with_cases

    ExecutionRecorder(repo).record_failure(
        project_id=project["id"],
        test_case_id=alpha["id"],
        browser="firefox",
        initiator_id=None,
        output="boom\nErrors:\nError: timeout",
        error_message="Error: timeout",
    )

    items, total = _history(repo, project["id"])
    assert total == 1
    assert items[0]["status"] == "failed"
    assert items[0]["success"] is False
    assert items[0]["result_data"] is None
    assert items[0]["execution_time"] is None
    assert items[0]["error_message"] == "Error: timeout"
    assert repo.get_test_case(alpha["id"])["status"] == "failed"


@pytest.mark.unit
def test_history_failure_is_logged_not_raised(repo, project_with_cases, monkeypatch, caplog) -> None:
    project, alpha, _ = project_with_cases

    def _broken(payload):
        raise OSError("disk full")

    monkeypatch.setattr(repo, "create_history", _broken)

    history_id = ExecutionRecorder(repo).record_success(
        project_id=project["id"],
        test_case_id=alpha["id"],
        browser="chromium",
        initiator_id=None,
        output="",
        duration_ms=5,
        result=None,
    )

    assert history_id is None
    assert "Failed to save execution history" in caplog.text
    assert repo.get_test_case(alpha["id"])["status"] == "passed"


@pytest.mark.unit
def test_successful_sweep_marks_every_test_case_passed(repo, project_with_cases) -> None:
    project, alpha, beta = project_with_cases

    ExecutionRecorder(repo).record_success(
        project_id=project["id"],
        test_case_id=None,
        browser="chromium",
        initiator_id="u",
        output="",
        duration_ms=10,
        result=None,
    )

    assert repo.get_project(project["id"])["status"] == "passed"
    assert repo.get_project(project["id"])["last_run_by"] == "u"
    assert repo.get_test_case(alpha["id"])["status"] == "passed"
    assert repo.get_test_case(beta["id"])["status"] == "passed"
    items, _ = _history(repo, project["id"])
    assert items[0]["test_case_id"] is None


@pytest.mark.unit
def test_failing_sweep_maps_spec_outcomes_by_name(repo, project_with_cases) -> None:
    project, alpha, beta = project_with_cases
    result = NormalizedResult(
        success=False,
        suites=[
            NormalizedSuite(
                title="suite",
                specs=[NormalizedSpec(title="alpha", ok=False), NormalizedSpec(title="beta", ok=True)],
            )
        ],
    )

    ExecutionRecorder(repo).record_failure(
        project_id=project["id"],
        test_case_id=None,
        browser="chromium",
        initiator_id=None,
        output="",
        error_message="1 failed",
        duration_ms=10,
        result=result,
    )

    assert repo.get_project(project["id"])["status"] == "failed"
    assert repo.get_test_case(alpha["id"])["status"] == "failed"
    assert repo.get_test_case(beta["id"])["status"] == "passed"


@pytest.mark.unit
def test_failing_sweep_without_report_leaves_test_cases(repo, project_with_cases) -> None:
    project, alpha, _ = project_with_cases

    ExecutionRecorder(repo).record_failure(
        project_id=project["id"],
        test_case_id=None,
        browser="chromium",
        initiator_id=None,
        output="",
        error_message="spawn failed",
    )

    assert repo.get_project(project["id"])["status"] == "failed"
    assert repo.get_test_case(alpha["id"])["status"] == "pending"
