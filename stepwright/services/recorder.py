from __future__ import annotations

import logging
from typing import Dict, Optional

from stepwright.schemas import NormalizedResult, TestStatus
from stepwright.services.storage import StepwrightRepository

LOGGER = logging.getLogger("stepwright.recorder")


class ExecutionRecorder:
    """Write the immutable history row for a run and refresh cached statuses."""

    def __init__(self, repo: StepwrightRepository) -> None:
        self._repo = repo

    def record_success(
        self,
        *,
        project_id: str,
        test_case_id: Optional[str],
        browser: str,
        initiator_id: Optional[str],
        output: str,
        duration_ms: int,
        result: Optional[NormalizedResult],
        video_ref: Optional[str] = None,
    ) -> Optional[str]:
        return self._record(
            status=TestStatus.passed,
            project_id=project_id,
            test_case_id=test_case_id,
            browser=browser,
            initiator_id=initiator_id,
            output=output,
            duration_ms=duration_ms,
            result=result,
            video_ref=video_ref,
            error_message=None,
        )

    def record_failure(
        self,
        *,
        project_id: str,
        test_case_id: Optional[str],
        browser: str,
        initiator_id: Optional[str],
        output: str,
        error_message: Optional[str],
        duration_ms: Optional[int] = None,
        result: Optional[NormalizedResult] = None,
        video_ref: Optional[str] = None,
    ) -> Optional[str]:
        return self._record(
            status=TestStatus.failed,
            project_id=project_id,
            test_case_id=test_case_id,
            browser=browser,
            initiator_id=initiator_id,
            output=output,
            duration_ms=duration_ms,
            result=result,
            video_ref=video_ref,
            error_message=error_message,
        )

    def _record(
        self,
        *,
        status: TestStatus,
        project_id: str,
        test_case_id: Optional[str],
        browser: str,
        initiator_id: Optional[str],
        output: str,
        duration_ms: Optional[int],
        result: Optional[NormalizedResult],
        video_ref: Optional[str],
        error_message: Optional[str],
    ) -> Optional[str]:
        history_id: Optional[str] = None
        try:
            row = self._repo.create_history(
                {
                    "project_id": project_id,
                    "test_case_id": test_case_id,
                    "success": status is TestStatus.passed,
                    "status": status.value,
                    "execution_time": duration_ms,
                    "output": output,
                    "error_message": error_message,
                    "result_data": result.model_dump_json() if result is not None else None,
                    "browser": browser,
                    "last_run_by": initiator_id,
                    "video_url": video_ref,
                }
            )
            history_id = row["id"]
        except Exception:
            LOGGER.exception("Failed to save execution history for project %s", project_id)

        try:
            if test_case_id:
                self._repo.mark_test_case_run(test_case_id, status=status.value, last_run_by=initiator_id)
            else:
                self._repo.mark_project_run(project_id, status=status.value, last_run_by=initiator_id)
                self._refresh_sweep_statuses(project_id, status, result, initiator_id)
        except Exception:
            LOGGER.exception("Failed to update cached run status for project %s", project_id)
        return history_id

    def _refresh_sweep_statuses(
        self,
        project_id: str,
        status: TestStatus,
        result: Optional[NormalizedResult],
        initiator_id: Optional[str],
    ) -> None:
        if status is TestStatus.passed:
            outcomes: Dict[str, str] = {
                tc["name"]: TestStatus.passed.value for tc in self._repo.list_test_cases(project_id)
            }
        elif result is not None:
            outcomes = {}
            for suite in result.suites:
                for spec in suite.specs:
                    outcome = TestStatus.passed if spec.ok else TestStatus.failed
                    if outcomes.get(spec.title) != TestStatus.failed.value:
                        outcomes[spec.title] = outcome.value
        else:
            return
        for test_case in self._repo.list_test_cases(project_id):
            outcome = outcomes.get(test_case["name"])
            if outcome is not None:
                self._repo.mark_test_case_run(test_case["id"], status=outcome, last_run_by=initiator_id)
