from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from fastapi.concurrency import run_in_threadpool

from stepwright.schemas import (
    ExecutionMode,
    ExecutionResponse,
    GeneratedScript,
    Project,
    ProjectCreate,
    RunTestsRequest,
    TestCase,
    TestCaseCreate,
    TestHistoryPage,
    TestResultHistory,
    TestStep,
    TestStepCreate,
)
from stepwright.services.materializer import ScriptMaterializer
from stepwright.services.orchestrator import ExecutionOrchestrator, RunOptions, get_orchestrator
from stepwright.services.storage import RepositoryDep, StepwrightRepository

LOGGER = logging.getLogger("stepwright.api")

router = APIRouter(prefix="/api", tags=["api"])

OrchestratorDep = Depends(get_orchestrator)


def _require_project(repo: StepwrightRepository, project_id: str) -> Dict:
    project = repo.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project not found")
    return project


def _require_test_case(repo: StepwrightRepository, test_case_id: str) -> Dict:
    test_case = repo.get_test_case(test_case_id)
    if not test_case:
        raise HTTPException(status_code=404, detail="Test case not found")
    return test_case


def _require_playwright_path(project: Dict) -> Path:
    if not project.get("playwright_project_path"):
        raise HTTPException(status_code=400, detail="Project has not been initialized with Playwright")
    return Path(project["playwright_project_path"])


# Projects ------------------------------------------------------------------------
@router.get("/projects", response_model=List[Project])
async def list_projects(repo: StepwrightRepository = RepositoryDep) -> List[Project]:
    return repo.list_projects()


@router.post("/projects", response_model=Project, status_code=201)
async def create_project(
    payload: ProjectCreate, repo: StepwrightRepository = RepositoryDep
) -> Project:
    return repo.create_project(payload.model_dump(mode="json"))


@router.get("/projects/{project_id}", response_model=Project)
async def get_project(project_id: str, repo: StepwrightRepository = RepositoryDep) -> Project:
    return _require_project(repo, project_id)


# Test cases ----------------------------------------------------------------------
@router.get("/projects/{project_id}/test-cases", response_model=List[TestCase])
async def list_test_cases(project_id: str, repo: StepwrightRepository = RepositoryDep) -> List[TestCase]:
    _require_project(repo, project_id)
    return repo.list_test_cases(project_id)


@router.post("/projects/{project_id}/test-cases", response_model=TestCase, status_code=201)
async def create_test_case(
    project_id: str, payload: TestCaseCreate, repo: StepwrightRepository = RepositoryDep
) -> TestCase:
    _require_project(repo, project_id)
    return repo.create_test_case({**payload.model_dump(), "project_id": project_id})


@router.get("/test-cases/{test_case_id}", response_model=TestCase)
async def get_test_case(test_case_id: str, repo: StepwrightRepository = RepositoryDep) -> TestCase:
    return _require_test_case(repo, test_case_id)


# Steps ---------------------------------------------------------------------------
@router.get("/test-cases/{test_case_id}/steps", response_model=List[TestStep])
async def list_steps(test_case_id: str, repo: StepwrightRepository = RepositoryDep) -> List[TestStep]:
    _require_test_case(repo, test_case_id)
    return repo.list_steps(test_case_id=test_case_id)


@router.post("/test-cases/{test_case_id}/steps", response_model=TestStep, status_code=201)
async def create_step(
    test_case_id: str, payload: TestStepCreate, repo: StepwrightRepository = RepositoryDep
) -> TestStep:
    _require_test_case(repo, test_case_id)
    if payload.fixture_id and not repo.get_fixture(payload.fixture_id):
        raise HTTPException(status_code=404, detail="Fixture not found")
    return repo.create_step(payload.model_dump(), test_case_id=test_case_id)


@router.post("/test-cases/{test_case_id}/consolidate", response_model=GeneratedScript)
async def consolidate_steps(
    test_case_id: str, repo: StepwrightRepository = RepositoryDep
) -> GeneratedScript:
    """Regenerate the spec file for a test case from its current steps."""
    test_case = _require_test_case(repo, test_case_id)
    project = _require_project(repo, test_case["project_id"])
    project_path = _require_playwright_path(project)
    steps = repo.list_steps(test_case_id=test_case_id)
    fixtures: Dict[str, str] = {}
    for step in steps:
        fixture_id = step.get("fixture_id")
        if fixture_id and fixture_id not in fixtures:
            fixture = repo.get_fixture(fixture_id)
            if fixture:
                fixtures[fixture_id] = fixture["name"]
    materializer = ScriptMaterializer(tests_dir_name=repo.get_config()["tests_dir_name"])
    try:
        return materializer.build(test_case, steps, project.get("url"), project_path, fixtures)
    except OSError as exc:
        LOGGER.error("Could not write script for test case %s: %s", test_case_id, exc)
        raise HTTPException(status_code=500, detail="Failed to write test script") from exc


# Execution -----------------------------------------------------------------------
@router.post("/projects/{project_id}/run-tests", response_model=ExecutionResponse)
async def run_tests(
    project_id: str,
    payload: RunTestsRequest,
    repo: StepwrightRepository = RepositoryDep,
    orchestrator: ExecutionOrchestrator = OrchestratorDep,
    x_user_id: Optional[str] = Header(default=None),
) -> ExecutionResponse:
    project = _require_project(repo, project_id)
    _require_playwright_path(project)
    if payload.test_case_id:
        test_case = _require_test_case(repo, payload.test_case_id)
        if test_case["project_id"] != project_id:
            raise HTTPException(status_code=404, detail="Test case not found")
        mode, target_id = ExecutionMode.single_test_case, payload.test_case_id
    else:
        mode, target_id = ExecutionMode.whole_project, project_id
    options = RunOptions(
        browser=payload.browser.value if payload.browser else None,
        headless=payload.headless,
        initiator_id=x_user_id,
    )
    try:
        return await run_in_threadpool(orchestrator.run, mode, target_id, options)
    except Exception as exc:
        LOGGER.exception("Failed to run tests for project %s", project_id)
        raise HTTPException(status_code=500, detail="Failed to run tests") from exc


# History -------------------------------------------------------------------------
@router.get("/projects/{project_id}/test-history", response_model=TestHistoryPage)
async def list_test_history(
    project_id: str,
    test_case_id: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=100),
    page: int = Query(default=1, ge=1),
    repo: StepwrightRepository = RepositoryDep,
) -> TestHistoryPage:
    _require_project(repo, project_id)
    items, total = repo.list_history(project_id, test_case_id=test_case_id, limit=limit, page=page)
    return TestHistoryPage(items=items, total=total, page=page, limit=limit)


@router.get("/test-history/{history_id}", response_model=TestResultHistory)
async def get_test_history(history_id: str, repo: StepwrightRepository = RepositoryDep) -> TestResultHistory:
    record = repo.get_history(history_id)
    if not record:
        raise HTTPException(status_code=404, detail="Test result not found")
    return record
