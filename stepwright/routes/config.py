from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException

from stepwright.constants import CONFIG_FILE_NAME, PROJECT_CONFIG_FILE_NAME
from stepwright.schemas import (
    AppSettings,
    AppSettingsUpdate,
    ConfigUpdateResult,
    PlaywrightConfigPatch,
    ProjectConfigView,
)
from stepwright.services.config_patcher import ConfigPatcher, ConfigPatchError, get_config_patcher
from stepwright.services.orchestrator import reset_orchestrator
from stepwright.services.storage import RepositoryDep, StepwrightRepository

LOGGER = logging.getLogger("stepwright.config")

router = APIRouter(prefix="/api", tags=["config"])

PatcherDep = Depends(get_config_patcher)


def _project_root(repo: StepwrightRepository, project_id: str) -> tuple[Dict[str, Any], Path]:
    project = repo.get_project(project_id)
    if not project:
        raise HTTPException(status_code=404, detail="Project does not exist")
    if not project.get("playwright_project_path"):
        raise HTTPException(status_code=400, detail="Project has not been initialized with Playwright")
    return project, Path(project["playwright_project_path"])


def _read_project_config(root: Path) -> Dict[str, Any]:
    target = root / PROJECT_CONFIG_FILE_NAME
    if not target.is_file():
        return {}
    try:
        payload = json.loads(target.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        LOGGER.error("Error reading %s: %s", target, exc)
        return {}
    return payload if isinstance(payload, dict) else {}


@router.get("/projects/{project_id}/config", response_model=ProjectConfigView)
async def get_project_config(
    project_id: str,
    repo: StepwrightRepository = RepositoryDep,
    patcher: ConfigPatcher = PatcherDep,
) -> ProjectConfigView:
    project, root = _project_root(repo, project_id)
    config_path = root / CONFIG_FILE_NAME
    settings: Dict[str, Any] = {}
    if config_path.is_file():
        try:
            settings = patcher.read_settings(config_path.read_text(encoding="utf-8"))
        except ConfigPatchError as exc:
            LOGGER.warning("Could not read settings from %s: %s", config_path, exc)
    return ProjectConfigView(
        id=project["id"],
        name=project["name"],
        url=project.get("url"),
        browser=project["browser"],
        playwright_path=str(root),
        config_exists=config_path.is_file(),
        project_config=_read_project_config(root),
        config=settings,
    )


@router.patch("/projects/{project_id}/config", response_model=ConfigUpdateResult)
async def update_project_config(
    project_id: str,
    payload: PlaywrightConfigPatch,
    repo: StepwrightRepository = RepositoryDep,
    patcher: ConfigPatcher = PatcherDep,
) -> ConfigUpdateResult:
    _, root = _project_root(repo, project_id)
    config_path = root / CONFIG_FILE_NAME
    if not config_path.is_file():
        raise HTTPException(status_code=404, detail=f"Configuration file {CONFIG_FILE_NAME} not found")
    result = patcher.patch_file(config_path, payload)
    if not result.success:
        raise HTTPException(status_code=422, detail=result.message)
    updates: Dict[str, Any] = {}
    if payload.base_url:
        updates["url"] = payload.base_url
    if payload.browsers:
        active = next((name.value for name, enabled in payload.browsers.items() if enabled), None)
        if active:
            updates["browser"] = active
    if updates:
        repo.update_project(project_id, updates)
    return result


@router.post("/projects/{project_id}/config/reset", response_model=ConfigUpdateResult)
async def reset_project_config(
    project_id: str,
    payload: Optional[PlaywrightConfigPatch] = Body(default=None),
    repo: StepwrightRepository = RepositoryDep,
    patcher: ConfigPatcher = PatcherDep,
) -> ConfigUpdateResult:
    """Rewrite playwright.config.ts from the bundled template."""
    _, root = _project_root(repo, project_id)
    if not root.is_dir():
        raise HTTPException(status_code=404, detail="Playwright project directory not found")
    return patcher.write_from_template(root / CONFIG_FILE_NAME, payload)


# Application settings -------------------------------------------------------------
@router.get("/settings", response_model=AppSettings)
async def get_settings(repo: StepwrightRepository = RepositoryDep) -> AppSettings:
    return repo.get_config()


@router.patch("/settings", response_model=AppSettings)
async def update_settings(
    payload: AppSettingsUpdate, repo: StepwrightRepository = RepositoryDep
) -> AppSettings:
    try:
        if payload.default_browser is not None:
            repo.set_default_browser(payload.default_browser.value)
        if payload.headless is not None:
            repo.set_headless_default(payload.headless)
        if payload.runner_command is not None:
            repo.set_runner_command(payload.runner_command)
        if payload.output_dir_name is not None or payload.tests_dir_name is not None:
            repo.set_directory_names(
                output_dir_name=payload.output_dir_name,
                tests_dir_name=payload.tests_dir_name,
            )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    reset_orchestrator()
    return repo.get_config()
