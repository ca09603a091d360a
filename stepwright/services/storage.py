from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends

from stepwright.constants import (
    DEFAULT_BROWSER,
    DEFAULT_RUNNER_COMMAND,
    OUTPUT_DIR_NAME,
    TESTS_DIR_NAME,
)

STATE_VERSION = 1

COLLECTIONS = ("projects", "test_cases", "test_steps", "fixtures", "test_history")


def _utcnow() -> str:
    """Return timezone-aware ISO timestamp."""
    return datetime.now(tz=timezone.utc).isoformat()


def _default_config() -> Dict[str, Any]:
    return {
        "default_browser": DEFAULT_BROWSER,
        "headless": True,
        "runner_command": list(DEFAULT_RUNNER_COMMAND),
        "output_dir_name": OUTPUT_DIR_NAME,
        "tests_dir_name": TESTS_DIR_NAME,
    }


def _default_state() -> Dict[str, Any]:
    state: Dict[str, Any] = {"version": STATE_VERSION, "config": _default_config()}
    for name in COLLECTIONS:
        state[name] = {}
    return state


def _clean_text(value: Optional[Any]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        return stripped or None
    return str(value)


def _clean_tags(value: Optional[Any]) -> List[str]:
    if not value or not isinstance(value, list):
        return []
    cleaned: List[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            continue
        token = item.strip()
        if token not in cleaned:
            cleaned.append(token)
    return cleaned


class LocalDocumentStorage:
    """Small document store backed by a single JSON file.

    Each top-level collection maps primary identifiers to records. All writes go
    through an internal lock and rewrite the whole file.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._state = self._load()

    def _load(self) -> Dict[str, Any]:
        if not self._path.exists():
            return _default_state()
        with self._path.open("r", encoding="utf-8") as handle:
            state = json.load(handle)
        for name in COLLECTIONS:
            state.setdefault(name, {})
        config = state.setdefault("config", {})
        for key, value in _default_config().items():
            config.setdefault(key, value)
        for test_case in state["test_cases"].values():
            test_case.setdefault("tags", [])
            test_case.setdefault("status", "pending")
        return state

    def _persist(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as handle:
            json.dump(self._state, handle, indent=2, sort_keys=True)

    def _collection(self, name: str) -> Dict[str, Any]:
        return self._state.setdefault(name, {})

    def get_config(self) -> Dict[str, Any]:
        return self._state.setdefault("config", _default_config())

    def update_config(self, **changes: Any) -> Dict[str, Any]:
        with self._lock:
            config = self.get_config()
            for key, value in changes.items():
                if value is not None:
                    config[key] = value
            self._persist()
            return config

    def upsert(self, collection: str, item_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._collection(collection)[item_id] = payload
            self._persist()
            return payload

    def get(self, collection: str, item_id: str) -> Optional[Dict[str, Any]]:
        return self._collection(collection).get(item_id)

    def list(self, collection: str) -> List[Dict[str, Any]]:
        return list(self._collection(collection).values())

    def filter(self, collection: str, *, key: str, value: Any) -> List[Dict[str, Any]]:
        return [item for item in self.list(collection) if item.get(key) == value]


class StepwrightRepository:
    """Domain helpers on top of LocalDocumentStorage."""

    def __init__(self, storage: LocalDocumentStorage) -> None:
        self._storage = storage

    # -- Config -------------------------------------------------------------------
    def get_config(self) -> Dict[str, Any]:
        config = self._storage.get_config()
        return {
            "default_browser": config.get("default_browser", DEFAULT_BROWSER),
            "headless": bool(config.get("headless", True)),
            "runner_command": list(config.get("runner_command") or DEFAULT_RUNNER_COMMAND),
            "output_dir_name": config.get("output_dir_name", OUTPUT_DIR_NAME),
            "tests_dir_name": config.get("tests_dir_name", TESTS_DIR_NAME),
        }

    def set_default_browser(self, browser: str) -> Dict[str, Any]:
        normalized = browser.strip().lower()
        if not normalized:
            raise ValueError("Default browser cannot be blank.")
        self._storage.update_config(default_browser=normalized)
        return self.get_config()

    def set_headless_default(self, headless: bool) -> Dict[str, Any]:
        self._storage.update_config(headless=bool(headless))
        return self.get_config()

    def set_runner_command(self, command: List[str]) -> Dict[str, Any]:
        cleaned = [part.strip() for part in command if part and part.strip()]
        if not cleaned:
            raise ValueError("Runner command must contain at least one argument.")
        if any("\x00" in part for part in cleaned):
            raise ValueError("Runner command arguments cannot contain NUL characters.")
        self._storage.update_config(runner_command=cleaned)
        return self.get_config()

    def set_directory_names(
        self,
        *,
        output_dir_name: Optional[str] = None,
        tests_dir_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        for value in (output_dir_name, tests_dir_name):
            if value is not None and (not value.strip() or "/" in value or "\\" in value or value in {".", ".."}):
                raise ValueError(f"Invalid directory name '{value}'")
        self._storage.update_config(output_dir_name=output_dir_name, tests_dir_name=tests_dir_name)
        return self.get_config()

    # -- Projects -----------------------------------------------------------------
    def list_projects(self) -> List[Dict[str, Any]]:
        return sorted(self._storage.list("projects"), key=lambda it: it["created_at"])

    def get_project(self, project_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("projects", project_id)

    def create_project(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = _utcnow()
        project_id = str(uuid.uuid4())
        record = {
            "id": project_id,
            "name": payload["name"],
            "url": _clean_text(payload.get("url")),
            "browser": payload.get("browser") or self.get_config()["default_browser"],
            "playwright_project_path": _clean_text(payload.get("playwright_project_path")),
            "description": payload.get("description"),
            "status": "pending",
            "last_run": None,
            "last_run_by": None,
            "created_at": now,
            "updated_at": now,
        }
        return self._storage.upsert("projects", project_id, record)

    def update_project(self, project_id: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = self.get_project(project_id)
        if not record:
            return None
        record.update({k: v for k, v in payload.items() if v is not None})
        record["updated_at"] = _utcnow()
        return self._storage.upsert("projects", project_id, record)

    def mark_project_run(
        self,
        project_id: str,
        *,
        status: Optional[str] = None,
        last_run_by: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        return self.update_project(
            project_id,
            {"status": status, "last_run": _utcnow(), "last_run_by": last_run_by},
        )

    # -- Test cases ---------------------------------------------------------------
    def list_test_cases(self, project_id: str) -> List[Dict[str, Any]]:
        return sorted(
            self._storage.filter("test_cases", key="project_id", value=project_id),
            key=lambda it: it["created_at"],
        )

    def get_test_case(self, test_case_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("test_cases", test_case_id)

    def create_test_case(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = _utcnow()
        test_case_id = str(uuid.uuid4())
        record = {
            "id": test_case_id,
            "project_id": payload["project_id"],
            "name": payload["name"].strip(),
            "description": payload.get("description"),
            "tags": _clean_tags(payload.get("tags")),
            "status": "pending",
            "last_run": None,
            "last_run_by": None,
            "created_at": now,
            "updated_at": now,
        }
        return self._storage.upsert("test_cases", test_case_id, record)

    def update_test_case(self, test_case_id: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        record = self.get_test_case(test_case_id)
        if not record:
            return None
        updates = {k: v for k, v in payload.items() if v is not None}
        if "tags" in updates:
            updates["tags"] = _clean_tags(updates["tags"])
        record.update(updates)
        record["updated_at"] = _utcnow()
        return self._storage.upsert("test_cases", test_case_id, record)

    def mark_test_case_run(
        self,
        test_case_id: str,
        *,
        status: str,
        last_run_by: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        return self.update_test_case(
            test_case_id,
            {"status": status, "last_run": _utcnow(), "last_run_by": last_run_by},
        )

    # -- Fixtures -----------------------------------------------------------------
    def get_fixture(self, fixture_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("fixtures", fixture_id)

    def create_fixture(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        now = _utcnow()
        fixture_id = str(uuid.uuid4())
        record = {
            "id": fixture_id,
            "project_id": payload["project_id"],
            "name": payload["name"],
            "created_at": now,
            "updated_at": now,
        }
        return self._storage.upsert("fixtures", fixture_id, record)

    # -- Steps --------------------------------------------------------------------
    def list_steps(
        self,
        *,
        test_case_id: Optional[str] = None,
        fixture_id: Optional[str] = None,
        include_disabled: bool = True,
    ) -> List[Dict[str, Any]]:
        if (test_case_id is None) == (fixture_id is None):
            raise ValueError("Exactly one of test_case_id or fixture_id is required.")
        if test_case_id is not None:
            items = self._storage.filter("test_steps", key="test_case_id", value=test_case_id)
        else:
            items = self._storage.filter("test_steps", key="fixture_id_owner", value=fixture_id)
        if not include_disabled:
            items = [it for it in items if not it.get("disabled")]
        return sorted(items, key=lambda it: (it.get("order", 0), it["created_at"]))

    def create_step(
        self,
        payload: Dict[str, Any],
        *,
        test_case_id: Optional[str] = None,
        fixture_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        existing = self.list_steps(test_case_id=test_case_id, fixture_id=fixture_id)
        order = payload.get("order")
        if order is None:
            order = max((it.get("order", 0) for it in existing), default=0) + 1
        now = _utcnow()
        step_id = str(uuid.uuid4())
        record = {
            "id": step_id,
            "test_case_id": test_case_id,
            "fixture_id_owner": fixture_id,
            "action": payload["action"],
            "data": _clean_text(payload.get("data")),
            "expected": _clean_text(payload.get("expected")),
            "selector": _clean_text(payload.get("selector")),
            "order": int(order),
            "disabled": bool(payload.get("disabled", False)),
            "fixture_id": payload.get("fixture_id"),
            "created_at": now,
            "updated_at": now,
        }
        return self._storage.upsert("test_steps", step_id, record)

    # -- History ------------------------------------------------------------------
    def create_history(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        history_id = str(uuid.uuid4())
        record = {
            "id": history_id,
            "project_id": payload["project_id"],
            "test_case_id": payload.get("test_case_id"),
            "success": bool(payload["success"]),
            "status": payload["status"],
            "execution_time": payload.get("execution_time"),
            "output": payload.get("output") or "",
            "error_message": payload.get("error_message"),
            "result_data": payload.get("result_data"),
            "browser": payload["browser"],
            "last_run_by": payload.get("last_run_by"),
            "video_url": payload.get("video_url"),
            "created_at": _utcnow(),
        }
        return self._storage.upsert("test_history", history_id, record)

    def get_history(self, history_id: str) -> Optional[Dict[str, Any]]:
        return self._storage.get("test_history", history_id)

    def list_history(
        self,
        project_id: str,
        *,
        test_case_id: Optional[str] = None,
        limit: int = 20,
        page: int = 1,
    ) -> Tuple[List[Dict[str, Any]], int]:
        items = self._storage.filter("test_history", key="project_id", value=project_id)
        if test_case_id:
            items = [it for it in items if it.get("test_case_id") == test_case_id]
        items.sort(key=lambda it: it["created_at"], reverse=True)
        start = max(page - 1, 0) * limit
        return items[start:start + limit], len(items)


_repository: Optional[StepwrightRepository] = None


def get_repository() -> StepwrightRepository:
    """FastAPI dependency to retrieve the singleton repository instance."""
    global _repository
    if _repository is None:
        storage_path = Path("dev.stepwright.json")
        backend = LocalDocumentStorage(storage_path)
        _repository = StepwrightRepository(backend)
    return _repository


RepositoryDep = Depends(get_repository)
