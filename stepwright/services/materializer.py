from __future__ import annotations

import hashlib
import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

from stepwright.constants import DEFAULT_STEP_TIMEOUT_MS, TESTS_DIR_NAME
from stepwright.schemas import GeneratedScript
from stepwright.services.artifacts import atomic_write_text
from stepwright.templating import code_templates

LOGGER = logging.getLogger("stepwright.materializer")

SCRIPT_SUFFIX = ".spec.ts"
STEP_TOKEN = "[step:{}]"


def to_valid_file_name(name: str) -> str:
    """Fold a display name into a lowercase, dash-separated file stem."""
    stem = re.sub(r"[^\w\s-]", "", name.strip(), flags=re.ASCII)
    stem = re.sub(r"[\s_]+", "-", stem)
    stem = re.sub(r"-+", "-", stem).strip("-").lower()
    if not stem:
        digest = hashlib.sha1(name.encode("utf-8")).hexdigest()[:8]
        stem = f"test-case-{digest}"
    return stem


def step_title(step: Mapping[str, Any]) -> str:
    """Runner-visible step title carrying the correlation token."""
    return f"{step['action']} {STEP_TOKEN.format(step['id'])}"


def _order_key(step: Mapping[str, Any]):
    order = step.get("order")
    return (order is None, order if order is not None else 0)


class ScriptMaterializer:
    """Turn a test case's ordered steps into a runnable Playwright spec file."""

    def __init__(self, tests_dir_name: str = TESTS_DIR_NAME, timeout_ms: int = DEFAULT_STEP_TIMEOUT_MS) -> None:
        self._tests_dir_name = tests_dir_name
        self._timeout_ms = timeout_ms

    def script_path(self, project_path: Path, test_case_name: str) -> Path:
        return project_path / self._tests_dir_name / f"{to_valid_file_name(test_case_name)}{SCRIPT_SUFFIX}"

    def active_steps(self, steps: Sequence[Mapping[str, Any]]) -> List[Mapping[str, Any]]:
        ordered = sorted(steps, key=_order_key)
        return [step for step in ordered if not step.get("disabled")]

    def render(
        self,
        test_case: Mapping[str, Any],
        steps: Sequence[Mapping[str, Any]],
        base_url: Optional[str],
        fixtures: Optional[Dict[str, str]] = None,
    ) -> str:
        fixtures = fixtures or {}
        context_steps = []
        for step in self.active_steps(steps):
            fixture_id = step.get("fixture_id")
            context_steps.append(
                {
                    "title": step_title(step),
                    "data": step.get("data"),
                    "expected": step.get("expected"),
                    "selector": step.get("selector"),
                    "fixture": fixtures.get(fixture_id) if fixture_id else None,
                }
            )
        tags = [tag if tag.startswith("@") else f"@{tag}" for tag in test_case.get("tags") or []]
        template = code_templates.get_template("test_case.spec.ts.j2")
        return template.render(
            name=test_case["name"],
            description=test_case.get("description"),
            tags=tags,
            timeout_ms=self._timeout_ms,
            base_url=base_url or "/",
            steps=context_steps,
        )

    def build(
        self,
        test_case: Mapping[str, Any],
        steps: Sequence[Mapping[str, Any]],
        base_url: Optional[str],
        project_path: Path,
        fixtures: Optional[Dict[str, str]] = None,
    ) -> GeneratedScript:
        """Render and write the script, returning its path and content."""
        content = self.render(test_case, steps, base_url, fixtures)
        target = self.script_path(project_path, test_case["name"])
        atomic_write_text(target, content)
        step_count = len(self.active_steps(steps))
        LOGGER.info("Wrote %s with %d step(s) for test case %s", target, step_count, test_case.get("id"))
        return GeneratedScript(file_path=str(target), content=content, step_count=step_count)

    def materialize(
        self,
        test_case: Mapping[str, Any],
        steps: Sequence[Mapping[str, Any]],
        base_url: Optional[str],
        project_path: Path,
        fixtures: Optional[Dict[str, str]] = None,
    ) -> Path:
        return Path(self.build(test_case, steps, base_url, project_path, fixtures).file_path)
