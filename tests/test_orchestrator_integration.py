from __future__ import annotations

import os
import shutil
import subprocess
from functools import partial
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path
import socket
import threading
from typing import Tuple

import pytest

from stepwright.schemas import PlaywrightConfigPatch
from stepwright.services.artifacts import ArtifactStore
from stepwright.services.config_patcher import ConfigPatcher
from stepwright.services.materializer import ScriptMaterializer
from stepwright.services.orchestrator import ExecutionOrchestrator, RunOptions
from stepwright.services.storage import LocalDocumentStorage, StepwrightRepository


def _start_http_server(root: Path) -> Tuple[ThreadingHTTPServer, threading.Thread, int]:
    handler = partial(SimpleHTTPRequestHandler, directory=str(root))

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    server = ThreadingHTTPServer(("127.0.0.1", port), handler)
    server.daemon_threads = True
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    return server, thread, port


def _playwright_available(project_dir: Path) -> bool:
    if shutil.which("npx") is None:
        return False
    try:
        proc = subprocess.run(
            ["npx", "--no-install", "playwright", "--version"],
            cwd=str(project_dir),
            capture_output=True,
            text=True,
            timeout=60,
            check=False,
        )
    except (OSError, subprocess.TimeoutExpired):
        return False
    return proc.returncode == 0


@pytest.mark.integration
def test_single_test_case_against_real_runner(tmp_path: Path) -> None:
    project_dir = Path(os.environ.get("STEPWRIGHT_PLAYWRIGHT_PROJECT", ""))
    if not os.environ.get("STEPWRIGHT_PLAYWRIGHT_PROJECT") or not project_dir.is_dir():
        pytest.skip("STEPWRIGHT_PLAYWRIGHT_PROJECT not set; skipping integration test")
    if not _playwright_available(project_dir):
        pytest.skip("Playwright CLI unavailable; skipping integration test")

    site_root = tmp_path / "site"
    site_root.mkdir()
    (site_root / "index.html").write_text(
        "<html><body><button id='buy'>Buy</button></body></html>", encoding="utf-8"
    )
    server, thread, port = _start_http_server(site_root)
    try:
        repo = StepwrightRepository(LocalDocumentStorage(tmp_path / "db.json"))
        store = ArtifactStore(root=tmp_path / "artifacts")
        base_url = f"http://127.0.0.1:{port}/"
        ConfigPatcher().write_from_template(
            project_dir / "playwright.config.ts",
            PlaywrightConfigPatch(base_url=base_url, video="on", workers=1),
        )
        project = repo.create_project(
            {"name": "Integration", "url": base_url, "playwright_project_path": str(project_dir)}
        )
        test_case = repo.create_test_case({"project_id": project["id"], "name": "Buy button visible"})
        step = repo.create_step({"action": "See buy button", "selector": "#buy"}, test_case_id=test_case["id"])

        orchestrator = ExecutionOrchestrator(repo, store)
        ScriptMaterializer().materialize(test_case, [step], base_url, project_dir)
        response = orchestrator.run_test_case(test_case["id"], RunOptions(initiator_id="integration"))

        assert response.success, response.output
        assert response.test_results is not None
        assert response.steps is not None
        assert any(s.step_id == step["id"] and s.success for s in response.steps)
        assert response.video_url is not None
        assert store.video_path(response.video_url) is not None
        items, total = repo.list_history(project["id"])
        assert total == 1
        assert items[0]["status"] == "passed"
    finally:
        server.shutdown()
        thread.join(timeout=5)
