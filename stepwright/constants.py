from __future__ import annotations

from typing import Dict, Optional, Tuple

DEFAULT_BROWSER = "chromium"
STANDARD_BROWSERS = ["chromium", "firefox", "webkit"]

# Playwright project name -> (device descriptor, optional channel)
BROWSER_DEVICES: Dict[str, Tuple[str, Optional[str]]] = {
    "chromium": ("Desktop Chrome", None),
    "firefox": ("Desktop Firefox", None),
    "webkit": ("Desktop Safari", None),
    "chrome": ("Desktop Chrome", "chrome"),
    "msedge": ("Desktop Edge", "msedge"),
}

DEFAULT_RUNNER_COMMAND = ["npx", "playwright", "test"]
RUNNER_REPORTER = "json"
OUTPUT_DIR_NAME = "test-results"
TESTS_DIR_NAME = "tests"
CONFIG_FILE_NAME = "playwright.config.ts"
PROJECT_CONFIG_FILE_NAME = "project-config.json"

VIDEO_EXTENSIONS = (".webm",)
SCREENSHOT_EXTENSION = ".png"
SWEEP_OWNER_KEY = "all-tests"

DEFAULT_REPORTERS = ["html", "json"]
DEFAULT_REPORT_FILE_NAMES: Dict[str, str] = {"json": "test-results/test-results.json"}

DEFAULT_STEP_TIMEOUT_MS = 30000
