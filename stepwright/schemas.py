from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


class BrowserName(str, Enum):
    chromium = "chromium"
    firefox = "firefox"
    webkit = "webkit"
    chrome = "chrome"
    msedge = "msedge"


class TestStatus(str, Enum):
    __test__ = False

    pending = "pending"
    passed = "passed"
    failed = "failed"


class ExecutionMode(str, Enum):
    single_test_case = "single_test_case"
    whole_project = "whole_project"


class ArtifactKind(str, Enum):
    video = "video"
    screenshot = "screenshot"


# Projects ---------------------------------------------------------------------------
class ProjectBase(BaseModel):
    name: str
    url: Optional[str] = None
    browser: BrowserName = BrowserName.chromium
    playwright_project_path: Optional[str] = None
    description: Optional[str] = None


class ProjectCreate(ProjectBase):
    pass


class Project(ProjectBase):
    id: str
    status: TestStatus = TestStatus.pending
    last_run: Optional[str] = None
    last_run_by: Optional[str] = None
    created_at: str
    updated_at: str

    model_config = {"from_attributes": True}


# Test cases -------------------------------------------------------------------------
class TestCaseBase(BaseModel):
    __test__ = False

    name: str
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Test case name cannot be blank.")
        return value


class TestCaseCreate(TestCaseBase):
    __test__ = False


class TestCase(TestCaseBase):
    __test__ = False

    id: str
    project_id: str
    status: TestStatus = TestStatus.pending
    last_run: Optional[str] = None
    last_run_by: Optional[str] = None
    created_at: str
    updated_at: str

    model_config = {"from_attributes": True}


class TestStepBase(BaseModel):
    __test__ = False

    action: str
    data: Optional[str] = None
    expected: Optional[str] = None
    selector: Optional[str] = None
    order: Optional[int] = Field(default=None, ge=0)
    disabled: bool = False
    fixture_id: Optional[str] = None


class TestStepCreate(TestStepBase):
    __test__ = False


class TestStep(TestStepBase):
    __test__ = False

    id: str
    test_case_id: Optional[str] = None
    order: int
    created_at: str
    updated_at: str

    model_config = {"from_attributes": True}


class GeneratedScript(BaseModel):
    file_path: str
    content: str
    step_count: int


# Execution --------------------------------------------------------------------------
class RunTestsRequest(BaseModel):
    test_case_id: Optional[str] = None
    browser: Optional[BrowserName] = None
    headless: Optional[bool] = None


class StepResult(BaseModel):
    action: str
    data: Optional[str] = None
    expected: Optional[str] = None
    step_id: Optional[str] = None
    success: bool
    error: Optional[Any] = None
    duration: Optional[float] = None


class TestError(BaseModel):
    __test__ = False

    message: str
    stack: Optional[str] = None


class NormalizedTest(BaseModel):
    title: str
    status: Optional[str] = None
    passed: bool
    duration: Optional[float] = None
    error: Optional[TestError] = None


class NormalizedSpec(BaseModel):
    title: str
    ok: bool
    tests: List[NormalizedTest] = Field(default_factory=list)


class NormalizedSuite(BaseModel):
    title: str
    specs: List[NormalizedSpec] = Field(default_factory=list)


class NormalizedResult(BaseModel):
    stats: Dict[str, Any] = Field(default_factory=dict)
    suites: List[NormalizedSuite] = Field(default_factory=list)
    success: bool
    step_results: List[StepResult] = Field(default_factory=list)


class ExecutionResponse(BaseModel):
    success: bool
    output: str
    duration: Optional[int] = None
    steps: Optional[List[StepResult]] = None
    screenshots: Optional[List[str]] = None
    test_results: Optional[NormalizedResult] = None
    video_url: Optional[str] = None
    history_id: Optional[str] = None


class TestResultHistory(BaseModel):
    __test__ = False

    id: str
    project_id: str
    test_case_id: Optional[str] = None
    success: bool
    status: TestStatus
    execution_time: Optional[int] = None
    output: str
    error_message: Optional[str] = None
    result_data: Optional[str] = None
    browser: str
    last_run_by: Optional[str] = None
    video_url: Optional[str] = None
    created_at: str

    model_config = {"from_attributes": True}


class TestHistoryPage(BaseModel):
    __test__ = False

    items: List[TestResultHistory]
    total: int
    page: int
    limit: int


# Runner configuration ---------------------------------------------------------------
class Viewport(BaseModel):
    width: int
    height: int

    @field_validator("width", "height")
    @classmethod
    def validate_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("Viewport dimensions must be positive integers.")
        return value


class ScreenshotThresholds(BaseModel):
    max_diff_pixels: Optional[int] = Field(default=None, ge=0)
    threshold: Optional[float] = Field(default=None, ge=0, le=1)
    max_diff_pixel_ratio: Optional[float] = Field(default=None, ge=0, le=1)


class ExpectOptions(BaseModel):
    timeout: Optional[int] = Field(default=None, ge=0)
    to_have_screenshot: Optional[ScreenshotThresholds] = None
    to_match_snapshot: Optional[ScreenshotThresholds] = None


class PlaywrightConfigPatch(BaseModel):
    test_dir: Optional[str] = None
    output_dir: Optional[str] = None
    fully_parallel: Optional[bool] = None
    forbid_only: Optional[bool] = None
    retries: Optional[int] = Field(default=None, ge=0)
    workers: Optional[int] = Field(default=None, ge=1)
    timeout: Optional[int] = Field(default=None, ge=0)
    base_url: Optional[str] = None
    headless: Optional[bool] = None
    screenshot: Optional[str] = None
    video: Optional[str] = None
    trace: Optional[str] = None
    locale: Optional[str] = None
    timezone_id: Optional[str] = None
    color_scheme: Optional[str] = None
    viewport: Optional[Viewport] = None
    reporters: Optional[List[str]] = None
    report_file_names: Optional[Dict[str, str]] = None
    browsers: Optional[Dict[BrowserName, bool]] = None
    expect: Optional[ExpectOptions] = None

    model_config = {"extra": "ignore"}

    @field_validator("screenshot")
    @classmethod
    def validate_screenshot(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in {"off", "on", "only-on-failure"}:
            raise ValueError(f"Unsupported screenshot mode '{value}'")
        return value

    @field_validator("video")
    @classmethod
    def validate_video(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value not in {"off", "on", "retain-on-failure", "on-first-retry"}:
            raise ValueError(f"Unsupported video mode '{value}'")
        return value

    @field_validator("trace")
    @classmethod
    def validate_trace(cls, value: Optional[str]) -> Optional[str]:
        allowed = {"off", "on", "retain-on-failure", "on-first-retry", "on-all-retries"}
        if value is not None and value not in allowed:
            raise ValueError(f"Unsupported trace mode '{value}'")
        return value


class ConfigUpdateResult(BaseModel):
    success: bool
    message: str
    content: Optional[str] = None


class ProjectConfigView(BaseModel):
    id: str
    name: str
    url: Optional[str] = None
    browser: str
    playwright_path: str
    config_exists: bool
    project_config: Dict[str, Any] = Field(default_factory=dict)
    config: Dict[str, Any] = Field(default_factory=dict)


# Application settings ---------------------------------------------------------------
class AppSettings(BaseModel):
    default_browser: BrowserName
    headless: bool
    runner_command: List[str]
    output_dir_name: str
    tests_dir_name: str


class AppSettingsUpdate(BaseModel):
    default_browser: Optional[BrowserName] = None
    headless: Optional[bool] = None
    runner_command: Optional[List[str]] = None
    output_dir_name: Optional[str] = None
    tests_dir_name: Optional[str] = None
