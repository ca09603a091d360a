from __future__ import annotations

import json
import logging
import re
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from stepwright.schemas import (
    NormalizedResult,
    NormalizedSpec,
    NormalizedSuite,
    NormalizedTest,
    StepResult,
    TestError,
)

LOGGER = logging.getLogger("stepwright.report")

PASSING_STATUSES = {"passed", "expected", "flaky"}
NEUTRAL_STATUSES = {"skipped"}
_STEP_TOKEN_RE = re.compile(r"\[step:([^\]\s]+)\]")


def _load(raw: str) -> Optional[Dict[str, Any]]:
    if not raw or not raw.strip():
        return None
    try:
        payload = json.loads(raw)
    except ValueError:
        start, end = raw.find("{"), raw.rfind("}")
        if start == -1 or end <= start:
            return None
        try:
            payload = json.loads(raw[start:end + 1])
        except ValueError:
            return None
    if not isinstance(payload, dict):
        return None
    return payload


def _dicts(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def _last_result(test: Mapping[str, Any]) -> Dict[str, Any]:
    results = _dicts(test.get("results"))
    return results[-1] if results else {}


def _test_status(test: Mapping[str, Any]) -> Optional[str]:
    status = test.get("status")
    if status is None:
        status = _last_result(test).get("status")
    return status


def _test_duration(test: Mapping[str, Any]) -> Optional[float]:
    duration = test.get("duration")
    if duration is None:
        duration = _last_result(test).get("duration")
    return duration if isinstance(duration, (int, float)) else None


def _test_error(test: Mapping[str, Any]) -> Any:
    error = test.get("error")
    if error is None:
        result = _last_result(test)
        error = result.get("error")
        if error is None:
            errors = result.get("errors")
            if isinstance(errors, list) and errors:
                error = errors[0]
    return error


def _test_steps(test: Mapping[str, Any]) -> List[Dict[str, Any]]:
    if "steps" in test:
        return _dicts(test.get("steps"))
    return _dicts(_last_result(test).get("steps"))


def _is_passed(test: Mapping[str, Any]) -> bool:
    return _test_status(test) in PASSING_STATUSES or test.get("passed") is True


def _is_failing(test: Mapping[str, Any]) -> bool:
    return not _is_passed(test) and _test_status(test) not in NEUTRAL_STATUSES


def _suite_specs(suite: Mapping[str, Any]) -> Iterable[Dict[str, Any]]:
    """Specs of a suite, including those of nested describe blocks."""
    yield from _dicts(suite.get("specs"))
    for child in _dicts(suite.get("suites")):
        yield from _suite_specs(child)


def _error_model(error: Any) -> Optional[TestError]:
    if error is None:
        return None
    if isinstance(error, dict):
        message = error.get("message") or error.get("value") or json.dumps(error)
        stack = error.get("stack")
        return TestError(message=str(message), stack=str(stack) if stack is not None else None)
    return TestError(message=str(error))


def _dedupe_specs(specs: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    kept: Dict[str, Dict[str, Any]] = {}
    for spec in specs:
        title = spec.get("title", "")
        if title not in kept or spec.get("ok") is False:
            kept[title] = spec
    return list(kept.values())


def _dedupe_tests(spec: Mapping[str, Any]) -> List[Dict[str, Any]]:
    kept: Dict[str, Dict[str, Any]] = {}
    for test in _dicts(spec.get("tests")):
        title = _test_title(test, spec)
        # a recorded failure is never replaced
        if title not in kept or (not _is_passed(test) and not _is_failing(kept[title])):
            kept[title] = test
    return list(kept.values())


def _test_title(test: Mapping[str, Any], spec: Mapping[str, Any]) -> str:
    return str(test.get("title") or test.get("projectName") or spec.get("title") or "")


class ReportNormalizer:
    """Project a raw runner JSON report into the deduplicated result tree."""

    def normalize(
        self,
        raw: str,
        step_records: Sequence[Mapping[str, Any]] = (),
        stderr: str = "",
    ) -> Optional[NormalizedResult]:
        payload = _load(raw)
        if payload is None:
            LOGGER.warning("Runner report could not be parsed; keeping raw output only")
            return None
        stats = payload.get("stats") if isinstance(payload.get("stats"), dict) else {}
        raw_suites = _dicts(payload.get("suites"))

        suites: List[NormalizedSuite] = []
        any_failure = False
        for suite in raw_suites:
            specs: List[NormalizedSpec] = []
            for spec in _dedupe_specs(_suite_specs(suite)):
                tests = [self._project_test(test, spec) for test in _dedupe_tests(spec)]
                ok = spec.get("ok")
                if not isinstance(ok, bool):
                    ok = all(t.passed or t.status in NEUTRAL_STATUSES for t in tests)
                if any(not t.passed and t.status not in NEUTRAL_STATUSES for t in tests) or ok is False:
                    any_failure = True
                specs.append(NormalizedSpec(title=str(spec.get("title", "")), ok=ok, tests=tests))
            suites.append(NormalizedSuite(title=str(suite.get("title", "")), specs=specs))

        unexpected = stats.get("unexpected") if isinstance(stats, dict) else None
        has_unexpected = isinstance(unexpected, (int, float)) and unexpected > 0
        if stderr.strip():
            LOGGER.debug("Runner wrote to stderr: %s", stderr.strip()[:500])

        return NormalizedResult(
            stats=stats,
            suites=suites,
            success=not (has_unexpected or any_failure),
            step_results=self._step_results(raw_suites, step_records),
        )

    def _project_test(self, test: Mapping[str, Any], spec: Mapping[str, Any]) -> NormalizedTest:
        return NormalizedTest(
            title=_test_title(test, spec),
            status=_test_status(test),
            passed=_is_passed(test),
            duration=_test_duration(test),
            error=_error_model(_test_error(test)),
        )

    def _step_results(
        self,
        raw_suites: Sequence[Mapping[str, Any]],
        step_records: Sequence[Mapping[str, Any]],
    ) -> List[StepResult]:
        first_test: Optional[Mapping[str, Any]] = None
        if raw_suites:
            for spec in _suite_specs(raw_suites[0]):
                tests = _dicts(spec.get("tests"))
                if tests:
                    first_test = tests[0]
                break
        if first_test is None:
            return []
        runner_steps = _test_steps(first_test)
        by_id = {str(record.get("id")): record for record in step_records if record.get("id") is not None}
        use_tokens = any(_STEP_TOKEN_RE.search(str(step.get("title", ""))) for step in runner_steps)

        results: List[StepResult] = []
        for index, step in enumerate(runner_steps):
            title = str(step.get("title", ""))
            record: Optional[Mapping[str, Any]] = None
            if use_tokens:
                match = _STEP_TOKEN_RE.search(title)
                if match:
                    record = by_id.get(match.group(1))
            elif index < len(step_records):
                record = step_records[index]
            error = step.get("error")
            duration = step.get("duration")
            results.append(
                StepResult(
                    action=record["action"] if record else title,
                    data=record.get("data") if record else None,
                    expected=record.get("expected") if record else None,
                    step_id=str(record["id"]) if record and record.get("id") is not None else None,
                    success=not error,
                    error=error,
                    duration=duration if isinstance(duration, (int, float)) else None,
                )
            )
        return results


_report_normalizer: Optional[ReportNormalizer] = None


def get_report_normalizer() -> ReportNormalizer:
    global _report_normalizer
    if _report_normalizer is None:
        _report_normalizer = ReportNormalizer()
    return _report_normalizer
