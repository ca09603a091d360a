from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from stepwright.constants import (
    BROWSER_DEVICES,
    DEFAULT_REPORT_FILE_NAMES,
    DEFAULT_REPORTERS,
    OUTPUT_DIR_NAME,
    PROJECT_CONFIG_FILE_NAME,
    STANDARD_BROWSERS,
    TESTS_DIR_NAME,
)
from stepwright.schemas import ConfigUpdateResult, PlaywrightConfigPatch, ScreenshotThresholds
from stepwright.services.artifacts import atomic_write_text
from stepwright.templating import code_templates, js_str, js_value

LOGGER = logging.getLogger("stepwright.config_patcher")

Literal = Union[str, Callable[[str], str]]

_CONFIG_OPENERS = (
    re.compile(r"defineConfig\s*\(\s*\{"),
    re.compile(r"\bconfig\s*(?::\s*[\w.<>]+\s*)?=\s*\{"),
    re.compile(r"export\s+default\s*\{"),
)
_KEY_RE = re.compile(r"\s*(?:(?P<ident>[A-Za-z_$][\w$]*)|(?P<quoted>(['\"])[^'\"\n]*\3))\s*:")
_PROJECT_NAME_RE = re.compile(r"name\s*:\s*['\"]([\w-]+)['\"]")
_INT_RE = re.compile(r"-?\d+")

# (patch attribute, container path, config key)
_SCALAR_FIELDS: Sequence[Tuple[str, Tuple[str, ...], str]] = (
    ("test_dir", (), "testDir"),
    ("output_dir", (), "outputDir"),
    ("fully_parallel", (), "fullyParallel"),
    ("forbid_only", (), "forbidOnly"),
    ("retries", (), "retries"),
    ("workers", (), "workers"),
    ("timeout", (), "timeout"),
    ("base_url", ("use",), "baseURL"),
    ("headless", ("use",), "headless"),
    ("screenshot", ("use",), "screenshot"),
    ("video", ("use",), "video"),
    ("trace", ("use",), "trace"),
    ("locale", ("use",), "locale"),
    ("timezone_id", ("use",), "timezoneId"),
    ("color_scheme", ("use",), "colorScheme"),
)


class ConfigPatchError(ValueError):
    """Raised when the configuration text cannot be patched."""


@dataclass
class _Entry:
    key: str
    key_start: int
    value_start: int
    value_end: int


def _blank(chars: List[str], start: int, end: int) -> None:
    for idx in range(start, end):
        if chars[idx] != "\n":
            chars[idx] = " "


def _mask(text: str) -> str:
    """Return text of identical length with comments and string bodies blanked."""
    chars = list(text)
    length = len(text)
    idx = 0
    while idx < length:
        ch = text[idx]
        nxt = text[idx + 1] if idx + 1 < length else ""
        if ch == "/" and nxt == "/":
            end = text.find("\n", idx)
            end = length if end == -1 else end
            _blank(chars, idx, end)
            idx = end
            continue
        if ch == "/" and nxt == "*":
            end = text.find("*/", idx + 2)
            end = length if end == -1 else end + 2
            _blank(chars, idx, end)
            idx = end
            continue
        if ch in "'\"`":
            cursor = idx + 1
            while cursor < length:
                current = text[cursor]
                if current == "\\":
                    cursor += 2
                    continue
                if current == ch or (current == "\n" and ch != "`"):
                    break
                cursor += 1
            cursor = min(cursor, length)
            _blank(chars, idx + 1, cursor)
            idx = cursor + 1
            continue
        idx += 1
    return "".join(chars)


def _match_brace(masked: str, open_idx: int) -> int:
    depth = 0
    for idx in range(open_idx, len(masked)):
        ch = masked[idx]
        if ch in "{[(":
            depth += 1
        elif ch in "}])":
            depth -= 1
            if depth == 0:
                return idx
    raise ConfigPatchError("Unbalanced braces in configuration file")


def _config_object(masked: str) -> int:
    for pattern in _CONFIG_OPENERS:
        match = pattern.search(masked)
        if match:
            return match.end() - 1
    raise ConfigPatchError("Could not locate the configuration object")


def _entries(text: str, masked: str, open_idx: int) -> List[_Entry]:
    close_idx = _match_brace(masked, open_idx)
    found: List[_Entry] = []
    depth = 0
    seg_start = open_idx + 1
    for idx in range(open_idx + 1, close_idx + 1):
        ch = masked[idx]
        if ch in "{[(":
            depth += 1
            continue
        if ch in "}])" and idx != close_idx:
            depth -= 1
            continue
        if (ch == "," and depth == 0) or idx == close_idx:
            match = _KEY_RE.match(masked, seg_start, idx)
            if match:
                if match.group("ident"):
                    key = match.group("ident")
                    key_start = match.start("ident")
                else:
                    key_start = match.start("quoted")
                    key = text[key_start + 1:match.end("quoted") - 1]
                value_start = match.end()
                while value_start < idx and masked[value_start].isspace():
                    value_start += 1
                value_end = idx
                while value_end > value_start and masked[value_end - 1].isspace():
                    value_end -= 1
                found.append(_Entry(key, key_start, value_start, value_end))
            seg_start = idx + 1
    return found


def _line_indent(text: str, idx: int) -> str:
    line_start = text.rfind("\n", 0, idx) + 1
    prefix = text[line_start:idx]
    return prefix[: len(prefix) - len(prefix.lstrip())]


def _entry_indent(text: str, open_idx: int, entries: List[_Entry]) -> str:
    for entry in entries:
        line_start = text.rfind("\n", 0, entry.key_start) + 1
        if not text[line_start:entry.key_start].strip():
            return text[line_start:entry.key_start]
    return _line_indent(text, open_idx) + "  "


def _resolve_container(text: str, path: Sequence[str]) -> Tuple[str, int]:
    """Return (text, open brace index) for the object at path, creating it if absent."""
    open_idx = _config_object(_mask(text))
    for name in path:
        masked = _mask(text)
        entry = next((e for e in _entries(text, masked, open_idx) if e.key == name), None)
        if entry is None:
            text = _write_entry(text, open_idx, name, "{}")
        elif masked[entry.value_start] != "{":
            text = text[: entry.value_start] + "{}" + text[entry.value_end:]
        masked = _mask(text)
        entry = next(e for e in _entries(text, masked, open_idx) if e.key == name)
        open_idx = entry.value_start
    return text, open_idx


def _write_entry(text: str, open_idx: int, key: str, literal: Literal) -> str:
    masked = _mask(text)
    entries = _entries(text, masked, open_idx)
    indent = _entry_indent(text, open_idx, entries)
    value = literal(indent) if callable(literal) else literal
    existing = next((e for e in entries if e.key == key), None)
    if existing is not None:
        if text[existing.value_start:existing.value_end] == value:
            return text
        return text[: existing.value_start] + value + text[existing.value_end:]
    close_idx = _match_brace(masked, open_idx)
    if not text[open_idx + 1:close_idx].strip():
        outer = _line_indent(text, open_idx)
        body = f"\n{indent}{key}: {value},\n{outer}"
        return text[: open_idx + 1] + body + text[close_idx:]
    return text[: open_idx + 1] + f"\n{indent}{key}: {value}," + text[open_idx + 1:]


def _set_value(text: str, path: Sequence[str], key: str, literal: Literal) -> str:
    text, open_idx = _resolve_container(text, path)
    return _write_entry(text, open_idx, key, literal)


def _coerce_literal(raw: str) -> Any:
    stripped = raw.strip()
    if _INT_RE.fullmatch(stripped):
        return int(stripped)
    if stripped in {"true", "false"}:
        return stripped == "true"
    if len(stripped) >= 2 and stripped[0] == stripped[-1] and stripped[0] in "'\"":
        inner = stripped[1:-1]
        if "\\" not in inner and stripped[0] not in inner:
            return inner
    return stripped


def _report_target(reporter: str, file_name: Optional[str]) -> Optional[Tuple[str, str]]:
    if reporter == "html":
        return ("outputFolder", "playwright-report")
    if not file_name:
        return None
    if reporter == "json" and not file_name.endswith(".json"):
        file_name += ".json"
    elif reporter == "junit" and not file_name.endswith(".xml"):
        file_name += ".xml"
    return ("outputFile", file_name)


def format_reporters(
    reporters: Optional[Sequence[str]],
    report_file_names: Optional[Dict[str, str]] = None,
    indent: str = "  ",
) -> str:
    """Render the multi-reporter block used in the configuration file."""
    names = list(reporters) if reporters else list(DEFAULT_REPORTERS)
    files = dict(DEFAULT_REPORT_FILE_NAMES)
    files.update(report_file_names or {})
    lines = ["["]
    for reporter in names:
        target = _report_target(reporter, files.get(reporter))
        if target is None:
            lines.append(f"{indent}  [{js_str(reporter)}],")
        else:
            option, value = target
            lines.append(f"{indent}  [{js_str(reporter)}, {{ {option}: {js_str(value)} }}],")
    lines.append(f"{indent}]")
    return "\n".join(lines)


def format_projects(browsers: Sequence[str], indent: str = "  ") -> str:
    lines = ["["]
    for name in browsers:
        device, channel = BROWSER_DEVICES[name]
        use = f"...devices[{js_str(device)}]"
        if channel:
            use += f", channel: {js_str(channel)}"
        lines.extend(
            [
                f"{indent}  {{",
                f"{indent}    name: {js_str(name)},",
                f"{indent}    use: {{ {use} }},",
                f"{indent}  }},",
            ]
        )
    lines.append(f"{indent}]")
    return "\n".join(lines)


def _format_thresholds(thresholds: ScreenshotThresholds) -> str:
    parts = []
    if thresholds.max_diff_pixels is not None:
        parts.append(f"maxDiffPixels: {thresholds.max_diff_pixels}")
    if thresholds.max_diff_pixel_ratio is not None:
        parts.append(f"maxDiffPixelRatio: {thresholds.max_diff_pixel_ratio}")
    if thresholds.threshold is not None:
        parts.append(f"threshold: {thresholds.threshold}")
    return "{ " + ", ".join(parts) + " }" if parts else "{}"


def _expect_entries(patch: PlaywrightConfigPatch) -> List[Tuple[str, str]]:
    if patch.expect is None:
        return []
    entries: List[Tuple[str, str]] = []
    if patch.expect.timeout is not None:
        entries.append(("timeout", str(patch.expect.timeout)))
    if patch.expect.to_have_screenshot is not None:
        entries.append(("toHaveScreenshot", _format_thresholds(patch.expect.to_have_screenshot)))
    if patch.expect.to_match_snapshot is not None:
        entries.append(("toMatchSnapshot", _format_thresholds(patch.expect.to_match_snapshot)))
    return entries


def _viewport_literal(patch: PlaywrightConfigPatch) -> Optional[str]:
    if patch.viewport is None:
        return None
    return f"{{ width: {patch.viewport.width}, height: {patch.viewport.height} }}"


def _enabled_browsers(current: Sequence[str], toggles: Dict[Any, bool]) -> List[str]:
    flags = {getattr(k, "value", k): bool(v) for k, v in toggles.items()}
    enabled = [name for name in BROWSER_DEVICES if flags.get(name, name in current)]
    if not enabled:
        raise ConfigPatchError("At least one browser project must remain enabled")
    return enabled


class ConfigPatcher:
    """Targeted edits to a Playwright configuration file, plus template rendering."""

    def read_settings(self, config_text: str) -> Dict[str, Any]:
        """Extract the commonly edited settings from a configuration file."""
        masked = _mask(config_text)
        open_idx = _config_object(masked)
        top = {e.key: e for e in _entries(config_text, masked, open_idx)}
        settings: Dict[str, Any] = {}

        def _raw(entry: _Entry) -> str:
            return config_text[entry.value_start:entry.value_end]

        for attribute, path, key in _SCALAR_FIELDS:
            scope = top
            if path:
                container = top.get(path[0])
                if container is None or masked[container.value_start] != "{":
                    continue
                scope = {e.key: e for e in _entries(config_text, masked, container.value_start)}
            if key in scope:
                settings[attribute] = _coerce_literal(_raw(scope[key]))
        if "reporter" in top:
            settings["reporter"] = _raw(top["reporter"])
        use = top.get("use")
        if use is not None and masked[use.value_start] == "{":
            use_entries = {e.key: e for e in _entries(config_text, masked, use.value_start)}
            viewport = use_entries.get("viewport")
            if viewport is not None and masked[viewport.value_start] == "{":
                sizes = {
                    e.key: _coerce_literal(_raw(e))
                    for e in _entries(config_text, masked, viewport.value_start)
                }
                if isinstance(sizes.get("width"), int) and isinstance(sizes.get("height"), int):
                    settings["viewport"] = {"width": sizes["width"], "height": sizes["height"]}
        if "projects" in top:
            names = set(_PROJECT_NAME_RE.findall(_raw(top["projects"])))
            settings["browsers"] = {name: name in names for name in BROWSER_DEVICES}
        return settings

    def apply_patch(self, config_text: str, patch: PlaywrightConfigPatch) -> str:
        """Apply the non-empty fields of patch to config_text and return the new text."""
        text = config_text
        for attribute, path, key in _SCALAR_FIELDS:
            value = getattr(patch, attribute)
            if value is not None:
                text = _set_value(text, path, key, js_value(value))
        viewport = _viewport_literal(patch)
        if viewport is not None:
            text = _set_value(text, ("use",), "viewport", viewport)
        if patch.reporters is not None or patch.report_file_names is not None:
            reporters = patch.reporters
            if reporters is None:
                current = self.read_settings(text).get("reporter", "")
                reporters = re.findall(r"\[\s*['\"]([\w-]+)['\"]", current) or None
            text = _set_value(
                text,
                (),
                "reporter",
                lambda indent: format_reporters(reporters, patch.report_file_names, indent),
            )
        if patch.browsers:
            current = [
                name for name, enabled in self.read_settings(text).get("browsers", {}).items() if enabled
            ]
            enabled = _enabled_browsers(current, patch.browsers)
            text = _set_value(text, (), "projects", lambda indent: format_projects(enabled, indent))
        for key, literal in _expect_entries(patch):
            text = _set_value(text, ("expect",), key, literal)
        return text

    def render_from_template(self, patch: Optional[PlaywrightConfigPatch] = None) -> str:
        """Render a complete configuration file from the bundled template."""
        patch = patch or PlaywrightConfigPatch()
        use_entries: List[Tuple[str, str]] = []
        for attribute, path, key in _SCALAR_FIELDS:
            value = getattr(patch, attribute)
            if path == ("use",) and value is not None and attribute != "trace":
                use_entries.append((key, js_value(value)))
        viewport = _viewport_literal(patch)
        if viewport is not None:
            use_entries.append(("viewport", viewport))
        use_entries.append(("trace", js_str(patch.trace or "on-first-retry")))
        browsers = list(STANDARD_BROWSERS)
        for name, enabled in (patch.browsers or {}).items():
            name = getattr(name, "value", name)
            if enabled and name not in browsers:
                browsers.append(name)
        expect_entries = _expect_entries(patch)
        expect_block = (
            "{ " + ", ".join(f"{key}: {literal}" for key, literal in expect_entries) + " }"
            if expect_entries
            else None
        )
        template = code_templates.get_template("playwright.config.ts.j2")
        return template.render(
            test_dir=patch.test_dir or TESTS_DIR_NAME,
            output_dir=patch.output_dir or OUTPUT_DIR_NAME,
            fully_parallel=bool(patch.fully_parallel),
            forbid_only=bool(patch.forbid_only),
            retries=patch.retries if patch.retries is not None else "process.env.CI ? 2 : 0",
            workers=patch.workers if patch.workers is not None else 1,
            timeout=patch.timeout,
            reporter_block=format_reporters(patch.reporters, patch.report_file_names),
            expect_block=expect_block,
            use_entries=use_entries,
            projects=[
                {"name": name, "device": BROWSER_DEVICES[name][0], "channel": BROWSER_DEVICES[name][1]}
                for name in browsers
            ],
        )

    def patch_file(self, path: Path, patch: PlaywrightConfigPatch) -> ConfigUpdateResult:
        """Patch a configuration file in place; a missing file is reported, not raised."""
        if not path.is_file():
            LOGGER.warning("Configuration file %s not found; nothing patched", path)
            return ConfigUpdateResult(success=False, message=f"Configuration file {path} not found")
        original = path.read_text(encoding="utf-8")
        try:
            updated = self.apply_patch(original, patch)
        except ConfigPatchError as exc:
            LOGGER.warning("Could not patch %s: %s", path, exc)
            return ConfigUpdateResult(success=False, message=str(exc))
        if updated != original:
            atomic_write_text(path, updated)
        self.update_project_config(path.parent, patch)
        return ConfigUpdateResult(
            success=True,
            message="Updated Playwright configuration successfully",
            content=updated,
        )

    def write_from_template(
        self, path: Path, patch: Optional[PlaywrightConfigPatch] = None
    ) -> ConfigUpdateResult:
        content = self.render_from_template(patch)
        atomic_write_text(path, content)
        if patch is not None:
            self.update_project_config(path.parent, patch)
        LOGGER.info("Rendered configuration file %s from template", path)
        return ConfigUpdateResult(
            success=True,
            message="Created Playwright configuration from template",
            content=content,
        )

    def update_project_config(self, project_root: Path, patch: PlaywrightConfigPatch) -> bool:
        """Mirror a patch into project-config.json when the file exists."""
        target = project_root / PROJECT_CONFIG_FILE_NAME
        if not target.is_file():
            return False
        try:
            payload = json.loads(target.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.error("Could not read %s: %s", target, exc)
            return False
        if not isinstance(payload, dict):
            LOGGER.error("Ignoring %s: expected a JSON object", target)
            return False
        if patch.base_url:
            payload["url"] = patch.base_url
        if patch.browsers:
            active = next(
                (getattr(name, "value", name) for name, enabled in patch.browsers.items() if enabled),
                None,
            )
            if active:
                payload["browser"] = active
        if patch.reporters is not None:
            payload["reporters"] = list(patch.reporters)
        if patch.report_file_names is not None:
            payload["reportFileNames"] = dict(patch.report_file_names)
        atomic_write_text(target, json.dumps(payload, indent=2) + "\n")
        return True


_config_patcher: Optional[ConfigPatcher] = None


def get_config_patcher() -> ConfigPatcher:
    global _config_patcher
    if _config_patcher is None:
        _config_patcher = ConfigPatcher()
    return _config_patcher
