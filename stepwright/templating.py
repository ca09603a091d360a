from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"


def js_str(value: Any) -> str:
    """Render a value as a single-quoted JavaScript string literal."""
    text = "" if value is None else str(value)
    escaped = (
        text.replace("\\", "\\\\")
        .replace("'", "\\'")
        .replace("\r", "\\r")
        .replace("\n", "\\n")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )
    return f"'{escaped}'"


def js_value(value: Any) -> str:
    """Render a Python scalar as a JavaScript literal."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "undefined"
    if isinstance(value, (int, float)):
        return str(value)
    return js_str(value)


def js_comment(value: Any) -> str:
    """Flatten text so it is safe inside a // line comment."""
    text = "" if value is None else str(value)
    return " ".join(text.split())


code_templates = Environment(
    loader=FileSystemLoader(str(TEMPLATES_DIR)),
    autoescape=False,
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
    undefined=StrictUndefined,
)
code_templates.filters["js_str"] = js_str
code_templates.filters["js_value"] = js_value
code_templates.filters["js_comment"] = js_comment
