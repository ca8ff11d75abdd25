from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Mapping

_VARIABLE_RE = re.compile(r"{{(\w+)}}")


@dataclass(frozen=True)
class TemplateValidation:
    is_valid: bool
    missing_variables: list[str] = field(default_factory=list)


def extract_variables(content: str) -> list[str]:
    """Return distinct ``{{name}}`` placeholders in first-seen order."""
    found: list[str] = []
    for name in _VARIABLE_RE.findall(content or ""):
        if name not in found:
            found.append(name)
    return found


def validate_variables(content: str, variables: Mapping[str, str] | None) -> TemplateValidation:
    provided = set((variables or {}).keys())
    missing = [v for v in extract_variables(content) if v not in provided]
    return TemplateValidation(is_valid=not missing, missing_variables=missing)


def render_template(content: str, variables: Mapping[str, str] | None) -> str:
    """Substitute provided variables; placeholder names match case-insensitively."""
    rendered = content or ""
    for key, value in (variables or {}).items():
        rendered = re.sub(r"{{" + re.escape(key) + r"}}", lambda _m: str(value), rendered, flags=re.IGNORECASE)
    return rendered
