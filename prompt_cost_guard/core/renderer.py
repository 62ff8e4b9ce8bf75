"""
Prompt rendering.

Substitutes resolved values into template text.
"""

import re
from typing import List, Mapping

from .resolver import ResolvedValue
from .templates import PromptTemplate

_WHITESPACE = re.compile(r"\s+")
_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")


def render_prompt(template: PromptTemplate, resolved: Mapping[str, ResolvedValue]) -> str:
    """Render a template with resolved variable values.

    Every ``{{name}}`` occurrence of a declared variable is replaced in a
    single pass (case-sensitive); absent optional variables become the
    empty string. Substituted values are never re-scanned, and
    placeholder-shaped text inside a value is dropped, so the output
    holds no declared placeholder. Whitespace runs are then collapsed and
    the result trimmed.

    Args:
        template: Template to render
        resolved: Resolved values keyed by variable name

    Returns:
        Rendered prompt text
    """
    declared = {v.name for v in template.variables}
    if not declared:
        return _WHITESPACE.sub(" ", template.body).strip()

    pattern = re.compile(
        r"\{\{\s*(" + "|".join(re.escape(name) for name in sorted(declared, key=len, reverse=True)) + r")\s*\}\}"
    )

    def _substitute(match) -> str:
        result = resolved.get(match.group(1))
        if result is None or not result.present:
            return ""
        return _PLACEHOLDER.sub(
            lambda m: "" if m.group(1) in declared else m.group(0), result.value
        )

    return _WHITESPACE.sub(" ", pattern.sub(_substitute, template.body)).strip()


def find_unresolved_placeholders(text: str, template: PromptTemplate) -> List[str]:
    """Names of the template's declared variables still present as placeholders."""
    declared = {v.name for v in template.variables}
    return [name for name in _PLACEHOLDER.findall(text) if name in declared]
