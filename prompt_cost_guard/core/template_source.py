"""
Template source loading.

Reads template definitions from the packaged defaults and an optional
directory of YAML or JSON files.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .templates import (
    PromptCategory,
    PromptTemplate,
    TemplateVariable,
    VariableSource,
    VariableType,
    VariableValidation,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_FILE = Path(__file__).resolve().parent.parent / "templates" / "default_templates.yaml"

TEMPLATE_SUFFIXES = (".yaml", ".yml", ".json")


class TemplateValidationError(ValueError):
    """Raised when a template definition is structurally invalid."""


def parse_template(data: Dict[str, Any]) -> PromptTemplate:
    """Build a PromptTemplate from a raw definition.

    Accepts both snake_case and camelCase keys (``cost_optimized`` /
    ``costOptimized``, ``default_value`` / ``defaultValue``) and either
    ``template`` or ``body`` for the prompt text.

    Args:
        data: Raw template mapping

    Returns:
        Validated PromptTemplate

    Raises:
        TemplateValidationError: If required fields are missing or invalid
    """
    if not isinstance(data, dict):
        raise TemplateValidationError("Template definition must be a dictionary")

    body = data.get("template", data.get("body"))
    missing = [f for f in ("id", "category", "name", "variables") if f not in data]
    if body is None:
        missing.append("template")
    if missing:
        raise TemplateValidationError(f"Template is missing required fields: {missing}")

    try:
        category = PromptCategory(data["category"])
    except ValueError:
        valid = [c.value for c in PromptCategory]
        raise TemplateValidationError(f"Unknown category '{data['category']}', must be one of: {valid}")

    raw_variables = data["variables"]
    if not isinstance(raw_variables, list):
        raise TemplateValidationError(f"'variables' in template {data['id']} must be a list")

    variables = tuple(_parse_variable(v, data["id"]) for v in raw_variables)

    try:
        return PromptTemplate(
            id=str(data["id"]),
            category=category,
            name=str(data["name"]),
            body=str(body),
            variables=variables,
            description=str(data.get("description", "")),
            language=str(data.get("language", "en")),
            cost_optimized=bool(data.get("cost_optimized", data.get("costOptimized", False))),
            metadata=dict(data.get("metadata") or {}),
        )
    except ValueError as e:
        raise TemplateValidationError(str(e))


def _parse_variable(data: Any, template_id: str) -> TemplateVariable:
    if not isinstance(data, dict) or "name" not in data:
        raise TemplateValidationError(f"Variable in template {template_id} must be a dictionary with a name")

    try:
        var_type = VariableType(data.get("type", "string"))
        source = VariableSource(data.get("source", "input"))
    except ValueError as e:
        raise TemplateValidationError(f"Variable '{data['name']}' in template {template_id}: {e}")

    validation = None
    raw_validation = data.get("validation")
    if raw_validation:
        options = raw_validation.get("options")
        validation = VariableValidation(
            min=raw_validation.get("min"),
            max=raw_validation.get("max"),
            pattern=raw_validation.get("pattern"),
            options=tuple(options) if options is not None else None,
        )

    return TemplateVariable(
        name=str(data["name"]),
        type=var_type,
        required=bool(data.get("required", False)),
        source=source,
        default_value=data.get("default_value", data.get("defaultValue")),
        validation=validation,
        description=data.get("description"),
    )


def _read_definitions(path: Path) -> Iterable[Dict[str, Any]]:
    """Yield raw template mappings from one file (a single template or a list)."""
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)
    if raw is None:
        return []
    if isinstance(raw, dict) and "templates" in raw:
        raw = raw["templates"]
    if isinstance(raw, dict):
        return [raw]
    if isinstance(raw, list):
        return raw
    raise TemplateValidationError(f"Unsupported template file layout in {path}")


class TemplateSource:
    """Reloadable collection of template definitions.

    Invalid files or definitions are logged and skipped so one bad file
    never prevents the rest of the catalogue from loading.
    """

    def __init__(self, directory: Optional[str] = None, include_defaults: bool = True):
        self.directory = Path(directory) if directory else None
        self.include_defaults = include_defaults

    def _files(self) -> List[Path]:
        files = []
        if self.include_defaults:
            files.append(DEFAULT_TEMPLATES_FILE)
        if self.directory is not None:
            if not self.directory.is_dir():
                logger.warning("Template directory not found: %s", self.directory)
            else:
                files.extend(
                    sorted(p for p in self.directory.iterdir() if p.suffix in TEMPLATE_SUFFIXES)
                )
        return files

    def load(self) -> List[PromptTemplate]:
        templates = []
        for path in self._files():
            try:
                definitions = _read_definitions(path)
            except (OSError, yaml.YAMLError, TemplateValidationError) as e:
                logger.error("Failed to load templates from %s: %s", path, e)
                continue
            for definition in definitions:
                try:
                    templates.append(parse_template(definition))
                except TemplateValidationError as e:
                    logger.warning("Invalid template structure in %s: %s", path.name, e)
        logger.info("Read %d template definitions", len(templates))
        return templates

    def reload(self) -> List[PromptTemplate]:
        return self.load()


class InMemoryTemplateSource:
    """Template source backed by a fixed list, mostly for tests and embedding."""

    def __init__(self, templates: Iterable[PromptTemplate]):
        self._templates = list(templates)

    def load(self) -> List[PromptTemplate]:
        return list(self._templates)
