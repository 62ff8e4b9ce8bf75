"""
Template variable resolution.

Resolves each variable a template declares from, in order: caller input,
the variable's data source, its default, a curated fallback, or nothing.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol

from .templates import PromptTemplate, TemplateVariable, VariableSource, VariableType


class ResolutionStep(Enum):
    """Which step of the resolution chain produced a value."""
    INPUT = "input"
    SOURCE = "source"
    DEFAULT = "default"
    FALLBACK = "fallback"
    ABSENT = "absent"


GENERIC_PLACEHOLDER = "[not specified]"

SAFE_FALLBACKS = {
    "user_name": "user",
    "userName": "user",
    "user_age": "adult",
    "userAge": "adult",
    "user_gender": "person",
    "userGender": "person",
    "health_conditions": "none reported",
    "healthConditions": "none reported",
    "dietary_restrictions": "none specified",
    "dietaryRestrictions": "none specified",
    "user_goals": "general wellness",
    "userGoals": "general wellness",
}

PROFILE_ALIASES = {
    "user_name": "name",
    "userName": "name",
    "user_age": "age",
    "userAge": "age",
    "user_gender": "gender",
    "userGender": "gender",
    "user_height": "height",
    "userHeight": "height",
    "user_weight": "weight",
    "userWeight": "weight",
    "user_location": "location",
    "userLocation": "location",
    "user_lifestyle": "lifestyle",
    "userLifestyle": "lifestyle",
}

HEALTH_ALIASES = {
    "health_conditions": "conditions",
    "healthConditions": "conditions",
    "user_medications": "medications",
    "userMedications": "medications",
    "user_allergies": "allergies",
    "userAllergies": "allergies",
    "health_reports": "reports",
    "healthReports": "reports",
    "user_vitals": "vitals",
    "userVitals": "vitals",
}

PREFERENCE_ALIASES = {
    "diet_type": "diet_type",
    "dietType": "diet_type",
    "user_cuisines": "cuisines",
    "userCuisines": "cuisines",
    "dietary_restrictions": "restrictions",
    "dietaryRestrictions": "restrictions",
    "user_goals": "goals",
    "userGoals": "goals",
    "preferred_languages": "languages",
    "preferredLanguages": "languages",
}

# Phrase used when a source holds an empty list
EMPTY_LIST_PHRASES = {
    VariableSource.USER_PROFILE: "none",
    VariableSource.HEALTH_DATA: "none reported",
    VariableSource.PREFERENCES: "not specified",
}


@dataclass
class UserContext:
    """Snapshot of one user's data, fetched once per execution."""
    user_id: str
    profile: Dict[str, Any] = field(default_factory=dict)
    health_data: Dict[str, Any] = field(default_factory=dict)
    preferences: Dict[str, Any] = field(default_factory=dict)
    history: Dict[str, Any] = field(default_factory=dict)


class UserDataProvider(Protocol):
    """Supplies user data to the resolver. Must be side-effect free."""

    def get_user_context(self, user_id: str) -> UserContext:
        ...


class StaticUserDataProvider:
    """In-memory provider returning preloaded contexts, empty ones otherwise."""

    def __init__(self, contexts: Optional[Mapping[str, UserContext]] = None):
        self._contexts = dict(contexts or {})

    def set_context(self, context: UserContext) -> None:
        self._contexts[context.user_id] = context

    def get_user_context(self, user_id: str) -> UserContext:
        return self._contexts.get(user_id) or UserContext(user_id=user_id)


@dataclass(frozen=True)
class ResolvedValue:
    """Final value of one variable and the step that produced it."""
    name: str
    value: Optional[str]
    step: ResolutionStep

    @property
    def present(self) -> bool:
        return self.step != ResolutionStep.ABSENT


def format_value(value: Any) -> str:
    """Render a resolved value as prompt text."""
    if isinstance(value, bool):
        return "yes" if value else "no"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ", ".join(format_value(v) for v in value)
    return str(value)


def validate_value(value: Any, variable: TemplateVariable) -> Any:
    """Apply a variable's validation rules to a caller-supplied value.

    Never raises: out-of-range numbers are clamped, long strings are
    truncated, and anything that cannot be repaired is replaced by the
    variable's default (which may be None).
    """
    rules = variable.validation
    if rules is None:
        return value

    if variable.type == VariableType.NUMBER:
        try:
            value = float(value)
        except (TypeError, ValueError):
            return variable.default_value
        if rules.min is not None and value < rules.min:
            value = float(rules.min)
        if rules.max is not None and value > rules.max:
            value = float(rules.max)
        if value.is_integer():
            value = int(value)
    elif variable.type == VariableType.STRING:
        value = str(value)
        if rules.pattern:
            try:
                matched = re.search(rules.pattern, value) is not None
            except re.error:
                matched = False
            if not matched:
                return variable.default_value
        if rules.min is not None and len(value) < rules.min:
            return variable.default_value
        if rules.max is not None and len(value) > rules.max:
            value = value[:int(rules.max)]

    if rules.options is not None and value not in rules.options:
        return variable.default_value

    return value


def _lookup(section: Mapping[str, Any], aliases: Mapping[str, str], name: str) -> Any:
    return section.get(aliases.get(name, name))


def _from_context(name: str, context: UserContext, now: datetime) -> Any:
    interactions = context.history.get("interactions", 0) or 0
    values = {
        "current_date": now.date().isoformat(),
        "currentDate": now.date().isoformat(),
        "current_time": now.strftime("%H:%M"),
        "currentTime": now.strftime("%H:%M"),
        "user_id": context.user_id,
        "userId": context.user_id,
        "interaction_count": interactions,
        "interactionCount": interactions,
    }
    return values.get(name)


_SOURCE_SECTIONS = {
    VariableSource.USER_PROFILE: (lambda c: c.profile, PROFILE_ALIASES),
    VariableSource.HEALTH_DATA: (lambda c: c.health_data, HEALTH_ALIASES),
    VariableSource.PREFERENCES: (lambda c: c.preferences, PREFERENCE_ALIASES),
}


def lookup_source(variable: TemplateVariable, context: UserContext, now: Optional[datetime] = None) -> Any:
    """Look a variable up in the section of the context its source names.

    Lists are joined into a comma-separated phrase; an empty list becomes
    the source's "nothing here" phrase, never an empty string.
    """
    if variable.source == VariableSource.CONTEXT:
        return _from_context(variable.name, context, now or datetime.now())
    if variable.source not in _SOURCE_SECTIONS:
        return None

    get_section, aliases = _SOURCE_SECTIONS[variable.source]
    value = _lookup(get_section(context) or {}, aliases, variable.name)
    if isinstance(value, (list, tuple)):
        if not value:
            return EMPTY_LIST_PHRASES[variable.source]
        return ", ".join(format_value(v) for v in value)
    return value


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def resolve_variable(
    variable: TemplateVariable,
    context: UserContext,
    user_input: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> ResolvedValue:
    """Resolve one variable through the fallback chain.

    1. Caller input, after validation
    2. The variable's data source
    3. The declared default
    4. For required variables, a curated fallback or a generic placeholder
    5. Otherwise absent
    """
    name = variable.name
    rejected = False

    if not _is_missing(user_input.get(name)):
        value = validate_value(user_input[name], variable)
        if not _is_missing(value):
            return ResolvedValue(name, format_value(value), ResolutionStep.INPUT)
        rejected = True

    if not rejected and variable.source != VariableSource.INPUT:
        value = lookup_source(variable, context, now)
        if not _is_missing(value):
            return ResolvedValue(name, format_value(value), ResolutionStep.SOURCE)

    if not _is_missing(variable.default_value):
        return ResolvedValue(name, format_value(variable.default_value), ResolutionStep.DEFAULT)

    if variable.required:
        return ResolvedValue(name, SAFE_FALLBACKS.get(name, GENERIC_PLACEHOLDER), ResolutionStep.FALLBACK)

    return ResolvedValue(name, None, ResolutionStep.ABSENT)


def resolve_variables(
    template: PromptTemplate,
    context: UserContext,
    user_input: Mapping[str, Any],
    now: Optional[datetime] = None,
) -> Dict[str, ResolvedValue]:
    """Resolve every variable of a template, preserving declaration order."""
    now = now or datetime.now()
    return {v.name: resolve_variable(v, context, user_input, now) for v in template.variables}


def count_resolved(resolved: Mapping[str, ResolvedValue]) -> int:
    """Number of variables that ended up with a value."""
    return sum(1 for r in resolved.values() if r.present)


def missing_required(template: PromptTemplate, user_input: Mapping[str, Any]) -> List[str]:
    """Names of required variables the caller did not supply."""
    return [v.name for v in template.variables if v.required and _is_missing(user_input.get(v.name))]
