"""
Prompt templates and the template registry.

Templates are immutable once loaded; the registry only changes through
explicit add/reload calls.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


class PromptCategory(Enum):
    """Kinds of coaching request a template can serve."""
    NUTRITION_ADVICE = "nutrition_advice"
    MEAL_PLANNING = "meal_planning"
    FITNESS_GUIDANCE = "fitness_guidance"
    HEALTH_ANALYSIS = "health_analysis"
    LIFESTYLE_TIPS = "lifestyle_tips"
    SYMPTOM_CHECKER = "symptom_checker"
    MEDICATION_INFO = "medication_info"
    DIET_MODIFICATION = "diet_modification"
    WEIGHT_MANAGEMENT = "weight_management"
    GENERAL_CHAT = "general_chat"


class VariableType(Enum):
    """Value types a template variable may declare."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"


class VariableSource(Enum):
    """Where a variable's value is looked up when the caller omits it."""
    USER_PROFILE = "user_profile"
    HEALTH_DATA = "health_data"
    PREFERENCES = "preferences"
    INPUT = "input"
    CONTEXT = "context"


class TemplateNotFound(Exception):
    """Raised when no template matches a category or id."""
    def __init__(self, message: str, category: Optional[str] = None, template_id: Optional[str] = None):
        super().__init__(message)
        self.category = category
        self.template_id = template_id


@dataclass(frozen=True)
class VariableValidation:
    """Optional constraints applied to caller-supplied values."""
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    options: Optional[Tuple[Any, ...]] = None


@dataclass(frozen=True)
class TemplateVariable:
    """A placeholder declared by a template."""
    name: str
    type: VariableType = VariableType.STRING
    required: bool = False
    source: VariableSource = VariableSource.INPUT
    default_value: Any = None
    validation: Optional[VariableValidation] = None
    description: Optional[str] = None

    @property
    def placeholder(self) -> str:
        return "{{" + self.name + "}}"


@dataclass(frozen=True)
class PromptTemplate:
    """A parameterized prompt plus its declared variables."""
    id: str
    category: PromptCategory
    name: str
    body: str
    variables: Tuple[TemplateVariable, ...] = ()
    description: str = ""
    language: str = "en"
    cost_optimized: bool = False
    metadata: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        """Validate identity fields and variable name uniqueness."""
        if not self.id:
            raise ValueError("template id cannot be empty")
        names = [v.name for v in self.variables]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate variables in template {self.id}: {sorted(duplicates)}")

    @property
    def estimated_tokens(self) -> int:
        return int(self.metadata.get("estimatedTokens", 500))

    @property
    def model(self) -> Optional[str]:
        return self.metadata.get("model")


class TemplateRegistry:
    """Thread-safe store of prompt templates keyed by id.

    Templates added through ``add_template`` are treated as custom and
    survive ``reload``; everything else is re-read from the template
    source on reload.
    """

    def __init__(self, source=None):
        """Initialize the registry.

        Args:
            source: Object with a ``load()`` method returning templates;
                when given, it is read immediately
        """
        self._lock = threading.RLock()
        self._templates: Dict[str, PromptTemplate] = {}
        self._custom_ids = set()
        self._source = source
        if source is not None:
            self._ingest(source.load())

    def _ingest(self, templates: List[PromptTemplate]) -> int:
        loaded = 0
        with self._lock:
            for template in templates:
                if template.id in self._custom_ids:
                    continue
                self._templates[template.id] = template
                loaded += 1
        logger.info("Loaded %d prompt templates", loaded)
        return loaded

    def add_template(self, template: PromptTemplate) -> None:
        """Insert or overwrite a template by id."""
        with self._lock:
            self._templates[template.id] = template
            self._custom_ids.add(template.id)
        logger.info("Added prompt template: %s (%s)", template.id, template.category.value)

    def get_template(self, template_id: str) -> Optional[PromptTemplate]:
        with self._lock:
            return self._templates.get(template_id)

    def get_templates_by_category(self, category: PromptCategory) -> List[PromptTemplate]:
        with self._lock:
            return [t for t in self._templates.values() if t.category == category]

    def all_templates(self) -> List[PromptTemplate]:
        with self._lock:
            return list(self._templates.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._templates)

    def select_template(
        self,
        category: PromptCategory,
        template_id: Optional[str] = None,
        language: Optional[str] = None,
    ) -> Optional[PromptTemplate]:
        """Pick the template that best serves a request.

        Resolution order:
        1. The explicitly requested id, if registered
        2. Templates matching category and language, preferring
           cost-optimized ones, else the first match
        3. Any template in the category, ignoring language
        4. None when the category has no templates

        Category is never sacrificed; language and cost optimization are
        best-effort.
        """
        with self._lock:
            if template_id and template_id in self._templates:
                return self._templates[template_id]

            in_category = [t for t in self._templates.values() if t.category == category]
            candidates = [t for t in in_category if not language or t.language == language]

            if not candidates:
                return in_category[0] if in_category else None

            for template in candidates:
                if template.cost_optimized:
                    return template
            return candidates[0]

    def reload(self) -> int:
        """Drop source-loaded templates and re-read the source.

        Returns:
            Number of templates loaded from the source
        """
        with self._lock:
            for template_id in list(self._templates):
                if template_id not in self._custom_ids:
                    del self._templates[template_id]
            if self._source is None:
                return 0
            if hasattr(self._source, "reload"):
                templates = self._source.reload()
            else:
                templates = self._source.load()
            loaded = self._ingest(templates)
        logger.info("Templates reloaded successfully")
        return loaded

    def statistics(self) -> Dict[str, Any]:
        """Counts by category and language, plus cost-optimized total."""
        with self._lock:
            templates = list(self._templates.values())
            custom = len(self._custom_ids)
        by_category: Dict[str, int] = {}
        by_language: Dict[str, int] = {}
        for t in templates:
            by_category[t.category.value] = by_category.get(t.category.value, 0) + 1
            by_language[t.language] = by_language.get(t.language, 0) + 1
        return {
            "total": len(templates),
            "by_category": by_category,
            "by_language": by_language,
            "cost_optimized": sum(1 for t in templates if t.cost_optimized),
            "custom": custom,
        }
