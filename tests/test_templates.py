"""
Unit tests for the template registry and template source.
"""

import json
import os
import tempfile

import pytest
import yaml

from prompt_cost_guard.core.template_source import (
    InMemoryTemplateSource,
    TemplateSource,
    TemplateValidationError,
    parse_template,
)
from prompt_cost_guard.core.templates import (
    PromptCategory,
    PromptTemplate,
    TemplateRegistry,
    TemplateVariable,
    VariableSource,
    VariableType,
)


def make_template(template_id, category=PromptCategory.GENERAL_CHAT, language="en", cost_optimized=False):
    return PromptTemplate(
        id=template_id,
        category=category,
        name=template_id,
        body="Hello {{user_name}}",
        variables=(TemplateVariable(name="user_name"),),
        language=language,
        cost_optimized=cost_optimized,
    )


class TestPromptTemplate:
    """Test template construction rules."""

    def test_duplicate_variable_names_rejected(self):
        """Test a template may not declare a variable twice."""
        with pytest.raises(ValueError, match="Duplicate variables"):
            PromptTemplate(
                id="t",
                category=PromptCategory.GENERAL_CHAT,
                name="t",
                body="{{a}}",
                variables=(TemplateVariable(name="a"), TemplateVariable(name="a")),
            )

    def test_empty_id_rejected(self):
        """Test a template needs an id."""
        with pytest.raises(ValueError, match="template id cannot be empty"):
            make_template("")

    def test_metadata_helpers(self):
        """Test estimated tokens and model come from metadata."""
        template = PromptTemplate(
            id="t",
            category=PromptCategory.HEALTH_ANALYSIS,
            name="t",
            body="",
            metadata={"estimatedTokens": 800, "model": "gpt-4"},
        )
        assert template.estimated_tokens == 800
        assert template.model == "gpt-4"
        assert make_template("u").estimated_tokens == 500
        assert make_template("u").model is None


class TestTemplateSelection:
    """Test select_template resolution order."""

    def setup_method(self):
        self.registry = TemplateRegistry()
        self.registry.add_template(make_template("chat_en", language="en"))
        self.registry.add_template(make_template("chat_en_cheap", language="en", cost_optimized=True))
        self.registry.add_template(make_template("chat_hi", language="hinglish"))
        self.registry.add_template(make_template("meal", category=PromptCategory.MEAL_PLANNING))

    def test_explicit_id_wins(self):
        """Test a registered explicit id is returned regardless of language."""
        selected = self.registry.select_template(PromptCategory.GENERAL_CHAT, template_id="chat_hi", language="en")
        assert selected.id == "chat_hi"

    def test_prefers_cost_optimized(self):
        """Test cost-optimized templates are preferred among matches."""
        assert self.registry.select_template(PromptCategory.GENERAL_CHAT, language="en").id == "chat_en_cheap"

    def test_language_match(self):
        """Test language filters candidates."""
        assert self.registry.select_template(PromptCategory.GENERAL_CHAT, language="hinglish").id == "chat_hi"

    def test_unknown_language_falls_back_to_category(self):
        """Test category is kept when no template has the language."""
        selected = self.registry.select_template(PromptCategory.MEAL_PLANNING, language="fr")
        assert selected.id == "meal"

    def test_unknown_id_falls_back_to_category(self):
        """Test a missing explicit id falls back to category selection."""
        selected = self.registry.select_template(PromptCategory.MEAL_PLANNING, template_id="missing")
        assert selected.id == "meal"

    def test_empty_category(self):
        """Test None when the category has no templates."""
        assert self.registry.select_template(PromptCategory.MEDICATION_INFO) is None


class TestTemplateRegistry:
    """Test registry mutation, reload and statistics."""

    def test_add_overwrites_by_id(self):
        """Test adding a template with an existing id replaces it."""
        registry = TemplateRegistry()
        registry.add_template(make_template("a"))
        registry.add_template(make_template("a", language="hinglish"))
        assert len(registry) == 1
        assert registry.get_template("a").language == "hinglish"

    def test_reload_keeps_custom_templates(self):
        """Test custom templates survive reload while source templates are re-read."""
        registry = TemplateRegistry(InMemoryTemplateSource([make_template("from_source")]))
        registry.add_template(make_template("custom"))

        loaded = registry.reload()

        assert loaded == 1
        assert registry.get_template("custom") is not None
        assert registry.get_template("from_source") is not None

    def test_custom_template_shadows_source(self):
        """Test a custom template with a source id is not replaced on reload."""
        registry = TemplateRegistry(InMemoryTemplateSource([make_template("shared")]))
        registry.add_template(make_template("shared", language="hinglish"))

        registry.reload()

        assert registry.get_template("shared").language == "hinglish"

    def test_statistics(self):
        """Test counts by category, language and cost optimization."""
        registry = TemplateRegistry()
        registry.add_template(make_template("a", cost_optimized=True))
        registry.add_template(make_template("b", language="hinglish"))
        registry.add_template(make_template("c", category=PromptCategory.MEAL_PLANNING))

        stats = registry.statistics()

        assert stats["total"] == 3
        assert stats["by_category"] == {"general_chat": 2, "meal_planning": 1}
        assert stats["by_language"] == {"en": 2, "hinglish": 1}
        assert stats["cost_optimized"] == 1
        assert stats["custom"] == 3


class TestTemplateSource:
    """Test loading template definitions from files."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _definition(self, template_id="custom_tip"):
        return {
            "id": template_id,
            "category": "lifestyle_tips",
            "name": "Custom tip",
            "template": "Tip for {{user_name}}",
            "costOptimized": True,
            "variables": [{"name": "user_name", "source": "user_profile", "defaultValue": "friend"}],
        }

    def test_default_templates_load(self):
        """Test the packaged defaults are all valid."""
        templates = {t.id: t for t in TemplateSource().load()}

        assert "nutrition_advice_basic" in templates
        assert "general_chat_basic" in templates
        assert templates["nutrition_advice_hinglish"].language == "hinglish"
        assert templates["health_analysis_basic"].cost_optimized is False
        assert len(templates) == 8

    def test_directory_yaml_and_json(self):
        """Test YAML and JSON files in a directory are loaded with the defaults."""
        with open(os.path.join(self.temp_dir, "a.yaml"), "w", encoding="utf-8") as f:
            yaml.dump(self._definition("yaml_tip"), f)
        with open(os.path.join(self.temp_dir, "b.json"), "w", encoding="utf-8") as f:
            json.dump({"templates": [self._definition("json_tip")]}, f)

        templates = {t.id: t for t in TemplateSource(self.temp_dir).load()}

        assert "yaml_tip" in templates
        assert "json_tip" in templates
        assert "nutrition_advice_basic" in templates
        assert templates["yaml_tip"].cost_optimized is True
        assert templates["yaml_tip"].variables[0].default_value == "friend"

    def test_invalid_file_skipped(self):
        """Test a bad file is skipped and the rest still loads."""
        with open(os.path.join(self.temp_dir, "bad.yaml"), "w", encoding="utf-8") as f:
            f.write("templates: [unclosed")
        with open(os.path.join(self.temp_dir, "good.yaml"), "w", encoding="utf-8") as f:
            yaml.dump(self._definition(), f)

        templates = TemplateSource(self.temp_dir, include_defaults=False).load()

        assert [t.id for t in templates] == ["custom_tip"]

    def test_missing_directory(self):
        """Test a missing directory yields only the defaults."""
        source = TemplateSource(os.path.join(self.temp_dir, "nope"))
        assert len(source.load()) == 8


class TestParseTemplate:
    """Test structural validation of raw definitions."""

    def test_missing_fields(self):
        """Test required fields are enforced."""
        with pytest.raises(TemplateValidationError, match="missing required fields"):
            parse_template({"id": "x", "category": "general_chat"})

    def test_unknown_category(self):
        """Test categories must be known."""
        with pytest.raises(TemplateValidationError, match="Unknown category"):
            parse_template({"id": "x", "category": "astrology", "name": "x", "template": "", "variables": []})

    def test_variable_fields(self):
        """Test variable type, source and validation are parsed."""
        template = parse_template({
            "id": "x",
            "category": "fitness_guidance",
            "name": "x",
            "body": "{{level}}",
            "variables": [{
                "name": "level",
                "type": "string",
                "source": "input",
                "required": True,
                "validation": {"options": ["beginner", "advanced"]},
            }],
        })

        variable = template.variables[0]
        assert template.body == "{{level}}"
        assert variable.type == VariableType.STRING
        assert variable.source == VariableSource.INPUT
        assert variable.required is True
        assert variable.validation.options == ("beginner", "advanced")

    def test_bad_variable_source(self):
        """Test unknown variable sources are rejected."""
        with pytest.raises(TemplateValidationError):
            parse_template({
                "id": "x",
                "category": "general_chat",
                "name": "x",
                "template": "",
                "variables": [{"name": "v", "source": "database"}],
            })
