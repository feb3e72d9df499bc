"""Tests for prompt template rendering."""

from datetime import date
from enum import Enum

import pytest
from pydantic import BaseModel

from warded import TemplateError
from warded.template import DefaultTemplateRenderer, TemplateRenderer, format_value, template_variables


class Tone(Enum):
    FORMAL = "formal"


class Order(BaseModel):
    id: int


class TestTemplateVariables:
    """Tests for placeholder discovery."""

    def test_finds_names(self):
        assert template_variables("Translate {{text}} into {{ language }}") == {"text", "language"}

    def test_ignores_single_braces(self):
        assert template_variables("{json} and {{it}}") == {"it"}


class TestFormatValue:
    """Tests for value formatting."""

    def test_plain_values(self):
        assert format_value("x") == "x"
        assert format_value(3) == "3"

    def test_enum_uses_value(self):
        assert format_value(Tone.FORMAL) == "formal"

    def test_model_dumps_json(self):
        assert format_value(Order(id=7)) == '{"id":7}'

    def test_sequences_one_per_line(self):
        assert format_value(["a", Tone.FORMAL, 1]) == "a\nformal\n1"


class TestDefaultTemplateRenderer:
    """Tests for DefaultTemplateRenderer."""

    def test_render(self):
        renderer = DefaultTemplateRenderer()
        assert renderer.render("Hi {{name}}, {{ name }}!", {"name": "Ada"}) == "Hi Ada, Ada!"

    def test_missing_variable(self):
        with pytest.raises(TemplateError, match="'language' is missing") as exc_info:
            DefaultTemplateRenderer().render("{{text}} in {{language}}", {"text": "x"})
        assert exc_info.value.variable == "language"

    def test_builtin_date(self):
        rendered = DefaultTemplateRenderer().render("Today is {{current_date}}", {})
        assert rendered == f"Today is {date.today().isoformat()}"

    def test_bound_value_shadows_builtin(self):
        assert DefaultTemplateRenderer().render("{{current_date}}", {"current_date": "then"}) == "then"

    def test_is_a_renderer(self):
        assert isinstance(DefaultTemplateRenderer(), TemplateRenderer)
