"""Tests for crmflow.templates

Tests cover:
- build_variables: person/organization/sender mapping, empty values dropped
- render_email: substitution, unknown placeholders kept, HTML escaping, text fallback
- render_config: nested payloads
- valid_recipient
- Template errors surface as TemplateError
"""

import pytest

from crmflow.errors import TemplateError
from crmflow.models import VariableContext
from crmflow.templates import build_variables, render_config, render_email, valid_recipient


def _make_context(**person):
    return VariableContext(
        person={"first_name": "Ada", "last_name": "Lovelace", "email": "ada@example.com", **person},
        organization={"name": "Analytical Engines", "domain": "engines.io"},
        sender={"full_name": "Sam Seller", "email": "sam@crm.io"},
    )


class TestBuildVariables:

    def test_maps_all_sources(self):
        variables = build_variables(_make_context())
        assert variables["first_name"] == "Ada"
        assert variables["full_name"] == "Ada Lovelace"
        assert variables["company_name"] == "Analytical Engines"
        assert variables["company_domain"] == "engines.io"
        assert variables["sender_name"] == "Sam Seller"

    def test_empty_values_dropped(self):
        variables = build_variables(_make_context(job_title="", phone=None))
        assert "job_title" not in variables
        assert "phone" not in variables

    def test_phone_falls_back_to_mobile(self):
        variables = build_variables(_make_context(mobile_phone="+1555"))
        assert variables["phone"] == "+1555"


class TestRenderEmail:

    def test_substitutes_variables(self):
        rendered = render_email(
            "Hi {{first_name}}", "<p>About {{company_name}}</p>", None,
            build_variables(_make_context()),
        )
        assert rendered.subject == "Hi Ada"
        assert rendered.body_html == "<p>About Analytical Engines</p>"
        assert rendered.body_text == "About Analytical Engines"

    def test_unknown_variable_kept_literally(self):
        rendered = render_email("Hi {{nickname}}", "", None, {})
        assert rendered.subject == "Hi {{nickname}}"

    def test_html_body_escapes_values(self):
        variables = build_variables(_make_context(first_name="<b>Ada</b>"))
        rendered = render_email("Hi {{first_name}}", "<p>{{first_name}}</p>", None, variables)
        assert rendered.subject == "Hi <b>Ada</b>"
        assert "&lt;b&gt;" in rendered.body_html

    def test_explicit_text_body_used(self):
        rendered = render_email("s", "<p>html</p>", "plain {{first_name}}", {"first_name": "Ada"})
        assert rendered.body_text == "plain Ada"

    def test_syntax_error_raises_template_error(self):
        with pytest.raises(TemplateError, match="syntax"):
            render_email("Hi {{ first_name", "", None, {})

    def test_sandbox_blocks_attribute_escape(self):
        with pytest.raises(TemplateError):
            render_email("{{ ''.__class__() }}", "", None, {})


class TestRenderConfig:

    def test_nested(self):
        rendered = render_config(
            {"title": "Call {{first_name}}", "steps": ["{{company_name}}", 3], "n": 1},
            {"first_name": "Ada", "company_name": "AE"},
        )
        assert rendered == {"title": "Call Ada", "steps": ["AE", 3], "n": 1}


class TestValidRecipient:

    @pytest.mark.parametrize("address", [None, "", "   ", "no-at-sign", "a@b.io\r\nBcc: x@y.io", 42])
    def test_rejects(self, address):
        assert valid_recipient(address) is None

    def test_trims(self):
        assert valid_recipient("  ada@example.com ") == "ada@example.com"
