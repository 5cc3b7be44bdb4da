"""Outreach template rendering - personalization variables over jinja2."""

import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

from jinja2 import TemplateSyntaxError, Undefined
from jinja2.exceptions import SecurityError, UndefinedError
from jinja2.sandbox import SandboxedEnvironment

from .errors import TemplateError
from .models import VariableContext


_TAG_RE = re.compile(r"<[^>]+>")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")


class KeepPlaceholder(Undefined):
    """Renders an unknown or empty variable as its literal ``{{name}}`` placeholder."""

    def __str__(self) -> str:
        return "{{" + (self._undefined_name or "") + "}}"


_text_env = SandboxedEnvironment(undefined=KeepPlaceholder, autoescape=False, keep_trailing_newline=True)
_html_env = SandboxedEnvironment(undefined=KeepPlaceholder, autoescape=True, keep_trailing_newline=True)


@dataclass
class RenderedEmail:
    subject: str
    body_html: str
    body_text: str


def build_variables(context: VariableContext) -> Dict[str, str]:
    """Map personalization variable names to values, dropping empty ones."""
    person = context.person or {}
    org = context.organization or {}
    sender = context.sender or {}

    full_name = " ".join(p for p in (person.get("first_name"), person.get("last_name")) if p)
    values = {
        "first_name": person.get("first_name"),
        "last_name": person.get("last_name"),
        "full_name": full_name,
        "email": person.get("email"),
        "job_title": person.get("job_title"),
        "phone": person.get("phone") or person.get("mobile_phone"),
        "linkedin": person.get("linkedin_url"),
        "company_name": org.get("name"),
        "company_domain": org.get("domain"),
        "company_industry": org.get("industry"),
        "company_website": org.get("website"),
        "sender_name": sender.get("full_name"),
        "sender_email": sender.get("email"),
    }
    return {k: str(v) for k, v in values.items() if v not in (None, "")}


def valid_recipient(address: Any) -> Optional[str]:
    """Return the trimmed address, or None if it is missing or carries control characters."""
    if not isinstance(address, str):
        return None
    address = address.strip()
    if not address or _CONTROL_RE.search(address) or "@" not in address:
        return None
    return address


def render_text(template: Optional[str], variables: Dict[str, Any]) -> str:
    return _render(_text_env, template, variables)


def render_html(template: Optional[str], variables: Dict[str, Any]) -> str:
    return _render(_html_env, template, variables)


def render_email(
    subject: str,
    body_html: str,
    body_text: Optional[str],
    variables: Dict[str, Any],
) -> RenderedEmail:
    """Render subject and bodies; the text body falls back to the HTML with tags stripped."""
    if body_text:
        text = render_text(body_text, variables)
    else:
        text = _TAG_RE.sub("", render_text(body_html, variables))
    return RenderedEmail(
        subject=render_text(subject, variables),
        body_html=render_html(body_html, variables),
        body_text=text,
    )


def render_config(value: Any, variables: Dict[str, Any]) -> Any:
    """Render every string inside a nested config payload."""
    if isinstance(value, str):
        return render_text(value, variables)
    if isinstance(value, dict):
        return {k: render_config(v, variables) for k, v in value.items()}
    if isinstance(value, list):
        return [render_config(v, variables) for v in value]
    return value


def _render(env: SandboxedEnvironment, template: Optional[str], variables: Dict[str, Any]) -> str:
    if not template:
        return ""
    try:
        return env.from_string(template).render(**variables)
    except TemplateSyntaxError as e:
        raise TemplateError(f"Template syntax error on line {e.lineno}: {e.message}") from e
    except (SecurityError, UndefinedError) as e:
        raise TemplateError(f"Template rendering failed: {e}") from e
