"""Email template rendering and value formatting.

Templates are stored in the email_templates table and use two constructs:
- {{name}} is replaced with the variable's value (unknown names stay as-is)
- {{#flag}}...{{/flag}} is kept only when the variable is truthy
"""

import os
import re
from datetime import date, datetime
from decimal import Decimal
from typing import Mapping, Union

TemplateValue = Union[str, int, float, Decimal, bool]

_CONDITIONAL_PATTERN = re.compile(r"\{\{#(\w+)\}\}(.*?)\{\{/\1\}\}", re.DOTALL)
_VARIABLE_PATTERN = re.compile(r"\{\{(\w+)\}\}")

DEFAULT_PUBLIC_BASE_URL = "http://localhost:3000"


def render_template(template: str, variables: Mapping[str, TemplateValue]) -> str:
    """Render a stored template with the given variables."""

    def _conditional(match: re.Match[str]) -> str:
        return match.group(2) if variables.get(match.group(1)) else ""

    def _variable(match: re.Match[str]) -> str:
        value = variables.get(match.group(1))
        return match.group(0) if value is None else str(value)

    rendered = _CONDITIONAL_PATTERN.sub(_conditional, template)
    return _VARIABLE_PATTERN.sub(_variable, rendered)


def format_currency(amount: Decimal | int | float, currency_symbol: str = "€") -> str:
    """Format an amount Slovak-style: '1 234,50 €'."""
    quantized = Decimal(str(amount)).quantize(Decimal("0.01"))
    grouped = f"{quantized:,.2f}".replace(",", " ").replace(".", ",")
    return f"{grouped} {currency_symbol}"


def format_date(value: date | datetime) -> str:
    """Format a date Slovak-style: '19. 10. 2026'."""
    return f"{value.day}. {value.month}. {value.year}"


def public_url(path: str = "") -> str:
    """Absolute link into the public site, from PUBLIC_BASE_URL."""
    base = os.environ.get("PUBLIC_BASE_URL", DEFAULT_PUBLIC_BASE_URL).rstrip("/")
    return f"{base}{path}"
