"""``{{token}}`` personalization of message text from a subject record."""

import re
from typing import Any, Dict, Mapping, Optional

from ..workflow.conditions import resolve_field, to_text

_TOKEN_PATTERN = re.compile(r"\{\{\s*([a-zA-Z_][a-zA-Z0-9_.:]*)\s*\}\}")

# Used when the record has no value for a well-known token
TOKEN_FALLBACKS: Dict[str, str] = {
    "first_name": "there",
    "full_name": "Valued Customer",
    "company_name": "your company",
}


def _full_name(record: Mapping[str, Any]) -> str:
    if record.get("full_name"):
        return to_text(record["full_name"])
    parts = [to_text(record.get("first_name")), to_text(record.get("last_name"))]
    return " ".join(p for p in parts if p).strip()


def render(
    template: Optional[str],
    record: Mapping[str, Any],
    extra: Optional[Mapping[str, Any]] = None,
    use_fallbacks: bool = True,
) -> str:
    """Replace ``{{field}}``, ``{{nested.field}}`` and ``{{custom:name}}`` tokens.

    Tokens with no value render as their fallback (or empty); with
    ``use_fallbacks=False`` they are left in place.
    """
    if not template:
        return ""
    extra = extra or {}

    def replace(match: re.Match) -> str:
        token = match.group(1)
        if token in extra:
            value = extra[token]
        elif token.startswith("custom:"):
            custom = record.get("custom_fields") or {}
            value = custom.get(token[len("custom:"):]) if isinstance(custom, Mapping) else None
        elif token == "full_name":
            value = _full_name(record)
        else:
            value = resolve_field(record, token)

        text = to_text(value)
        if text:
            return text
        if not use_fallbacks:
            return match.group(0)
        return TOKEN_FALLBACKS.get(token, "")

    return _TOKEN_PATTERN.sub(replace, template)
