from __future__ import annotations

from collections.abc import Mapping
import hashlib
import json
import re

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def render_template(template: str, variables: Mapping[str, object] | None = None) -> str:
    """Substitute ``{{name}}`` placeholders; missing or null values render as ""."""
    values = variables or {}

    def _substitute(match: re.Match[str]) -> str:
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    return _PLACEHOLDER.sub(_substitute, template)


def compute_message_hash(message: str, variables: Mapping[str, object], recipe_name: str) -> str:
    payload = json.dumps(
        {"message": message, "variables": dict(variables), "recipeName": recipe_name},
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
