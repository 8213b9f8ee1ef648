"""Schema helpers shared by provider encoders."""

from __future__ import annotations

from copy import deepcopy
from typing import Any

from conduit.errors import ValidationError


def to_strict_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Normalize a JSON schema for strict structured-output requirements.

    Ensures that for all 'object' types:
    1. additionalProperties is False
    2. All defined properties are listed in 'required'
    """
    normalized = deepcopy(schema)

    def walk(node: Any) -> Any:
        if isinstance(node, list):
            return [walk(item) for item in node]
        if not isinstance(node, dict):
            return node

        updated: dict[str, Any] = {key: walk(value) for key, value in node.items()}
        if updated.get("type") == "object" or "properties" in updated:
            properties = updated.get("properties", {})
            if isinstance(properties, dict):
                updated["additionalProperties"] = False
                if "required" not in updated:
                    updated["required"] = list(properties.keys())
        return updated

    result = walk(normalized)
    if not isinstance(result, dict):
        raise ValidationError("Invalid response_schema: expected object schema")
    return result


def strip_schema_keys(schema: Any, keys: frozenset[str]) -> Any:
    """Drop unsupported keywords (Gemini rejects ``additionalProperties``...)."""
    if isinstance(schema, list):
        return [strip_schema_keys(item, keys) for item in schema]
    if not isinstance(schema, dict):
        return schema
    return {k: strip_schema_keys(v, keys) for k, v in schema.items() if k not in keys}
