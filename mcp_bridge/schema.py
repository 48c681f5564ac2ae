#!/usr/bin/env python3
"""
Tool parameter schema sanitizer.

Providers publish arbitrary JSON Schema documents; LLM backends accept only a
structural subset. Keywords outside the allow-list and every ``$``-prefixed
key ($schema, $id, $ref, $defs...) are dropped.
"""

from typing import Any, Dict

ALLOWED_SCHEMA_KEYWORDS = frozenset({
    "type", "properties", "required", "description", "additionalProperties",
    "items", "enum", "default", "title", "anyOf", "oneOf", "allOf", "not",
    "minimum", "maximum", "minLength", "maxLength", "pattern", "format",
    "minItems", "maxItems", "uniqueItems", "const", "examples",
    "minProperties", "maxProperties", "propertyNames", "nullable",
})

COMPOSITION_KEYWORDS = ("anyOf", "oneOf", "allOf")


def _sanitize_nested(value: Any) -> Any:
    return sanitize_schema_definition(value) if isinstance(value, dict) else value


def sanitize_schema_definition(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively sanitize a (sub)schema without applying root defaults"""
    result: Dict[str, Any] = {}

    for key, value in schema.items():
        if key.startswith("$") or key not in ALLOWED_SCHEMA_KEYWORDS:
            continue

        if key == "properties" and isinstance(value, dict):
            # Field names are data, only their schemas are filtered
            result[key] = {name: _sanitize_nested(field) for name, field in value.items()}
        elif key == "items" and isinstance(value, list):
            result[key] = [_sanitize_nested(item) for item in value]
        elif key in ("items", "additionalProperties") and isinstance(value, dict):
            result[key] = sanitize_schema_definition(value)
        elif key in COMPOSITION_KEYWORDS and isinstance(value, list):
            result[key] = [_sanitize_nested(item) for item in value]
        elif key == "required" and isinstance(value, list):
            result[key] = list(dict.fromkeys(value))
        else:
            result[key] = value

    return result


def sanitize_schema(schema: Dict[str, Any]) -> Dict[str, Any]:
    """Sanitize a tool's root parameter schema for the LLM backend"""
    sanitized = sanitize_schema_definition(schema or {})

    if not sanitized.get("type"):
        sanitized["type"] = "object"

    if sanitized["type"] == "object" and not sanitized.get("properties"):
        sanitized["properties"] = {}

    return sanitized
