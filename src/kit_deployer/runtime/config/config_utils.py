"""Helpers for reading settings from environment variables."""

import json
import os


def parse_string_list(value: str | None) -> list[str]:
    """Parse a JSON array of strings, or treat the value as a single item.

    Examples:
        '["https://a", "https://b"]' -> ["https://a", "https://b"]
        'https://a'                  -> ["https://a"]
        ''                           -> []
    """
    if not value:
        return []
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError:
        # Assume it is just a string (single url)
        return [value]
    if isinstance(parsed, list):
        return [str(item) for item in parsed]
    return [value]


def env_overrides(prefix: str, environ: dict[str, str] | None = None) -> dict:
    """Collect prefixed environment variables into a nested dict.

    ``KIT_DEPLOYER_AVAILABLE__TIMEOUT=60`` becomes
    ``{"available": {"timeout": "60"}}``. Values stay strings; pydantic
    coerces them during validation.
    """
    source = os.environ if environ is None else environ
    result: dict = {}
    for var_name, var_value in source.items():
        if not var_name.startswith(prefix):
            continue
        path = var_name[len(prefix) :].lower().split("__")
        target = result
        for part in path[:-1]:
            target = target.setdefault(part, {})
        target[path[-1]] = var_value
    return result
