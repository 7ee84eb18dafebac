"""Shape checks for the structured-output schemas sent to the model."""

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from src.agents.schemas import PATTERN_SCHEMA, RESPONSE_SCHEMAS, SCHEMA_VERSION
from src.agents.state import PATTERN_TYPES
from tests.fakes import default_responses


def _objects(schema: dict):
    """Every object schema nested in ``schema``, itself included."""
    if schema.get("type") == "object":
        yield schema
        for prop in schema.get("properties", {}).values():
            yield from _objects(prop)
    elif schema.get("type") == "array":
        yield from _objects(schema["items"])


class TestResponseSchemas:

    def test_versioned_set(self):
        assert SCHEMA_VERSION == "2"
        assert set(RESPONSE_SCHEMAS) == {"decomposition", "research", "analysis", "progress"}

    @pytest.mark.parametrize("name", sorted(RESPONSE_SCHEMAS))
    def test_required_keys_are_declared(self, name):
        for obj in _objects(RESPONSE_SCHEMAS[name]):
            assert set(obj.get("required", [])) <= set(obj["properties"])

    def test_pattern_types_in_step(self):
        assert tuple(PATTERN_SCHEMA["properties"]["type"]["enum"]) == PATTERN_TYPES

    @pytest.mark.parametrize("name", sorted(RESPONSE_SCHEMAS))
    def test_canned_responses_carry_required_keys(self, name):
        required = RESPONSE_SCHEMAS[name]["required"]
        assert set(required) <= set(default_responses()[name])
