"""
Unit tests for object_serialiser.py functions.
"""

import json
import pytest

from spanrelay.object_serialiser import (
    sanitize_string_for_utf8,
    toNumber,
    safe_str_repr,
    safe_json_dumps,
    json_byte_length,
    to_attribute_value,
)


class TestSanitizeStringForUTF8:
    """Tests for sanitize_string_for_utf8 function."""

    def test_valid_string(self):
        """Test that valid UTF-8 strings pass through unchanged."""
        text = "Hello, world! 你好"
        assert sanitize_string_for_utf8(text) == text

    def test_none(self):
        assert sanitize_string_for_utf8(None) is None

    def test_non_string(self):
        assert sanitize_string_for_utf8(123) == "123"

    def test_surrogate_characters(self):
        """Test that surrogate characters are replaced."""
        result = sanitize_string_for_utf8("Hello\ud800World")
        assert "Hello" in result
        assert "World" in result
        result.encode('utf-8')


class TestToNumber:
    """Tests for toNumber function."""

    def test_none(self):
        assert toNumber(None) == 0

    def test_int(self):
        assert toNumber(42) == 42

    def test_plain_string(self):
        assert toNumber("800000") == 800000

    def test_units(self):
        assert toNumber("1k") == 1024
        assert toNumber("2m") == 2 * 1024 * 1024
        assert toNumber("1g") == 1024 * 1024 * 1024

    def test_body_limit_style(self):
        """Body limits are written like "1mb" or "500KB"."""
        assert toNumber("1mb") == 1024 * 1024
        assert toNumber("500KB") == 500 * 1024

    def test_invalid(self):
        with pytest.raises(ValueError):
            toNumber("lots")


class TestSafeJsonDumps:
    """Tests for safe_json_dumps and json_byte_length."""

    def test_compact(self):
        assert safe_json_dumps({"a": [1, 2]}) == '{"a":[1,2]}'

    def test_tuples_become_lists(self):
        assert json.loads(safe_json_dumps({"a": (1, 2)})) == {"a": [1, 2]}

    def test_unencodable_values_use_repr(self):
        class Thing:
            def __repr__(self):
                return "<thing>"
        assert json.loads(safe_json_dumps({"x": Thing()})) == {"x": "<thing>"}

    def test_circular_reference_does_not_raise(self):
        data = []
        data.append(data)
        assert isinstance(safe_json_dumps(data), str)

    def test_byte_length_counts_utf8(self):
        assert json_byte_length('"é"') == 4

    def test_safe_str_repr_handles_broken_repr(self):
        class Broken:
            def __repr__(self):
                raise RuntimeError("no")
        assert safe_str_repr(Broken()) == "<Broken object>"


class TestToAttributeValue:
    """Tests for to_attribute_value: coercing JSON values into OTel attribute values."""

    @pytest.mark.parametrize("value", ["text", 1, 1.5, True])
    def test_primitives_unchanged(self, value):
        assert to_attribute_value(value) == value

    def test_none(self):
        assert to_attribute_value(None) is None

    def test_homogeneous_list_becomes_tuple(self):
        assert to_attribute_value(["a", "b"]) == ("a", "b")

    def test_empty_list(self):
        assert to_attribute_value([]) == ()

    def test_mixed_list_is_json_encoded(self):
        assert to_attribute_value([1, "a"]) == '[1,"a"]'

    def test_bools_and_ints_are_not_mixed(self):
        assert to_attribute_value([True, 1]) == "[true,1]"

    def test_object_is_json_encoded(self):
        assert json.loads(to_attribute_value({"role": "user", "content": "hi"})) == {
            "role": "user",
            "content": "hi",
        }
