"""Tests for condition trees, path parsing and the in-process evaluator."""

from __future__ import annotations

import pytest

from polystore.conditions import (
    EMPTY,
    AndCoupling,
    ArrayElementExists,
    Compare,
    EmptyCoupling,
    Exists,
    OrCoupling,
    SingleCoupling,
    array_element_exists,
    array_element_not_exists,
    as_coupling,
    attribute_equals,
    attribute_exists,
    attribute_greater,
    attribute_greater_or_equal,
    attribute_less,
    attribute_less_or_equal,
    attribute_not_equals,
    attribute_not_exists,
    evaluate,
    parse_path,
)
from polystore.errors import InvalidArgumentError, InvalidPathError

DOC = {
    "name": "Alice",
    "age": 30,
    "score": 2.5,
    "active": True,
    "tags": ["a", "b", 3],
    "empty": [],
    "address": {"city": "Oslo", "zip": "0150"},
}


class TestParsePath:
    def test_nested(self):
        parsed = parse_path("address.city")
        assert parsed.segments == ("address", "city")
        assert not parsed.size

    def test_size(self):
        parsed = parse_path("size(tags)", allow_size=True)
        assert parsed.segments == ("tags",)
        assert parsed.size
        assert str(parsed) == "size(tags)"

    def test_size_outside_comparison_rejected(self):
        with pytest.raises(InvalidPathError):
            parse_path("size(tags)")

    @pytest.mark.parametrize("path", ["tags[0]", "a.b[1].c", "size(tags[0])"])
    def test_index_syntax_rejected(self, path):
        with pytest.raises(InvalidPathError, match="ArrayElementExists"):
            parse_path(path, allow_size=True)

    @pytest.mark.parametrize("path", ["", "  ", "a..b", ".a", "a."])
    def test_empty_segments_rejected(self, path):
        with pytest.raises(InvalidPathError):
            parse_path(path)

    def test_invalid_path_is_value_error(self):
        with pytest.raises(ValueError):
            attribute_exists("tags[1]")


class TestConstruction:
    def test_builders_return_single_couplings(self):
        c = attribute_equals("name", "Alice")
        assert isinstance(c, SingleCoupling)
        assert isinstance(c.condition, Compare)
        assert c.condition.op == "=="

    def test_and_or(self):
        c = attribute_exists("a") & attribute_exists("b")
        assert isinstance(c, AndCoupling)
        d = attribute_exists("a") | attribute_exists("b")
        assert isinstance(d, OrCoupling)

    def test_empty_is_identity(self):
        c = attribute_exists("a")
        assert (EMPTY & c) is c
        assert (c | EMPTY) is c
        assert EMPTY.is_empty

    def test_as_coupling(self):
        assert isinstance(as_coupling(None), EmptyCoupling)
        assert isinstance(as_coupling(Exists("a")), SingleCoupling)

    def test_conditions_lists_leaves(self):
        c = attribute_exists("a") & (attribute_exists("b") | attribute_not_exists("c"))
        assert [leaf.path for leaf in c.conditions()] == ["a", "b", "c"]

    def test_ordered_bool_rejected(self):
        with pytest.raises(InvalidArgumentError, match="Booleans"):
            attribute_greater("active", True)

    def test_size_requires_number(self):
        with pytest.raises(InvalidArgumentError):
            attribute_equals("size(tags)", "3")

    def test_unknown_operator(self):
        with pytest.raises(InvalidArgumentError):
            Compare("a", "~=", 1)

    def test_element_value_coerced(self):
        cond = ArrayElementExists("tags", 3)
        assert cond.value.canonical() == "3"


class TestEvaluate:
    def test_exists(self):
        assert evaluate(attribute_exists("address.city"), DOC)
        assert not evaluate(attribute_exists("address.country"), DOC)
        assert evaluate(attribute_not_exists("missing.deeper"), DOC)

    def test_missing_intermediate_segment_is_false(self):
        assert not evaluate(attribute_equals("name.first", "A"), DOC)
        assert not evaluate(attribute_exists("age.value"), DOC)

    def test_numeric_coercion(self):
        assert evaluate(attribute_equals("age", 30.0), DOC)
        assert evaluate(attribute_greater("score", 2), DOC)
        assert evaluate(attribute_less_or_equal("age", 30), DOC)
        assert evaluate(attribute_greater_or_equal("age", 30), DOC)
        assert not evaluate(attribute_less("age", 30), DOC)

    def test_cross_kind_is_false(self):
        assert not evaluate(attribute_equals("age", "30"), DOC)
        assert not evaluate(attribute_not_equals("age", "30"), DOC)
        assert not evaluate(attribute_equals("active", 1), DOC)
        assert not evaluate(attribute_greater("name", 1), DOC)

    def test_strings_and_bools(self):
        assert evaluate(attribute_greater("name", "Aaron"), DOC)
        assert evaluate(attribute_not_equals("name", "Bob"), DOC)
        assert evaluate(attribute_equals("active", True), DOC)
        assert evaluate(attribute_not_equals("active", False), DOC)

    def test_bytes_compare_as_base64(self):
        doc = {"blob": "aGk="}
        assert evaluate(attribute_equals("blob", b"hi"), doc)

    def test_size(self):
        assert evaluate(attribute_equals("size(tags)", 3), DOC)
        assert evaluate(attribute_equals("size(empty)", 0), DOC)
        assert evaluate(attribute_greater("size(tags)", 2), DOC)
        assert not evaluate(attribute_equals("size(name)", 5), DOC)
        assert not evaluate(attribute_equals("size(missing)", 0), DOC)

    def test_array_membership_by_canonical_string(self):
        assert evaluate(array_element_exists("tags", "a"), DOC)
        assert evaluate(array_element_exists("tags", "3"), DOC)
        assert evaluate(array_element_exists("tags", 3.0), DOC)
        assert not evaluate(array_element_exists("tags", "z"), DOC)
        assert evaluate(array_element_not_exists("tags", "z"), DOC)

    def test_membership_on_non_array(self):
        assert not evaluate(array_element_exists("name", "Alice"), DOC)
        assert evaluate(array_element_not_exists("name", "Alice"), DOC)
        assert evaluate(array_element_not_exists("missing", "x"), DOC)

    def test_absent_document_is_empty(self):
        assert evaluate(None, None)
        assert evaluate(attribute_not_exists("a"), None)
        assert not evaluate(attribute_exists("a"), None)

    def test_tree(self):
        tree = attribute_equals("name", "Alice") & (
            attribute_less("age", 18) | array_element_exists("tags", "b")
        )
        assert evaluate(tree, DOC)
        assert not evaluate(tree & attribute_exists("missing"), DOC)
