import pytest

from nosqlgate.service.errors import BadRequestError
from nosqlgate.service.predicate import apply_filter, compile_filter, count_comparisons

RECORDS = [
    {"id": "1", "name": "ann", "age": 30, "tags": ["a", "b"]},
    {"id": "2", "name": "bob", "age": 17, "tags": "c"},
    {"id": "3", "name": "o'neil", "age": None},
]


def test_empty_filter_matches_everything():
    assert apply_filter(RECORDS, "") == RECORDS
    assert compile_filter(None)({}) is True


def test_token_and_symbolic_comparisons():
    assert [r["id"] for r in apply_filter(RECORDS, "age ge 18")] == ["1"]
    assert [r["id"] for r in apply_filter(RECORDS, "age >= 18")] == ["1"]
    assert [r["id"] for r in apply_filter(RECORDS, "name = 'bob' or name = 'o''neil'")] == ["2", "3"]


def test_precedence_and_grouping():
    text = "name eq 'ann' or name eq 'bob' and age gt 20"
    assert [r["id"] for r in apply_filter(RECORDS, text)] == ["1"]
    text = "(name eq 'ann' or name eq 'bob') and age gt 20"
    assert [r["id"] for r in apply_filter(RECORDS, text)] == ["1"]
    assert [r["id"] for r in apply_filter(RECORDS, "not age gt 20")] == ["2", "3"]


def test_null_tests():
    assert [r["id"] for r in apply_filter(RECORDS, "age is null")] == ["3"]
    assert [r["id"] for r in apply_filter(RECORDS, "age is not null")] == ["1", "2"]


def test_multi_valued_attribute_matches_any_value():
    assert [r["id"] for r in apply_filter(RECORDS, "tags eq 'b'")] == ["1"]


def test_numeric_strings_compare_with_numbers():
    assert [r["name"] for r in apply_filter(RECORDS, "id eq 2")] == ["bob"]


def test_invalid_expression_raises():
    with pytest.raises(BadRequestError):
        compile_filter("age >")
    with pytest.raises(BadRequestError):
        compile_filter("(age eq 1")


def test_count_comparisons():
    assert count_comparisons("") == 0
    assert count_comparisons("a eq 1 and (b is null or c ne 'x')") == 3
