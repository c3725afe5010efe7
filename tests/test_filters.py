import pytest

from nosqlgate.service.errors import BadRequestError, ConfigurationError
from nosqlgate.service.filters import (
    SYMBOLIC,
    TOKEN,
    FilterTranslator,
    ServerFilterSet,
    interpret_filter_value,
    quote_literal,
)
from nosqlgate.service.lookups import StaticUserProvider, TemplateLookupResolver
from nosqlgate.service.predicate import count_comparisons


def test_token_dialect_translation():
    translator = FilterTranslator(TOKEN)
    assert translator.parse_filter("age >= 21 && name = 'bob'") == "age ge 21 and name eq 'bob'"
    assert translator.parse_filter("a!=1||b<2") == "a ne 1 or b lt 2"


def test_symbolic_dialect_translation():
    translator = FilterTranslator(SYMBOLIC)
    assert translator.parse_filter("age gte 21 AND name eq 'bob'") == "age >= 21 and name = 'bob'"


def test_quoted_literals_are_not_rewritten():
    translator = FilterTranslator(TOKEN)
    assert translator.parse_filter("note = 'a = b && c'") == "note eq 'a = b && c'"


def test_null_rule():
    translator = FilterTranslator(TOKEN)
    assert translator.parse_filter("deleted = null") == "deleted is null"
    assert translator.parse_filter("deleted != null") == "deleted is not null"


def test_translation_is_idempotent_on_native_filters():
    for dialect in (TOKEN, SYMBOLIC):
        translator = FilterTranslator(dialect)
        once = translator.parse_filter("age >= 21 and (name = 'x' or tag != null)")
        assert translator.parse_filter(once) == once


def test_array_filters_are_rejected():
    with pytest.raises(BadRequestError):
        FilterTranslator().parse_filter(["a", "eq", 1])


def test_params_are_spliced_after_translation():
    translator = FilterTranslator(TOKEN)
    assert translator.parse_filter("name = :name", {":name": "'a = b'"}) == "name eq 'a = b'"


def test_params_sharing_a_prefix_are_spliced_whole():
    translator = FilterTranslator(SYMBOLIC)
    params = {":a": 1, ":ab": 2}
    assert translator.parse_filter("x = :a and y = :ab", params) == "x = 1 and y = 2"
    assert translator.parse_filter("y = :ab or x = :a", params) == "y = 2 or x = 1"


def test_build_combines_server_and_user_filters():
    resolver = TemplateLookupResolver(user_provider=StaticUserProvider("u1"))
    translator = FilterTranslator(TOKEN, resolver)
    server = {"filters": [{"name": "owner", "operator": "=", "value": "{{current_user}}"}]}
    assert translator.build("age > 3", None, server) == "(owner eq 'u1') and (age gt 3)"
    assert translator.build(None, None, server) == "owner eq 'u1'"
    assert translator.build("age > 3") == "age gt 3"


def test_invalid_combiner_raises_configuration_error():
    translator = FilterTranslator(TOKEN)
    server = {"filter_op": "xor", "filters": [{"name": "a", "operator": "=", "value": "1"}]}
    with pytest.raises(ConfigurationError) as excinfo:
        translator.build("b = 2", None, server)
    assert excinfo.value.error_code == "configuration_error"


def test_server_filter_set_or_combiner():
    translator = FilterTranslator(TOKEN)
    server = ServerFilterSet.from_value(
        {
            "filter_op": "OR",
            "filters": [
                {"name": "a", "operator": "=", "value": "1"},
                {"name": "b", "operator": "is null"},
            ],
        }
    )
    assert translator.build_server_filter(server) == "a eq 1 or b is null"


def test_interpret_filter_value():
    assert interpret_filter_value("'12'") == "12"
    assert interpret_filter_value("12") == 12
    assert interpret_filter_value("1.5") == 1.5
    assert interpret_filter_value("TRUE") is True
    assert interpret_filter_value("null") is None
    assert interpret_filter_value("plain") == "plain"


def test_quote_literal_escapes_quotes():
    assert quote_literal("it's") == "'it''s'"
    assert quote_literal(None) == "null"
    assert quote_literal(False) == "false"


def test_ids_filter_groups_hold_fourteen_clauses():
    translator = FilterTranslator(TOKEN)
    ids = list(range(30))
    groups = translator.build_ids_filter(
        ids, "RowKey", partition_key="p1", partition_field="PartitionKey", max_clauses=15
    )
    assert len(groups) == 3
    for group in groups:
        assert group.startswith("PartitionKey eq 'p1' and (")
        assert count_comparisons(group) <= 15
    assert groups[0].count("RowKey eq") == 14
    assert groups[2].count("RowKey eq") == 2


def test_ids_filter_without_cap_is_one_group():
    translator = FilterTranslator(SYMBOLIC)
    assert translator.build_ids_filter(["a", "b"], "Name") == ["Name = 'a' or Name = 'b'"]


def test_composite_ids_filter():
    translator = FilterTranslator(TOKEN)
    groups = translator.build_ids_filter(
        [{"PartitionKey": "p", "RowKey": "r1"}], "RowKey"
    )
    assert groups == ["(PartitionKey eq 'p' and RowKey eq 'r1')"]
