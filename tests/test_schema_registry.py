import json

import pytest

from nosqlgate.service.errors import ConfigurationError
from nosqlgate.service.schema import SchemaRegistry, TableSchema
from nosqlgate.storage.models import BackendCapabilities


SCHEMA = {
    "Orders": {
        "id_field": "order_no",
        "id_type": "int",
        "fields": [
            {"name": "order_no", "required": True},
            {"name": "status", "picklist": ["open", "closed"]},
        ],
        "server_filters": {
            "filter_op": "or",
            "filters": [{"name": "owner", "operator": "eq", "value": "{{current_user}}"}],
        },
    }
}


def test_registry_builds_table_schemas():
    registry = SchemaRegistry.from_dict(SCHEMA)
    schema = registry.get("orders")
    assert schema.name == "Orders"
    assert schema.id_fields == ("order_no",)
    assert schema.id_types == ("int",)
    assert [info.name for info in schema.fields] == ["order_no", "status"]
    assert schema.fields[1].picklist == ["open", "closed"]
    assert schema.server_filters.combiner == "or"
    assert schema.server_filters.filters[0].value == "{{current_user}}"
    assert "Orders" in registry
    assert registry.table_names() == ["Orders"]


def test_unknown_table_gets_empty_schema():
    schema = SchemaRegistry().get("anything")
    assert schema == TableSchema(name="anything")


def test_invalid_configuration_is_reported():
    bad = {"Orders": {"fields": [{"type": "int"}], "id_field": 5}}
    with pytest.raises(ConfigurationError) as excinfo:
        SchemaRegistry.from_dict(bad)
    assert excinfo.value.status_code == 500
    assert excinfo.value.error_code == "configuration_error"
    errors = excinfo.value.detail["errors"]
    assert any(message.startswith("Orders/fields/0") for message in errors)
    assert any(message.startswith("Orders/id_field") for message in errors)


def test_from_file(tmp_path):
    path = tmp_path / "tables.json"
    path.write_text(json.dumps(SCHEMA), encoding="utf-8")
    assert SchemaRegistry.from_file(path).get("Orders").id_fields == ("order_no",)
    assert SchemaRegistry.from_file(None).table_names() == []


def test_from_file_errors(tmp_path):
    with pytest.raises(ConfigurationError, match="not found"):
        SchemaRegistry.from_file(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(ConfigurationError, match="not valid JSON") as excinfo:
        SchemaRegistry.from_file(broken)
    assert excinfo.value.detail["line"] == 1


def test_ids_info_precedence():
    caps = BackendCapabilities(name="memory")
    schema = SchemaRegistry.from_dict(SCHEMA).get("Orders")

    info = schema.ids_info(caps)
    assert [(i.name, i.type, i.required) for i in info] == [("order_no", "int", True)]

    override = schema.ids_info(caps, ["code"], ["string"])
    assert [(i.name, i.type, i.required) for i in override] == [("code", "string", False)]

    plain = TableSchema(name="t").ids_info(caps)
    assert [(i.name, i.type, i.required) for i in plain] == [("id", "string", False)]


def test_composite_ids_are_always_required():
    caps = BackendCapabilities(name="widecolumn", id_fields=("PartitionKey", "RowKey"))
    info = TableSchema(name="t").ids_info(caps)
    assert [i.name for i in info] == ["PartitionKey", "RowKey"]
    assert all(i.required for i in info)
