import json

from nosqlgate.service.runtime import reset_runtime_for_tests
from scripts.bootstrap_tables import bootstrap_tables


def test_bootstrap_creates_missing_tables(tmp_path, monkeypatch, capsys):
    schema = tmp_path / "tables.json"
    schema.write_text(json.dumps({"People": {"id_field": "id"}, "orders": {}}), encoding="utf-8")
    monkeypatch.setenv("SCHEMA_PATH", str(schema))
    runtime = reset_runtime_for_tests()
    runtime.adapter.create_table("people")

    assert bootstrap_tables(dry_run=True) == {"People": "exists", "orders": "would_create"}
    assert "[DRY RUN] Would create table orders" in capsys.readouterr().out
    assert runtime.adapter.list_tables() == ["people"]

    assert bootstrap_tables() == {"People": "exists", "orders": "created"}
    assert runtime.adapter.list_tables() == ["orders", "people"]
