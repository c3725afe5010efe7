import psycopg
import pytest
from psycopg import errors

from nosqlgate.service.codec import JSON_MARKER
from nosqlgate.service.errors import BackendUnavailableError, BadRequestError, NotFoundError
from nosqlgate.storage.errors import ConstraintViolation
from nosqlgate.storage.models import QueryOptions
from nosqlgate.storage.postgres import (
    EDM_BOOLEAN,
    EDM_DOUBLE,
    EDM_INT32,
    EDM_INT64,
    EDM_STRING,
    PARTITION_KEY,
    ROW_KEY,
    WideColumnAdapter,
    edm_type,
    from_properties,
    split_id,
    to_properties,
)


class DownPool:
    def connection(self):
        raise psycopg.OperationalError("could not connect to server")


@pytest.fixture
def store(widecolumn_adapter):
    return widecolumn_adapter


def test_edm_types():
    assert edm_type(True) == EDM_BOOLEAN
    assert edm_type(1.5) == EDM_DOUBLE
    assert edm_type(7) == EDM_INT32
    assert edm_type(2147483648) == EDM_INT64
    assert edm_type(-2147483649) == EDM_INT64
    assert edm_type("x") == EDM_STRING


def test_properties_keep_types_and_drop_keys():
    props = to_properties(
        {PARTITION_KEY: "p", ROW_KEY: "r", "n": 3, "ok": False, "tags": ["a"], "gone": None}
    )
    assert props == {
        "n": {"type": EDM_INT32, "value": 3},
        "ok": {"type": EDM_BOOLEAN, "value": False},
        "tags": {"type": EDM_STRING, "value": JSON_MARKER + '["a"]'},
    }
    assert from_properties(props) == {"n": 3, "ok": False, "tags": ["a"]}


def test_split_id():
    assert split_id("r1", "p1") == ("p1", "r1")
    assert split_id({PARTITION_KEY: "p", ROW_KEY: 5}) == ("p", "5")
    assert split_id(9) == ("", "9")
    with pytest.raises(BadRequestError):
        split_id({PARTITION_KEY: "p"})


def test_insert_get_and_conflict(store):
    created = store.insert("people", {PARTITION_KEY: "p", ROW_KEY: "1", "age": 3})
    assert created == {PARTITION_KEY: "p", ROW_KEY: "1", "age": 3}
    assert store.get("people", {PARTITION_KEY: "p", ROW_KEY: "1"}) == created
    with pytest.raises(ConstraintViolation) as excinfo:
        store.insert("people", {PARTITION_KEY: "p", ROW_KEY: "1"})
    assert isinstance(excinfo.value.__cause__, errors.UniqueViolation)


def test_insert_generates_row_key(store):
    created = store.insert("people", {"age": 1})
    assert created[PARTITION_KEY] == ""
    assert created[ROW_KEY]


def test_update_merge_delete(store):
    key = {PARTITION_KEY: "p", ROW_KEY: "1"}
    store.insert("people", {**key, "a": 1, "b": 2})

    assert store.update("people", key, {"a": 5}) == {**key, "a": 5}
    assert store.merge("people", key, {"b": 3}) == {**key, "a": 5, "b": 3}
    assert store.merge("people", key, {"a": None}) == {**key, "b": 3}
    assert store.delete("people", key) == {**key, "b": 3}
    with pytest.raises(NotFoundError):
        store.get("people", key)


def test_batches_skip_missing_entities(store):
    store.batch_insert(
        "people", [{PARTITION_KEY: "p", ROW_KEY: "1", "v": 1}, {PARTITION_KEY: "p", ROW_KEY: "2", "v": 2}]
    )
    updated = store.batch_update(
        "people", [{PARTITION_KEY: "p", ROW_KEY: "1", "v": 9}, {PARTITION_KEY: "p", ROW_KEY: "x", "v": 0}]
    )
    assert [record["v"] for record in updated] == [9]
    deleted = store.batch_delete("people", [{PARTITION_KEY: "p", ROW_KEY: "2"}, {PARTITION_KEY: "p", ROW_KEY: "x"}])
    assert [record[ROW_KEY] for record in deleted] == ["2"]


def test_query_filters_and_projects(store):
    store.batch_insert(
        "people",
        [
            {PARTITION_KEY: "p", ROW_KEY: "1", "age": 30, "name": "a"},
            {PARTITION_KEY: "p", ROW_KEY: "2", "age": 10, "name": "b"},
        ],
    )
    found = store.query("people", "age gt 20", QueryOptions(fields=["name"]))
    assert found == [{PARTITION_KEY: "p", ROW_KEY: "1", "name": "a"}]


def test_query_rejects_too_many_comparisons(store):
    text = " or ".join(f"age eq {n}" for n in range(16))
    with pytest.raises(BadRequestError, match="at most 15"):
        store.query("people", text)


def test_tables(store):
    assert store.list_tables() == ["people"]
    with pytest.raises(ConstraintViolation) as excinfo:
        store.create_table("people")
    assert isinstance(excinfo.value.__cause__, errors.UniqueViolation)
    store.insert("people", {PARTITION_KEY: "p", ROW_KEY: "1"})
    assert store.describe_table("people").properties == {"entity_count": 1}
    store.delete_table("people")
    with pytest.raises(NotFoundError, match="does not exist"):
        store.delete_table("people")
    with pytest.raises(NotFoundError, match="does not exist"):
        store.get("people", "1")


def test_unreachable_database_is_backend_unavailable():
    with pytest.raises(BackendUnavailableError) as excinfo:
        WideColumnAdapter("postgresql://test", pool=DownPool())
    assert excinfo.value.detail == {"operation": "ensure_schema"}


def test_close_closes_pool(store):
    store.close()
    assert store.pool.closed is True
