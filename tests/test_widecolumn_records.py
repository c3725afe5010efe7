import pytest

from nosqlgate.service.coordinator import TransactionCoordinator, TransactionExtras
from nosqlgate.service.errors import BatchError, NotFoundError
from nosqlgate.service.predicate import count_comparisons
from nosqlgate.service.records import RecordService, RequestExtras
from nosqlgate.service.schema import SchemaRegistry
from nosqlgate.service.shaper import RecordShaper
from nosqlgate.service.tables import TableCatalog
from nosqlgate.storage.models import Action
from nosqlgate.storage.postgres import PARTITION_KEY, ROW_KEY

OWNER_FILTER = {"filters": [{"name": "owner", "operator": "eq", "value": "u"}]}


@pytest.fixture
def adapter(widecolumn_adapter):
    widecolumn_adapter.batch_insert(
        "people",
        [{PARTITION_KEY: "p", ROW_KEY: str(n), "owner": "u", "v": n} for n in range(14)],
    )
    return widecolumn_adapter


@pytest.fixture
def queries(adapter, monkeypatch):
    seen = []
    query = adapter.query

    def _query(table, native_filter="", options=None):
        seen.append(native_filter)
        return query(table, native_filter, options)

    monkeypatch.setattr(adapter, "query", _query)
    return seen


def _service(adapter, schema=None):
    registry = SchemaRegistry.from_dict(schema) if schema else SchemaRegistry()
    return RecordService(adapter, TableCatalog(adapter), registry, shaper=RecordShaper())


def test_partition_fetch_is_deferred_to_one_query(adapter, queries):
    coordinator = TransactionCoordinator(adapter, Action.FETCH)
    coordinator.init_transaction("people")
    extras = TransactionExtras(fields="*", partition_key="p")
    coordinator.add_to_transaction(None, {PARTITION_KEY: "p", ROW_KEY: "3"}, extras, single=True)
    coordinator.add_to_transaction(None, {PARTITION_KEY: "p", ROW_KEY: "1"}, extras)
    assert queries == []

    result = coordinator.commit_transaction(extras)
    assert [record["v"] for record in result] == [3, 1]
    assert len(queries) == 1
    assert count_comparisons(queries[0]) == 3


def test_single_partition_fetch_of_missing_id_is_not_found(adapter):
    service = _service(adapter)
    with pytest.raises(NotFoundError, match="Record with id 'nope' not found."):
        service.retrieve_record_by_id("people", "nope", RequestExtras(partition_key="p"))

    found = service.retrieve_record_by_id("people", "2", RequestExtras(partition_key="p"))
    assert found == {PARTITION_KEY: "p", ROW_KEY: "2", "owner": "u", "v": 2}


def test_id_groups_leave_room_for_server_filters(adapter, queries):
    service = _service(adapter, {"people": {"server_filters": OWNER_FILTER}})
    ids = [str(n) for n in range(14)]

    found = service.retrieve_records_by_ids("people", ids, RequestExtras(partition_key="p"))
    assert [record[ROW_KEY] for record in found] == ids
    assert len(queries) == 2
    assert [count_comparisons(native) for native in queries] == [15, 3]
    assert all(native.startswith("(owner eq 'u') and (") for native in queries)


def test_partition_fetch_with_continue_reports_misses_in_place(adapter):
    service = _service(adapter)
    out = service.retrieve_records_by_ids(
        "people", ["1", "missing", "3"], RequestExtras(partition_key="p", continue_on_error=True)
    )
    assert out[0][ROW_KEY] == "1"
    assert out[1] == {
        "error": {"index": 1, "code": "not_found", "message": "Record with id 'missing' not found."}
    }
    assert out[2][ROW_KEY] == "3"


def test_partition_fetch_without_continue_is_batch_error(adapter):
    service = _service(adapter)
    with pytest.raises(BatchError) as excinfo:
        service.retrieve_records_by_ids("people", ["1", "missing"], RequestExtras(partition_key="p"))
    assert excinfo.value.detail == {"table": "people", "requested": 2, "processed": 1}


def test_composite_update_rolls_back(adapter):
    service = _service(adapter)
    with pytest.raises(BatchError, match="All changes rolled back."):
        service.update_records(
            "people",
            [
                {PARTITION_KEY: "p", ROW_KEY: "1", "v": 99},
                {PARTITION_KEY: "p", ROW_KEY: "zz", "v": 0},
            ],
            RequestExtras(rollback=True),
        )
    assert adapter.get("people", {PARTITION_KEY: "p", ROW_KEY: "1"})["v"] == 1
