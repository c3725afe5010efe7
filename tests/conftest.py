import os
import sys
from contextlib import contextmanager
from pathlib import Path

# Environment defaults must be set before any import that initializes settings
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from psycopg import errors  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from nosqlgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from nosqlgate.service.records import RecordService  # noqa: E402
from nosqlgate.service.schema import SchemaRegistry  # noqa: E402
from nosqlgate.service.shaper import RecordShaper  # noqa: E402
from nosqlgate.service.tables import TableCatalog  # noqa: E402
from nosqlgate.storage.memory import MemoryAdapter  # noqa: E402
from nosqlgate.storage.postgres import WideColumnAdapter  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def memory_adapter():
    adapter = MemoryAdapter()
    adapter.create_table("people")
    return adapter


@pytest.fixture
def record_service(memory_adapter):
    def _build(schema=None, shaper=None):
        registry = SchemaRegistry.from_dict(schema) if schema else SchemaRegistry()
        return RecordService(
            memory_adapter,
            TableCatalog(memory_adapter),
            registry,
            shaper=shaper or RecordShaper(clock=lambda: 1700000000.0),
        )

    return _build


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    def fetchone(self):
        return self.rows[0] if self.rows else None

    def fetchall(self):
        return list(self.rows)


class FakeConnection:
    """Answers the handful of statements the entity store issues."""

    def __init__(self, db):
        self.db = db

    @contextmanager
    def transaction(self):
        yield

    def execute(self, sql, params=()):
        sql = " ".join(sql.split())
        tables, entities = self.db["tables"], self.db["entities"]
        if sql.startswith("CREATE TABLE IF NOT EXISTS"):
            return FakeCursor([])
        if sql.startswith("SELECT 1 FROM nosqlgate_table"):
            return FakeCursor([{"?column?": 1}] if params[0] in tables else [])
        if sql.startswith("INSERT INTO nosqlgate_table"):
            if params[0] in tables:
                raise errors.UniqueViolation("duplicate table")
            tables[params[0]] = params[1].obj
            return FakeCursor([])
        if sql.startswith("SELECT name FROM nosqlgate_table"):
            return FakeCursor([{"name": name} for name in sorted(tables)])
        if sql.startswith("SELECT t.properties"):
            if params[0] not in tables:
                return FakeCursor([])
            count = sum(1 for key in entities if key[0] == params[0])
            return FakeCursor([{"properties": tables[params[0]], "entity_count": count}])
        if sql.startswith("DELETE FROM nosqlgate_table"):
            if tables.pop(params[0], None) is None:
                return FakeCursor([])
            for key in [key for key in entities if key[0] == params[0]]:
                del entities[key]
            return FakeCursor([{"name": params[0]}])
        if sql.startswith("INSERT INTO nosqlgate_entity"):
            key = params[:3]
            if key in entities:
                raise errors.UniqueViolation("duplicate entity")
            entities[key] = dict(params[3].obj)
            return FakeCursor([])
        if sql.startswith("SELECT partition_key, row_key, properties FROM nosqlgate_entity"):
            if "ORDER BY" in sql:
                keys = sorted(key for key in entities if key[0] == params[0])
            else:
                keys = [tuple(params)] if tuple(params) in entities else []
            return FakeCursor([self._row(key) for key in keys])
        if sql.startswith("UPDATE nosqlgate_entity"):
            if "||" in sql:
                props, removed, key = params[0].obj, params[1], tuple(params[2:])
                if key not in entities:
                    return FakeCursor([])
                entities[key].update(props)
                for name in removed:
                    entities[key].pop(name, None)
            else:
                props, key = params[0].obj, tuple(params[1:])
                if key not in entities:
                    return FakeCursor([])
                entities[key] = dict(props)
            return FakeCursor([self._row(key)])
        if sql.startswith("DELETE FROM nosqlgate_entity"):
            key = tuple(params)
            if key not in entities:
                return FakeCursor([])
            row = self._row(key)
            del entities[key]
            return FakeCursor([row])
        raise AssertionError(f"unexpected statement: {sql}")

    def _row(self, key):
        return {"partition_key": key[1], "row_key": key[2], "properties": dict(self.db["entities"][key])}


class FakePool:
    def __init__(self):
        self.db = {"tables": {}, "entities": {}}
        self.closed = False

    @contextmanager
    def connection(self):
        yield FakeConnection(self.db)

    def close(self):
        self.closed = True


@pytest.fixture
def widecolumn_adapter():
    adapter = WideColumnAdapter("postgresql://test", pool=FakePool())
    adapter.create_table("people")
    return adapter
