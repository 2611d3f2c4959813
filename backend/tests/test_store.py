"""Ledger state store adapters and the selector matcher."""

import pytest

from pharmaledger.database import make_engine, make_session_factory
from pharmaledger.exceptions import ConcurrentModificationError, StoreError
from pharmaledger.store.selector import MISSING, SelectorError, compile_selector, resolve_field
from pharmaledger.store.sql import SqlBatchRepository


@pytest.fixture(params=["memory", "sql"])
def store(request):
    """Each test runs once per adapter."""
    fixture = "repository" if request.param == "memory" else "sql_repository"
    return request.getfixturevalue(fixture)


def _put(store, key, value):
    with store.transaction() as tx:
        tx.put(key, value)


def _get(store, key):
    with store.transaction() as tx:
        return tx.get(key)


@pytest.mark.integration
class TestTransactions:
    def test_committed_write_is_visible(self, store):
        _put(store, "K1", b'{"a": 1}')
        assert _get(store, "K1") == b'{"a": 1}'

    def test_missing_key(self, store):
        assert _get(store, "nope") is None

    def test_reads_your_writes(self, store):
        with store.transaction() as tx:
            tx.put("K1", b"one")
            assert tx.get("K1") == b"one"
            assert tx.scan_all() == [("K1", b"one")]

    def test_exception_discards_writes(self, store):
        with pytest.raises(RuntimeError, match="boom"):
            with store.transaction() as tx:
                tx.put("K1", b"one")
                raise RuntimeError("boom")
        assert _get(store, "K1") is None

    def test_scan_all_sorted_and_merged(self, store):
        _put(store, "B2", b"two")
        _put(store, "B1", b"one")
        with store.transaction() as tx:
            tx.put("B0", b"zero")
            tx.put("B2", b"TWO")
            assert tx.scan_all() == [("B0", b"zero"), ("B1", b"one"), ("B2", b"TWO")]

    def test_query_filters_json_documents(self, store):
        _put(store, "B1", b'{"docType": "batch", "status": "Sold"}')
        _put(store, "B2", b'{"docType": "batch", "status": "InTransit"}')
        _put(store, "RAW", b"not json")
        with store.transaction() as tx:
            rows = tx.query({"status": "Sold"})
        assert [key for key, _ in rows] == ["B1"]

    def test_history_versions(self, store):
        _put(store, "K1", b"v1")
        _put(store, "K1", b"v2")
        _put(store, "K2", b"other")
        with store.transaction() as tx:
            history = tx.history_of("K1")
        assert [(m.version, m.value, m.is_deleted) for m in history] == [
            (1, b"v1", False),
            (2, b"v2", False),
        ]
        assert history[0].timestamp < history[1].timestamp
        assert history[0].timestamp.tzinfo is not None

    def test_history_of_unknown_key(self, store):
        with store.transaction() as tx:
            assert tx.history_of("nope") == []

    def test_values_must_be_bytes(self, store):
        with store.transaction() as tx:
            with pytest.raises(TypeError):
                tx.put("K1", "text")

    def test_closed_transaction_rejects_use(self, store):
        with store.transaction() as tx:
            tx.put("K1", b"one")
        with pytest.raises(RuntimeError):
            tx.get("K1")


@pytest.mark.integration
class TestConcurrency:
    def test_stale_update_rejected(self, store):
        _put(store, "B1", b"v1")
        slow = store.transaction()
        assert slow.get("B1") == b"v1"

        _put(store, "B1", b"v2-fast")

        slow.put("B1", b"v2-slow")
        with pytest.raises(ConcurrentModificationError) as exc_info:
            slow.commit()
        assert exc_info.value.key == "B1"
        assert isinstance(exc_info.value, StoreError)
        assert _get(store, "B1") == b"v2-fast"

    def test_racing_creates_rejected(self, store):
        slow = store.transaction()
        assert slow.get("B1") is None

        _put(store, "B1", b"fast")

        slow.put("B1", b"slow")
        with pytest.raises(ConcurrentModificationError):
            slow.commit()
        assert _get(store, "B1") == b"fast"

    def test_conflict_rejects_whole_write_set(self, store):
        _put(store, "A", b"a1")
        _put(store, "B", b"b1")
        slow = store.transaction()
        slow.get("A")
        slow.get("B")

        _put(store, "B", b"b2")

        slow.put("A", b"a-slow")
        slow.put("B", b"b-slow")
        with pytest.raises(ConcurrentModificationError):
            slow.commit()
        assert _get(store, "A") == b"a1"
        with store.transaction() as tx:
            assert [m.version for m in tx.history_of("A")] == [1]

    def test_blind_write_not_version_checked(self, store):
        _put(store, "K1", b"v1")
        blind = store.transaction()
        _put(store, "K1", b"v2")
        blind.put("K1", b"v3")
        blind.commit()
        assert _get(store, "K1") == b"v3"

    def test_read_only_transaction_never_conflicts(self, store):
        _put(store, "K1", b"v1")
        reader = store.transaction()
        reader.get("K1")
        _put(store, "K1", b"v2")
        reader.commit()


@pytest.mark.integration
class TestSqlFailures:
    def test_missing_tables_surface_as_store_error(self, tmp_path, clock):
        engine = make_engine(f"sqlite:///{tmp_path / 'empty.db'}")
        repo = SqlBatchRepository(make_session_factory(engine), clock=clock)
        try:
            with pytest.raises(StoreError) as exc_info:
                with repo.transaction() as tx:
                    tx.get("B1")
            assert exc_info.value.key == "B1"
            assert exc_info.value.__cause__ is not None
        finally:
            engine.dispose()


DOC = {
    "docType": "batch",
    "id": "B7",
    "status": "InTransit",
    "currentOwner": "distributor-1",
    "manufactureDate": "2026-03-01T08:00:00Z",
    "temperatureReadings": [4.0, 9.5],
    "history": [
        {"owner": "manufacturer-1", "status": "Manufactured"},
        {"owner": "distributor-1", "status": "InTransit"},
    ],
}


@pytest.mark.unit
class TestSelector:
    @pytest.mark.parametrize("selector", [
        {},
        {"status": "InTransit"},
        {"status": {"$eq": "InTransit"}},
        {"status": {"$ne": "Sold"}},
        {"status": {"$in": ["Sold", "InTransit"]}},
        {"status": {"$nin": ["Sold", "Flagged"]}},
        {"manufactureDate": {"$gt": "2026-01-01T00:00:00Z", "$lte": "2026-03-01T08:00:00Z"}},
        {"temperatureReadings": {"$size": 2}},
        {"temperatureReadings": {"$elemMatch": {"$gt": 8.0}}},
        {"history": {"$elemMatch": {"owner": "manufacturer-1"}}},
        {"history.1.owner": "distributor-1"},
        {"id": {"$regex": "^B[0-9]+$"}},
        {"location": {"$exists": False}},
        {"currentOwner": {"$exists": True}},
        {"status": {"$not": {"$eq": "Sold"}}},
        {"$or": [{"status": "Sold"}, {"currentOwner": "distributor-1"}]},
        {"$and": [{"docType": "batch"}, {"id": "B7"}]},
        {"$nor": [{"status": "Sold"}, {"status": "Flagged"}]},
        {"$not": {"status": "Sold"}},
    ])
    def test_matches(self, selector):
        assert compile_selector(selector)(DOC)

    @pytest.mark.parametrize("selector", [
        {"status": "Sold"},
        {"location": "Depot"},
        {"location": {"$ne": "Depot"}},
        {"temperatureReadings": {"$elemMatch": {"$lt": 2.0}}},
        {"temperatureReadings": {"$size": 3}},
        {"id": 7},
        {"manufactureDate": {"$gt": 5}},
        {"$or": [{"status": "Sold"}, {"status": "Flagged"}]},
        {"history.5.owner": "anyone"},
    ])
    def test_does_not_match(self, selector):
        assert not compile_selector(selector)(DOC)

    def test_numbers_compare_across_int_and_float(self):
        assert compile_selector({"t": 8.0})({"t": 8})
        assert not compile_selector({"t": 1})({"t": True})

    def test_resolve_field(self):
        assert resolve_field(DOC, "history.1.owner") == "distributor-1"
        assert resolve_field(DOC, "history.9.owner") is MISSING
        assert resolve_field(DOC, "status.inner") is MISSING

    @pytest.mark.parametrize("selector", [
        [],
        "status",
        {"$xor": []},
        {"status": {"$like": "S%"}},
        {"status": {"$in": "Sold"}},
        {"$or": []},
        {"t": {"$gt": [1]}},
        {"t": {"$exists": "yes"}},
        {"t": {"$regex": "("}},
        {"t": {"$size": -1}},
        {"": 1},
    ])
    def test_malformed_selectors(self, selector):
        with pytest.raises(SelectorError):
            compile_selector(selector)
