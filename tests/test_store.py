"""Tests for the pattern store backends."""

import pytest

from aves_learning.core.store import (
    InMemoryPatternStore,
    SQLitePatternStore,
    create_pattern_store,
)


@pytest.fixture(params=["memory", "sqlite"])
def backend(request, tmp_path):
    if request.param == "memory":
        store = InMemoryPatternStore()
    else:
        store = SQLitePatternStore(str(tmp_path / "patterns.db"))
    yield store
    store.close()


class TestPatternStore:
    """Contract shared by every backend."""

    def test_store_and_retrieve(self, backend):
        assert backend.store("patterns", "cardinal:beak", {"confidence": 0.55}) is True
        assert backend.retrieve("patterns", "cardinal:beak") == {"confidence": 0.55}

    def test_retrieve_missing(self, backend):
        assert backend.retrieve("patterns", "nope") is None

    def test_namespaces_are_isolated(self, backend):
        backend.store("patterns", "k", {"a": 1})
        backend.store("rejections", "k", {"b": 2})
        assert backend.retrieve("patterns", "k") == {"a": 1}
        assert backend.retrieve("rejections", "k") == {"b": 2}

    def test_overwrite(self, backend):
        backend.store("patterns", "k", {"v": 1})
        backend.store("patterns", "k", {"v": 2})
        assert backend.retrieve("patterns", "k") == {"v": 2}

    def test_delete(self, backend):
        backend.store("patterns", "k", {"v": 1})
        assert backend.delete("patterns", "k") is True
        assert backend.delete("patterns", "k") is False
        assert backend.retrieve("patterns", "k") is None

    def test_list_with_prefix_is_sorted(self, backend):
        for key in ["robin:tail", "cardinal:crest", "cardinal:beak"]:
            backend.store("patterns", key, {})
        assert backend.list("patterns") == ["cardinal:beak", "cardinal:crest", "robin:tail"]
        assert backend.list("patterns", "cardinal:") == ["cardinal:beak", "cardinal:crest"]

    def test_list_prefix_is_literal(self, backend):
        backend.store("patterns", "a_b:beak", {})
        backend.store("patterns", "axb:beak", {})
        assert backend.list("patterns", "a_b") == ["a_b:beak"]

    def test_clear(self, backend):
        backend.store("patterns", "k", {"v": 1})
        backend.clear()
        assert backend.list("patterns") == []


class TestInMemoryIsolation:

    def test_returned_blob_is_a_copy(self):
        store = InMemoryPatternStore()
        store.store("ns", "k", {"items": [1]})
        blob = store.retrieve("ns", "k")
        blob["items"].append(2)
        assert store.retrieve("ns", "k") == {"items": [1]}


class TestSQLitePersistence:

    def test_survives_reopen(self, tmp_path):
        path = str(tmp_path / "p.db")
        store = SQLitePatternStore(path)
        store.store("patterns", "cardinal:beak", {"confidence": 0.7})
        store.close()

        reopened = SQLitePatternStore(path)
        assert reopened.retrieve("patterns", "cardinal:beak") == {"confidence": 0.7}
        reopened.close()


class TestFactory:

    def test_memory(self):
        assert isinstance(create_pattern_store("memory"), InMemoryPatternStore)

    def test_sqlite_url(self, tmp_path):
        store = create_pattern_store(f"sqlite://{tmp_path / 'x.db'}")
        assert isinstance(store, SQLitePatternStore)
        assert store.db_path == tmp_path / "x.db"
        store.close()

    def test_sqlite_db_path_kwarg(self, tmp_path):
        store = create_pattern_store("sqlite", db_path=str(tmp_path / "y.db"))
        assert store.db_path == tmp_path / "y.db"
        store.close()

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            create_pattern_store("mongodb://localhost")
