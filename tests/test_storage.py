"""
Tests for storage.py and the session model's persisted shape.
"""

import json

import pytest

from pagemapper.models import ExtractionRecord, Fallback, FieldSpec, PageType, Session
from pagemapper.storage import SESSION_KEY, JsonFileStore, MemoryStore, SessionRepository


def _record(page="https://a.example/1", name="Title", content="x") -> ExtractionRecord:
    return ExtractionRecord(page=page, time="2025-01-01T00:00:00.000Z",
                            field_name=name, content=content, link="")


# ====================================================================
# 1. Stores
# ====================================================================

class TestMemoryStore:
    def test_missing_key(self):
        assert MemoryStore().load("nope") is None

    def test_values_are_copied(self):
        """Mutating a loaded value never changes what is stored."""
        store = MemoryStore()
        value = {"fields": [1]}
        store.save("k", value)
        value["fields"].append(2)
        loaded = store.load("k")
        loaded["fields"].append(3)
        assert store.load("k") == {"fields": [1]}


class TestJsonFileStore:
    def test_save_and_load(self, tmp_path):
        store = JsonFileStore(str(tmp_path / "state"))
        store.save(SESSION_KEY, {"id": "s1", "name": "Préis"})
        assert store.load(SESSION_KEY) == {"id": "s1", "name": "Préis"}
        assert (tmp_path / "state" / f"{SESSION_KEY}.json").exists()

    def test_no_temp_files_left(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        store.save("k", {"a": 1})
        store.save("k", {"a": 2})
        assert sorted(p.name for p in tmp_path.iterdir()) == ["k.json"]

    def test_corrupt_file_reads_as_missing(self, tmp_path):
        (tmp_path / "k.json").write_text("{not json", encoding="utf-8")
        assert JsonFileStore(str(tmp_path)).load("k") is None

    def test_unsafe_key_sanitised(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        store.save("../escape", {"a": 1})
        assert not (tmp_path.parent / "escape.json").exists()
        assert store.load("../escape") == {"a": 1}

    def test_delete(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        store.save("k", {"a": 1})
        store.delete("k")
        store.delete("k")
        assert store.load("k") is None


# ====================================================================
# 2. Repository
# ====================================================================

class TestSessionRepository:
    """Read-through cache with write-back on every mutation."""

    def test_get_creates_and_persists(self):
        store = MemoryStore()
        repo = SessionRepository(store)
        session = repo.get()
        assert session.fields == []
        assert store.load(SESSION_KEY)["id"] == session.id

    def test_get_is_cached(self):
        repo = SessionRepository()
        assert repo.get() is repo.get()

    def test_reload_from_store(self, tmp_path):
        store = JsonFileStore(str(tmp_path))
        repo = SessionRepository(store)
        repo.append_field(FieldSpec(row_id="row-1", field_name="Title", selector="h1"))
        again = SessionRepository(JsonFileStore(str(tmp_path))).get()
        assert again.id == repo.get().id
        assert again.find("row-1").selector == "h1"

    def test_append_field_upserts_by_row(self):
        repo = SessionRepository()
        repo.append_field(FieldSpec(row_id="row-1", selector="h1"))
        repo.append_field(FieldSpec(row_id="row-2", selector="h2"))
        repo.append_field(FieldSpec(row_id="row-1", selector="h3"))
        assert [f.selector for f in repo.get().fields] == ["h3", "h2"]

    def test_push_results_accumulates(self):
        repo = SessionRepository()
        assert repo.push_results_batch([_record(), _record(name="Price")]) == 2
        assert repo.push_results_batch([_record(page="https://a.example/2")]) == 3
        assert [r.page for r in repo.get_results()][-1] == "https://a.example/2"

    def test_clear_results(self):
        repo = SessionRepository()
        repo.push_results_batch([_record()])
        repo.clear_results()
        assert repo.get_results() == []

    def test_reset_new_identity(self):
        repo = SessionRepository()
        old = repo.get()
        repo.append_field(FieldSpec(row_id="row-1"))
        repo.push_results_batch([_record()])
        fresh = repo.reset()
        assert fresh.id != old.id
        assert fresh.fields == [] and fresh.results == []

    def test_reset_keep_results(self):
        repo = SessionRepository()
        repo.push_results_batch([_record()])
        fresh = repo.reset(keep_results=True)
        assert len(fresh.results) == 1

    def test_records_for_page(self):
        repo = SessionRepository()
        repo.append_field(FieldSpec(row_id="row-1", field_name="Title", content="Kettle"))
        records = repo.records_for("https://a.example/9")
        assert len(records) == 1
        assert records[0].page == "https://a.example/9"
        assert records[0].content == "Kettle"
        assert records[0].time.endswith("Z")


# ====================================================================
# 3. Persisted shape
# ====================================================================

class TestSessionShape:
    """camelCase keys; optional structured keys only when set."""

    def test_field_dict(self):
        spec = FieldSpec(row_id="row-1", id="f1", field_name="Price", selector="#p",
                         fallback=Fallback(structural="div > span", text_hint="9.99"))
        assert spec.to_dict() == {
            "id": "f1", "rowId": "row-1", "fieldName": "Price", "selector": "#p",
            "fallback": {"structural": "div > span", "textHint": "9.99"},
            "content": "", "link": "",
        }

    def test_structured_keys_round_trip(self):
        spec = FieldSpec(row_id="row-2", json_path=["props", "price"])
        data = json.loads(json.dumps(spec.to_dict()))
        assert data["jsonPath"] == ["props", "price"]
        assert "jsonKeys" not in data
        assert FieldSpec.from_dict(data).json_path == ["props", "price"]

    def test_unknown_page_type_defaults_to_product(self):
        session = Session.from_dict({"id": "s", "pageType": "blog"})
        assert session.page_type is PageType.PRODUCT

    @pytest.mark.parametrize("raw", [{}, {"fields": None, "results": "bad"}])
    def test_tolerates_missing_lists(self, raw):
        session = Session.from_dict(raw)
        assert session.fields == [] and session.results == []
        assert session.id
