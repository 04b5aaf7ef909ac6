"""
tests/test_memory_store.py

Pytest unit tests for the in-process storage implementations.
"""

from __future__ import annotations

import threading

import pytest

from app.domain.survey import ColumnTemplate, EntityKind, SourceEntry, VariableIndexEntry
from app.errors import ConflictError, NotFoundError
from tests.conftest import make_row


def _register(store, survey_id: str = "s1") -> None:
    store.register_survey(survey_id=survey_id, name="Survey", survey_source="SourceA", year=2024)


class TestSurveyStore:
    def test_unknown_survey_raises_not_found(self, row_store) -> None:
        with pytest.raises(NotFoundError) as ctx:
            row_store.content_hash("missing")
        assert ctx.value.to_dict()["identifier"] == "missing"
        with pytest.raises(NotFoundError):
            list(row_store.iter_row_batches("missing", 10))

    def test_content_hash_ignores_row_order(self, row_store) -> None:
        rows = [make_row(specialty=name) for name in ("Cardiology", "Dermatology", "Urology")]
        _register(row_store, "a")
        _register(row_store, "b")
        row_store.append_rows("a", rows)
        row_store.append_rows("b", list(reversed(rows)))

        assert row_store.content_hash("a") == row_store.content_hash("b")

    def test_content_hash_changes_when_rows_change(self, row_store) -> None:
        _register(row_store)
        row_store.append_rows("s1", [make_row()])
        before = row_store.content_hash("s1")

        row_store.append_rows("s1", [make_row(variable="work_rvus", p50=7_000.0, p25=None, p75=None, p90=None)])

        assert row_store.content_hash("s1") != before

    def test_duplicate_rows_count_toward_the_hash(self, row_store) -> None:
        _register(row_store, "a")
        _register(row_store, "b")
        row_store.append_rows("a", [make_row()])
        row_store.append_rows("b", [make_row(), make_row()])

        assert row_store.content_hash("a") != row_store.content_hash("b")

    def test_iter_row_batches(self, row_store) -> None:
        _register(row_store)
        row_store.append_rows("s1", [make_row(n_orgs=index) for index in range(5)])

        batches = list(row_store.iter_row_batches("s1", 2))

        assert [len(batch) for batch in batches] == [2, 2, 1]
        assert [row.n_orgs for batch in batches for row in batch] == [0, 1, 2, 3, 4]

    def test_has_survey(self, row_store) -> None:
        _register(row_store, "a")

        assert row_store.has_survey("a")
        assert not row_store.has_survey("c")


class TestMappingStore:
    def test_concurrent_conflicting_learns_keep_one_winner(self, mapping_store) -> None:
        results: list[str] = []
        conflicts: list[ConflictError] = []
        barrier = threading.Barrier(2)

        def learn(name: str) -> None:
            barrier.wait()
            try:
                mapping = mapping_store.append_mapping_entry(
                    EntityKind.PROVIDER_TYPE,
                    name,
                    SourceEntry(survey_source="SourceX", raw_value="APP"),
                )
                results.append(mapping.standardized_name)
            except ConflictError as exc:
                conflicts.append(exc)

        threads = [
            threading.Thread(target=learn, args=(name,))
            for name in ("Advanced Practice Provider", "Physician")
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 1
        assert len(conflicts) == 1
        table = mapping_store.get_mapping_table(EntityKind.PROVIDER_TYPE)
        assert table.lookup("SourceX", "APP") == results[0]

    def test_column_templates_are_keyed_case_insensitively(self, mapping_store) -> None:
        saved = mapping_store.save_column_template(
            ColumnTemplate(survey_source="SourceA", field_mapping={"specialty": "Spec"})
        )

        loaded = mapping_store.get_column_template(" sourcea ")

        assert loaded == saved
        assert loaded.updated_at is not None
        assert mapping_store.get_column_template("SourceB") is None


class TestVariableIndexCache:
    def test_entry_is_valid_only_for_its_hash(self, index_cache) -> None:
        index_cache.put(VariableIndexEntry(survey_id="s1", variables=frozenset({"tcc"}), content_hash="h1"))

        assert index_cache.get("s1", "h1").variables == frozenset({"tcc"})
        assert index_cache.get("s1", "h2") is None

        index_cache.put(VariableIndexEntry(survey_id="s1", variables=frozenset({"wrvu"}), content_hash="h2"))

        assert index_cache.get("s1", "h1") is None
        assert len(index_cache) == 1
