"""
Tests for the file_encoding_metadata catalog on an in-memory SQLite database.
"""

import threading

from xml_sync.models import EncodingMetadata, FragmentLayout, ValidationStatus


class TestRecordImport:

    def test_first_import_creates_row(self, store):
        metadata = store.record_import("skill", "", "UTF-16LE", True, "abc123",
                                       [FragmentLayout("skill.xml", {"version": "3"})])

        assert metadata.original_encoding == "UTF-16LE"
        assert metadata.has_bom is True
        assert metadata.import_count == 1
        assert metadata.export_count == 0
        assert metadata.original_content_hash == "abc123"
        assert metadata.last_import_time is not None
        assert metadata.fragments == [FragmentLayout("skill.xml", {"version": "3"})]
        assert metadata.last_validation_result == ValidationStatus.NOT_VALIDATED

    def test_reimport_increments_and_resets_validation(self, store):
        store.record_import("skill", "", "UTF-16LE", True, "first")
        store.record_validation("skill", "", ValidationStatus.PASS)

        metadata = store.record_import("skill", "", "UTF-8", False, "second")

        assert metadata.import_count == 2
        assert metadata.original_encoding == "UTF-8"
        assert metadata.has_bom is False
        assert metadata.original_content_hash == "second"
        assert metadata.last_validation_result == ValidationStatus.NOT_VALIDATED

    def test_partitions_are_independent(self, store):
        store.record_import("npc", "1", "UTF-16LE", True, "a")
        store.record_import("npc", "2", "UTF-8", False, "b")
        store.record_import("npc", "2", "UTF-8", False, "b")

        assert store.get("npc", "1").import_count == 1
        assert store.get("npc", "2").import_count == 2
        assert store.get("npc") is None
        assert store.list_partitions("npc") == ["1", "2"]

    def test_concurrent_imports_do_not_lose_counts(self, store):
        store.record_import("skill", "", "UTF-16LE", True, "h")

        def work():
            for _ in range(10):
                store.record_import("skill", "", "UTF-16LE", True, "h")

        threads = [threading.Thread(target=work) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert store.get("skill").import_count == 41


class TestRecordExport:

    def test_export_increments_counter(self, store):
        store.record_import("skill", "", "UTF-16LE", True, "h")

        store.record_export("skill")
        metadata = store.record_export("skill")

        assert metadata.export_count == 2
        assert metadata.import_count == 1
        assert metadata.last_export_time is not None

    def test_export_without_import_uses_written_encoding(self, store):
        metadata = store.record_export("quest", "", "UTF-8", False)

        assert metadata.export_count == 1
        assert metadata.import_count == 0
        assert metadata.original_encoding == "UTF-8"
        assert metadata.has_bom is False
        assert metadata.original_content_hash is None

    def test_export_without_import_defaults(self, store):
        metadata = store.record_export("quest")

        assert metadata.original_encoding == "UTF-16LE"
        assert metadata.has_bom is True


class TestCatalogMaintenance:

    def test_validation_status(self, store):
        store.record_import("skill", "", "UTF-16LE", True, "h")

        store.record_validation("skill", "", ValidationStatus.FAIL)
        assert store.get("skill").last_validation_result == ValidationStatus.FAIL

        store.record_validation("skill", "", ValidationStatus.NOT_VALIDATED)
        assert store.get("skill").last_validation_result == ValidationStatus.NOT_VALIDATED

    def test_upsert_keeps_given_counters(self, store):
        store.upsert(EncodingMetadata("item", "", "UTF-8", False, "h", import_count=3,
                                      fragments=[FragmentLayout("a.xml"), FragmentLayout("b.xml")]))

        metadata = store.get("item")
        assert metadata.import_count == 3
        assert metadata.fragment_names == ["a.xml", "b.xml"]
        assert metadata.is_multi_fragment

    def test_cleanup_orphans(self, store, session):
        session.execute('CREATE TABLE "skill" ("x" INTEGER)')
        store.record_import("skill", "", "UTF-16LE", True, "h")
        store.record_import("gone", "", "UTF-16LE", True, "h")
        store.record_import("gone", "7", "UTF-16LE", True, "h")

        removed = store.cleanup_orphans()

        assert removed == ["gone"]
        assert [m.table_name for m in store.list_all()] == ["skill"]

    def test_delete_single_partition(self, store):
        store.record_import("npc", "1", "UTF-8", False, "h")
        store.record_import("npc", "2", "UTF-8", False, "h")

        assert store.delete("npc", "1") == 1
        assert store.list_partitions("npc") == ["2"]

    def test_most_common_encoding(self, store):
        store.record_import("npc", "1", "UTF-8", False, "h")
        store.record_import("npc", "2", "UTF-16LE", True, "h")
        store.record_import("npc", "3", "UTF-16LE", True, "h")

        assert store.most_common_encoding("npc") == ("UTF-16LE", True)
        assert store.most_common_encoding("unknown") is None

    def test_statistics(self, store):
        store.record_import("a", "", "UTF-16LE", True, "h")
        store.record_import("b", "", "UTF-8", False, "h")
        store.record_validation("a", "", ValidationStatus.PASS)

        stats = store.encoding_statistics()

        assert stats.total_entries == 2
        assert stats.with_bom == 1
        assert stats.by_encoding == {"UTF-16LE": 1, "UTF-8": 1}
        assert stats.by_validation == {"PASS": 1, "NOT_VALIDATED": 1}
        assert "Catalog entries: 2" in stats.summary()

    def test_serialized_lock_is_per_key(self, store):
        assert store.lock_for("skill", "") is store.lock_for("skill")
        assert store.lock_for("skill", "1") is not store.lock_for("skill", "")
