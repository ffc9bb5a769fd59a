"""
Importer options: schema remediation, rewrite hooks, cancellation, progress
and encoding fallback on export.
"""

import threading

import pytest

from helpers import encode_utf16le_bom, skill_rows_xml, table_document
from xml_sync.exceptions import SchemaNotFoundError
from xml_sync.processing.job_coordinator import CancellationToken


class TestSchemaResolution:

    def test_missing_schema_raises_without_auto_infer(self, importer, make_skill_file, session):
        with pytest.raises(SchemaNotFoundError):
            importer.import_file(make_skill_file(rows=3), "skill")

        assert not session.table_exists("skill")

    def test_auto_infer_saves_contract_and_ddl(self, importer, make_skill_file, config_manager):
        importer.import_file(make_skill_file(rows=3), "skill", auto_infer=True)

        assert config_manager.list_table_schemas() == ["skill"]
        ddl = (config_manager.schema_dir / "skill.sql").read_text(encoding="utf-8")
        assert ddl.startswith('CREATE TABLE "skill"')
        schema = config_manager.load_table_schema("skill")
        assert schema.row_element_tag == "skill"
        assert schema.get_column("effects").max_length is None

    def test_uncoercible_value_is_reported_and_row_skipped(self, importer, make_skill_file, source_dir, session):
        importer.import_file(make_skill_file(rows=3), "skill", auto_infer=True)
        changed = source_dir / "skill_changed.xml"
        body = skill_rows_xml(1).replace("<level>2</level>", "<level>high</level>")
        changed.write_bytes(encode_utf16le_bom(table_document("skills", body, 'version="3"')))

        result = importer.import_file(changed, "skill")

        assert result.rows_imported == 0
        assert result.rows_skipped == 1
        assert result.row_errors[0].error_type == "ValueCoercionError"
        assert result.row_errors[0].column_name == "level"
        assert result.row_errors[1].error_type == "IntegrityError"
        assert session.query('SELECT COUNT(*) FROM "skill"') == [(0,)]

    @pytest.mark.parametrize("original, broken, column", [
        ("<level>3</level>", "<level>high</level>", "level"),
        ('<skill id="2" ', '<skill id="x" ', "_attr_id"),
    ])
    def test_bad_row_in_middle_of_batch_skips_only_that_row(self, importer, make_skill_file, source_dir,
                                                            session, original, broken, column):
        importer.import_file(make_skill_file(rows=3), "skill", auto_infer=True)
        changed = source_dir / "skill_changed.xml"
        changed.write_bytes(encode_utf16le_bom(table_document("skills", skill_rows_xml(3).replace(original, broken),
                                                              'version="3"')))

        result = importer.import_file(changed, "skill")

        assert result.rows_imported == 2
        assert result.rows_skipped == 1
        coercion = [e for e in result.row_errors if e.error_type == "ValueCoercionError"]
        assert [(e.row_index, e.column_name) for e in coercion] == [(2, column)]
        skipped = [e for e in result.row_errors if e.error_type != "ValueCoercionError"]
        assert [(e.row_index, e.error_type) for e in skipped] == [(2, "IntegrityError")]
        assert session.query('SELECT "_sync_row_id" FROM "skill" ORDER BY "_sync_row_id"') == [(1,), (3,)]


class TestRewriteHook:

    def test_hook_only_sees_selected_columns(self, importer, make_skill_file, session):
        seen = set()

        def hook(raw, column):
            seen.add(column)
            return raw.upper()

        importer.import_file(make_skill_file(rows=3), "skill", columns=["name"], rewrite_hook=hook,
                             auto_infer=True)

        assert seen == {"name"}
        assert session.query('SELECT "name", "level" FROM "skill" ORDER BY "_sync_row_id"') == [
            ("SKILL 1", 2), ("SKILL 2", 3), ("SKILL 3", 4),
        ]

    def test_longer_rewritten_values_widen_the_column(self, importer, make_skill_file, config_manager):
        result = importer.import_file(make_skill_file(rows=3), "skill", columns=["name"],
                                      rewrite_hook=lambda raw, column: raw + " (translated)" * 3,
                                      auto_infer=True)

        assert result.rows_imported == 3
        assert result.widened_columns == {"name": 46}
        config_manager.clear_cache()
        assert config_manager.load_table_schema("skill").get_column("name").max_length == 46


class TestJobControl:

    def test_cancelled_import_records_nothing(self, importer, make_skill_file, store):
        token = CancellationToken()
        token.cancel()

        result = importer.import_file(make_skill_file(rows=3), "skill", auto_infer=True, cancel_token=token)

        assert result.cancelled
        assert not result.success
        assert result.rows_imported == 0
        assert store.get("skill") is None

    def test_progress_reports_rows(self, importer, make_skill_file, exporter, tmp_path):
        importer.config.batch_size = 200
        calls = []

        importer.import_file(make_skill_file(rows=500), "skill", auto_infer=True,
                             progress=lambda current, total, label: calls.append((current, total, label)))

        assert calls == [(200, 500, "skill"), (400, 500, "skill"), (500, 500, "skill")]

        exported = []
        exporter.export_table("skill", destination=tmp_path / "out" / "skill",
                              progress=lambda current, total, label: exported.append(current))
        assert exported[-1] == 500

    def test_export_during_reimport_sees_whole_table(self, importer, exporter, make_skill_file, tmp_path):
        source = make_skill_file(rows=50)
        importer.import_file(source, "skill", auto_infer=True)
        importer.config.batch_size = 10
        exports = []
        workers = []

        def start_export(current, total, label):
            if not workers:
                worker = threading.Thread(target=lambda: exports.append(
                    exporter.export_table("skill", destination=tmp_path / "out" / "skill")))
                worker.start()
                workers.append(worker)

        result = importer.import_file(source, "skill", progress=start_export)
        workers[0].join(timeout=30)

        assert result.rows_imported == 50
        assert exports[0].rows_exported == 50
        text = open(exports[0].output_paths[0], "rb").read()[2:].decode("utf-16-le")
        assert text.count("<skill ") == 50

    def test_export_pages_through_rows(self, importer, exporter, make_skill_file, tmp_path):
        importer.import_file(make_skill_file(rows=25), "skill", auto_infer=True)
        exporter.config.batch_size = 7

        result = exporter.export_table("skill", destination=tmp_path / "out" / "skill")

        assert result.rows_exported == 25
        text = open(result.output_paths[0], "rb").read()[2:].decode("utf-16-le")
        assert text.count("<skill ") == 25

    def test_partitions_are_isolated(self, importer, exporter, make_skill_file, session, store, tmp_path):
        importer.import_file(make_skill_file(rows=5), "skill", partition_key="1", auto_infer=True)
        importer.import_file(make_skill_file(rows=8, name="skill_2.xml"), "skill", partition_key="2")

        assert session.query('SELECT COUNT(*) FROM "skill" WHERE "_sync_partition" = ?', ("1",)) == [(5,)]
        assert store.list_partitions("skill") == ["1", "2"]

        result = exporter.export_table("skill", "2", destination=tmp_path / "out" / "2" / "skill")
        assert result.rows_exported == 8


class TestEncodingFallback:

    def test_export_without_metadata_uses_table_history(self, importer, exporter, make_skill_file, store,
                                                        tmp_path):
        importer.import_file(make_skill_file(rows=3), "skill", partition_key="1", auto_infer=True)
        importer.import_file(make_skill_file(rows=3, name="skill_2.xml"), "skill", partition_key="2")
        store.delete("skill", "2")

        result = exporter.export_table("skill", "2", destination=tmp_path / "out" / "skill")

        assert (result.encoding, result.has_bom) == ("UTF-16LE", True)
        assert open(result.output_paths[0], "rb").read()[:2] == b"\xff\xfe"
        assert store.get("skill", "2").export_count == 1
