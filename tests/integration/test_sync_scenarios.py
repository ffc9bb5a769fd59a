"""
End-to-end sync of a legacy UTF-16LE skill table: import, export, validate,
server compatibility corrections and empty-source handling.
"""

import codecs

import pytest

from xml_sync.exceptions import EmptySourceError
from xml_sync.models import ValidationStatus
from xml_sync.processing.batch_runner import BatchRunner
from xml_sync.validation.round_trip_validator import RoundTripValidator


def exported_text(path):
    data = open(path, "rb").read()
    assert data.startswith(codecs.BOM_UTF16_LE)
    return data[len(codecs.BOM_UTF16_LE):].decode("utf-16-le")


@pytest.fixture
def imported_skill(importer, make_skill_file):
    source = make_skill_file(rows=500)
    result = importer.import_file(source, "skill", auto_infer=True)
    return source, result


class TestImport:

    def test_utf16le_table_is_imported_with_metadata(self, imported_skill, store, session):
        _, result = imported_skill

        assert result.success
        assert result.rows_total == 500
        assert result.rows_imported == 500
        assert result.row_errors == []
        assert (result.encoding, result.has_bom) == ("UTF-16LE", True)

        metadata = store.get("skill")
        assert metadata.original_encoding == "UTF-16LE"
        assert metadata.has_bom is True
        assert metadata.import_count == 1
        assert metadata.original_content_hash == result.content_hash
        assert metadata.fragments[0].root_attributes == {"version": "3"}
        assert session.query('SELECT COUNT(*) FROM "skill"')[0][0] == 500

    def test_database_keeps_unfiltered_values(self, imported_skill, session):
        rows = session.query(
            'SELECT "target_flying_restriction", "__order_index" FROM "skill" WHERE "_sync_row_id" = 2'
        )

        assert rows == [(0, 2)]

    def test_reimport_replaces_rows(self, imported_skill, importer, store, session):
        source, _ = imported_skill

        importer.import_file(source, "skill")

        assert session.query('SELECT COUNT(*) FROM "skill"')[0][0] == 500
        assert store.get("skill").import_count == 2


class TestExport:

    def test_export_keeps_encoding_and_bom(self, imported_skill, exporter, store, tmp_path):
        result = exporter.export_table("skill", destination=tmp_path / "out" / "skill")

        assert result.output_paths == [str(tmp_path / "out" / "skill.xml")]
        assert (result.encoding, result.has_bom) == ("UTF-16LE", True)
        assert open(result.output_paths[0], "rb").read()[:2] == b"\xff\xfe"
        assert store.get("skill").export_count == 1
        assert store.get("skill").import_count == 1

    def test_export_applies_server_corrections(self, imported_skill, exporter, tmp_path):
        result = exporter.export_table("skill", destination=tmp_path / "out" / "skill")
        text = exported_text(result.output_paths[0])

        assert '<?xml version="1.0" encoding="UTF-16"?>' in text
        assert '<skills version="3">' in text
        assert "<target_flying_restriction>0</target_flying_restriction>" not in text
        assert text.count("<target_flying_restriction>1</target_flying_restriction>") == 500
        assert "__order_index" not in text
        assert result.fields_corrected == 250
        assert result.fields_dropped == 500

    def test_export_restores_row_shape(self, imported_skill, exporter, tmp_path):
        result = exporter.export_table("skill", destination=tmp_path / "out" / "skill")
        text = exported_text(result.output_paths[0])

        assert '<skill id="7" type="active">' in text
        assert "<name>Skill 7</name>" in text
        assert "<cooldown>3.5</cooldown>" in text
        assert '<effect kind="damage">70</effect>' in text
        assert text.index('<skill id="1" ') < text.index('<skill id="2" ') < text.index('<skill id="500" ')

    def test_default_destination(self, imported_skill, exporter, config_manager):
        result = exporter.export_table("skill")

        assert result.output_paths == [str(config_manager.export_dir / "skill.xml")]


class TestValidate:

    def test_round_trip_passes(self, imported_skill, exporter, store, config_manager, tmp_path):
        validator = RoundTripValidator(exporter, store, config_manager, tmp_path / "scratch")

        summary = validator.validate_table("skill")

        assert summary.passed == 1
        assert summary.failed == 0
        assert summary.mismatches == []
        assert store.get("skill").last_validation_result == ValidationStatus.PASS
        assert store.get("skill").export_count == 0
        assert not any((tmp_path / "scratch").iterdir())


class TestEmptySource:

    def test_empty_file_fails_without_touching_metadata(self, importer, source_dir, store):
        empty = source_dir / "skill.xml"
        empty.write_bytes(b"")

        with pytest.raises(EmptySourceError):
            importer.import_file(empty, "skill", auto_infer=True)

        assert store.get("skill") is None

    def test_empty_file_in_batch_is_one_failure(self, imported_skill, importer, exporter, store, session):
        source, first = imported_skill
        source.write_bytes(b"")

        result = BatchRunner(importer, exporter).import_directory(source.parent)

        assert result.succeeded == []
        assert len(result.failed_items) == 1
        assert result.failed_items[0]["identifier"] == "skill"
        assert result.failed_items[0]["error_type"] == "EmptySourceError"
        metadata = store.get("skill")
        assert metadata.import_count == 1
        assert metadata.original_content_hash == first.content_hash
        assert session.query('SELECT COUNT(*) FROM "skill"')[0][0] == 500
