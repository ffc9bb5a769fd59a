"""
Round-trip validation against the database: passing tables, tampered rows,
multi-file tables and tables that cannot be validated.
"""

import pytest

from helpers import encode_utf16le_bom, npc_document, skill_rows_xml, table_document
from xml_sync.models import ValidationStatus
from xml_sync.validation.round_trip_validator import RoundTripValidator


@pytest.fixture
def validator(exporter, store, config_manager, tmp_path):
    return RoundTripValidator(exporter, store, config_manager, tmp_path / "scratch")


@pytest.fixture
def npc_fragments(source_dir):
    folder = source_dir / "npc_template"
    folder.mkdir()
    first = folder / "region_01.xml"
    second = folder / "region_02.xml"
    first.write_bytes(npc_document(1, [1, 2, 3]))
    second.write_bytes(npc_document(2, [4, 5]))
    return [first, second]


class TestTampering:

    def test_changed_row_fails_and_is_recorded(self, importer, make_skill_file, session, store, validator):
        importer.import_file(make_skill_file(rows=20), "skill", auto_infer=True)
        session.execute('UPDATE "skill" SET "name" = ? WHERE "_sync_row_id" = ?', ("Renamed", 3))

        summary = validator.validate_all()

        assert summary.failed == 1
        assert summary.failing_tables == ["skill"]
        mismatch = summary.mismatches[0]
        assert mismatch.table_name == "skill"
        assert mismatch.expected_hash != mismatch.actual_hash
        assert store.get("skill").last_validation_result == ValidationStatus.FAIL

    def test_change_to_dropped_field_still_passes(self, importer, make_skill_file, session, validator):
        importer.import_file(make_skill_file(rows=20), "skill", auto_infer=True)
        session.execute('UPDATE "skill" SET "__order_index" = 999')

        assert validator.validate_table("skill").passed == 1

    def test_deleted_row_fails(self, importer, make_skill_file, session, validator):
        importer.import_file(make_skill_file(rows=20), "skill", auto_infer=True)
        session.execute('DELETE FROM "skill" WHERE "_sync_row_id" = 20')

        assert validator.validate_table("skill").failed == 1

    def test_reimport_resets_failed_verdict(self, importer, make_skill_file, session, store, validator):
        source = make_skill_file(rows=20)
        importer.import_file(source, "skill", auto_infer=True)
        session.execute('UPDATE "skill" SET "level" = 0')
        validator.validate_table("skill")

        importer.import_file(source, "skill")

        assert store.get("skill").last_validation_result == ValidationStatus.NOT_VALIDATED
        assert validator.validate_table("skill").passed == 1


class TestMultiFragment:

    def test_fragments_are_written_back_separately(self, importer, exporter, npc_fragments, tmp_path):
        imported = importer.import_file(npc_fragments, "npc_template", auto_infer=True)
        assert imported.encoding == "UTF-8"
        assert imported.has_bom is False

        result = exporter.export_table("npc_template", destination=tmp_path / "out" / "npc_template")

        out = tmp_path / "out" / "npc_template"
        assert result.output_paths == [str(out / "region_01.xml"), str(out / "region_02.xml")]
        first = (out / "region_01.xml").read_text(encoding="utf-8")
        second = (out / "region_02.xml").read_text(encoding="utf-8")
        assert '<npcs region="1">' in first
        assert '<npc id="3">' in first and '<npc id="4">' not in first
        assert '<npcs region="2">' in second
        assert '<npc id="5">' in second and '<npc id="1">' not in second
        assert not (out / "region_01.xml").read_bytes().startswith(b"\xef\xbb\xbf")

    def test_fragment_layout_is_recorded(self, importer, npc_fragments, store):
        importer.import_file(npc_fragments, "npc_template", auto_infer=True)

        metadata = store.get("npc_template")
        assert metadata.fragment_names == ["region_01.xml", "region_02.xml"]
        assert metadata.fragments[1].root_attributes == {"region": "2"}

    def test_multi_fragment_round_trip(self, importer, npc_fragments, validator):
        importer.import_file(npc_fragments, "npc_template", auto_infer=True)

        assert validator.validate_table("npc_template").passed == 1


class TestAttributeRules:

    @pytest.fixture
    def attributed_skills(self, source_dir):
        body = skill_rows_xml(4)
        for i in range(1, 5):
            body = body.replace(f"    <__order_index>{i}</__order_index>\n", "")
            body = body.replace(f'<skill id="{i}" ',
                                f'<skill id="{i}" __order_index="{i + 100}" target_flying_restriction="0" ')
        path = source_dir / "skill.xml"
        path.write_bytes(encode_utf16le_bom(table_document("skills", body, 'version="3"')))
        return path

    def test_attribute_rules_apply_on_export(self, importer, exporter, attributed_skills, tmp_path):
        importer.import_file(attributed_skills, "skill", auto_infer=True)

        result = exporter.export_table("skill", destination=tmp_path / "out" / "skill")

        text = open(result.output_paths[0], "rb").read()[2:].decode("utf-16-le")
        assert text.count("<skill ") == 4
        assert "__order_index" not in text
        assert 'target_flying_restriction="0"' not in text
        assert text.count('target_flying_restriction="1"') == 4

    def test_attribute_rules_round_trip(self, importer, attributed_skills, session, validator):
        importer.import_file(attributed_skills, "skill", auto_infer=True)
        session.execute('UPDATE "skill" SET "_attr___order_index" = 999')

        assert validator.validate_table("skill").passed == 1


class TestNotValidated:

    def test_table_without_metadata(self, validator):
        summary = validator.validate_table("unknown")

        assert summary.not_validated == 1
        assert summary.passed == 0

    def test_missing_schema_is_a_failure_not_an_exception(self, importer, make_skill_file, config_manager,
                                                          validator):
        importer.import_file(make_skill_file(rows=5), "skill", auto_infer=True)
        (config_manager.schema_dir / "skill.json").unlink()
        config_manager.clear_cache()

        summary = validator.validate_all()

        assert summary.failed == 1
        assert "SchemaNotFoundError" in summary.mismatches[0].message

    def test_validate_selected_tables(self, importer, make_skill_file, npc_fragments, validator):
        importer.import_file(make_skill_file(rows=5), "skill", auto_infer=True)
        importer.import_file(npc_fragments, "npc_template", auto_infer=True)

        summary = validator.validate_all(["npc_template"])

        assert [r.table_name for r in summary.results] == ["npc_template"]
