"""
Tests for schema inference and the exact-text type lattice.
"""

import unittest
from datetime import datetime

import pytest

from xml_sync.database.dialects import SQLiteDialect, SqlServerDialect
from xml_sync.exceptions import SchemaInferenceError, ValueCoercionError
from xml_sync.models import ColumnDef, ColumnSource, DataType, ProcessingConfig
from xml_sync.schema.schema_inferencer import SchemaInferencer, utf16_length
from xml_sync.schema.value_types import (
    from_db_value,
    match_datetime_format,
    parse_float,
    parse_integer,
    to_typed_value,
)


def rows_document(*rows, root="items", row="item"):
    body = "".join(f"<{row}{attrs}>{children}</{row}>" for attrs, children in rows)
    return f"<{root}>{body}</{root}>".encode("utf-8")


class TestValueTypes(unittest.TestCase):

    def test_integer_requires_canonical_text(self):
        self.assertEqual(parse_integer("42"), 42)
        self.assertEqual(parse_integer("-7"), -7)
        self.assertIsNone(parse_integer("007"))
        self.assertIsNone(parse_integer("+1"))
        self.assertIsNone(parse_integer("1.0"))
        self.assertIsNone(parse_integer("3000000000"))

    def test_float_requires_exact_rendering(self):
        self.assertEqual(parse_float("0.5"), 0.5)
        self.assertEqual(parse_float("12"), 12.0)
        self.assertIsNone(parse_float("1.0"))
        self.assertIsNone(parse_float("1e5"))
        self.assertIsNone(parse_float("0.50"))

    def test_datetime_format_detection(self):
        self.assertEqual(match_datetime_format("2024-03-01 12:30:00"), "%Y-%m-%d %H:%M:%S")
        self.assertEqual(match_datetime_format("2024/03/01"), "%Y/%m/%d")
        self.assertIsNone(match_datetime_format("2024-3-1"))
        self.assertIsNone(match_datetime_format("yesterday"))

    def test_typed_value_round_trip_text(self):
        column = ColumnDef("when", DataType.DATETIME, datetime_format="%Y-%m-%d %H:%M")
        value = to_typed_value(column, "2024-03-01 08:05")

        self.assertEqual(value.to_xml_text(), "2024-03-01 08:05")
        self.assertEqual(from_db_value(column, "2024-03-01 08:05:00").to_xml_text(), "2024-03-01 08:05")

    def test_null_and_coercion_failure(self):
        column = ColumnDef("level", DataType.INTEGER)

        self.assertTrue(to_typed_value(column, None).is_null)
        with self.assertRaises(ValueCoercionError):
            to_typed_value(column, "high")

    def test_from_db_value(self):
        self.assertEqual(from_db_value(ColumnDef("f", DataType.FLOAT), 2.0).to_xml_text(), "2")
        self.assertEqual(from_db_value(ColumnDef("i", DataType.INTEGER), 5).to_xml_text(), "5")
        self.assertTrue(from_db_value(ColumnDef("t", DataType.VARCHAR), None).is_null)


class TestSchemaInferencer:

    @pytest.fixture
    def inferencer(self):
        return SchemaInferencer(ProcessingConfig())

    def test_infers_types_per_column(self, inferencer):
        raw = rows_document(
            (' id="1"', "<level>3</level><rate>0.5</rate><name>Fire</name><at>2024-01-01</at>"),
            (' id="2"', "<level>10</level><rate>2</rate><name>Ice</name><at>2024-02-15</at>"),
        )

        schema = inferencer.infer("item", [raw])

        assert schema.root_element_tag == "items"
        assert schema.row_element_tag == "item"
        types = {c.name: c.inferred_type for c in schema.columns}
        assert types == {
            "_attr_id": DataType.INTEGER,
            "level": DataType.INTEGER,
            "rate": DataType.FLOAT,
            "name": DataType.VARCHAR,
            "at": DataType.DATETIME,
        }
        assert schema.get_column("_attr_id").source == ColumnSource.ATTRIBUTE
        assert schema.get_column("at").datetime_format == "%Y-%m-%d"

    def test_any_non_numeric_value_falls_back_to_varchar(self, inferencer):
        raw = rows_document(("", "<level>1</level>"), ("", "<level>1a</level>"), ("", "<level>3</level>"))

        column = inferencer.infer("item", [raw]).get_column("level")

        assert column.inferred_type == DataType.VARCHAR

    def test_empty_value_makes_column_text(self, inferencer):
        raw = rows_document(("", "<level>1</level>"), ("", "<level></level>"))

        column = inferencer.infer("item", [raw]).get_column("level")
        assert column.inferred_type == DataType.VARCHAR
        assert column.nullable is True

    def test_varchar_length_has_headroom_and_floor(self, inferencer):
        raw = rows_document(("", "<name>abcdefghij</name>"), ("", "<name>ab</name>"))

        assert inferencer.infer("item", [raw]).get_column("name").max_length == 20
        assert inferencer.varchar_length(3) == 16
        assert inferencer.varchar_length(2001) is None

    def test_length_counts_utf16_units(self):
        assert utf16_length("abc") == 3
        assert utf16_length("𝄞") == 2

    def test_nullability(self, inferencer):
        raw = rows_document(
            ("", "<a>1</a><b>x</b><c null=\"true\"/>"),
            ("", "<a>2</a><c>5</c>"),
        )

        schema = inferencer.infer("item", [raw])

        assert schema.get_column("a").nullable is False
        assert schema.get_column("b").nullable is True
        assert schema.get_column("c").nullable is True
        assert schema.get_column("c").inferred_type == DataType.INTEGER

    def test_structured_children_become_fragment(self, inferencer):
        raw = rows_document(
            ("", "<drops><drop id=\"1\"/><drop id=\"2\"/></drops><tag>a</tag><tag>b</tag>"),
            ("", "<drops>none</drops><tag>c</tag>"),
        )

        schema = inferencer.infer("item", [raw])

        drops = schema.get_column("drops")
        assert drops.source == ColumnSource.FRAGMENT
        assert drops.inferred_type == DataType.VARCHAR
        assert drops.max_length is None
        assert schema.get_column("tag").source == ColumnSource.FRAGMENT

    def test_row_tag_is_most_frequent_child(self, inferencer):
        raw = b"<npcs><header>x</header><npc><id>1</id></npc><npc><id>2</id></npc></npcs>"

        assert inferencer.infer("npc", [raw]).row_element_tag == "npc"

    def test_multiple_samples_merge(self, inferencer):
        first = rows_document(("", "<a>1</a>"))
        second = rows_document(("", "<a>2</a><b>new</b>"))

        schema = inferencer.infer("item", [first, second])

        assert schema.column_names == ["a", "b"]
        assert schema.get_column("b").nullable is True

    def test_no_rows_raises(self, inferencer):
        with pytest.raises(SchemaInferenceError):
            inferencer.infer("item", [b"<items/>"])

    def test_no_documents_raises(self, inferencer):
        with pytest.raises(SchemaInferenceError):
            inferencer.infer("item", [])

    def test_malformed_document_raises(self, inferencer):
        with pytest.raises(SchemaInferenceError):
            inferencer.infer("item", [b"<items><item>"])

    def test_disagreeing_roots_raise(self, inferencer):
        with pytest.raises(SchemaInferenceError):
            inferencer.infer("item", [rows_document(("", "<a>1</a>")), rows_document(("", "<a>1</a>"), root="x")])

    def test_generate_ddl(self, inferencer):
        schema = inferencer.infer("item", [rows_document(("", "<a>1</a><b>text</b>"))])

        sqlite_ddl = inferencer.generate_ddl(schema, SQLiteDialect())
        mssql_ddl = inferencer.generate_ddl(schema, SqlServerDialect(), "dbo")

        assert sqlite_ddl.startswith('CREATE TABLE "item"')
        assert '"a" INTEGER NOT NULL' in sqlite_ddl
        assert 'PRIMARY KEY ("_sync_partition", "_sync_row_id")' in sqlite_ddl
        assert "CREATE TABLE [dbo].[item]" in mssql_ddl
        assert "[b] NVARCHAR(16) NOT NULL" in mssql_ddl

    def test_ensure_table(self, inferencer, session):
        schema = inferencer.infer("item", [rows_document(("", "<a>1</a>"))])

        assert inferencer.ensure_table(session, schema) is True
        assert inferencer.ensure_table(session, schema) is False
        assert session.table_exists("item")

    def test_infer_from_files_samples(self, tmp_path):
        inferencer = SchemaInferencer(ProcessingConfig(sample_limit=1))
        paths = []
        for i in range(3):
            path = tmp_path / f"part{i}.xml"
            path.write_bytes(rows_document(("", f"<a>{i}</a><only{i}>x</only{i}>")))
            paths.append(path)

        schema = inferencer.infer_from_files("item", paths)

        assert schema.column_names == ["a", "only0"]
