"""
End-to-end runs of the command-line entry point against a SQLite file.
"""

import sqlite3

import pytest

from xml_sync import cli


@pytest.fixture
def run(monkeypatch, tmp_path):
    monkeypatch.setattr(cli, "configure_logging", lambda level, log_file=None: None)
    monkeypatch.setenv("XML_SYNC_DB_PATH", str(tmp_path / "sync.db"))
    base = tmp_path / "workspace"

    def invoke(*args):
        return cli.main(["--config-path", str(base), *args])
    invoke.base = base
    return invoke


def test_import_export_validate(run, make_skill_file, tmp_path, capsys):
    source = make_skill_file(rows=20)

    assert run("import", str(source), "--auto-infer") == 0
    assert "skill: imported 20/20 rows" in capsys.readouterr().out

    assert run("export", "--dest", str(tmp_path / "out")) == 0
    assert (tmp_path / "out" / "skill.xml").read_bytes()[:2] == b"\xff\xfe"

    assert run("validate") == 0
    assert "1 passed, 0 failed" in capsys.readouterr().out


def test_import_without_schema_fails(run, make_skill_file, capsys):
    assert run("import", str(make_skill_file(rows=2))) == 1
    assert "SchemaNotFoundError" in capsys.readouterr().out


def test_empty_file_is_reported(run, source_dir, capsys):
    empty = source_dir / "skill.xml"
    empty.write_bytes(b"")

    assert run("import", str(empty), "--auto-infer") == 1
    assert "EmptySourceError" in capsys.readouterr().out


def test_directory_import_and_stats(run, make_skill_file, source_dir, capsys):
    make_skill_file(rows=5)
    make_skill_file(rows=5, name="magic_skill.xml")

    assert run("import", str(source_dir), "--auto-infer", "--workers", "1") == 0
    assert "2/2 succeeded" in capsys.readouterr().out

    assert run("stats") == 0
    out = capsys.readouterr().out
    assert "Catalog entries: 2 (2 with BOM)" in out
    assert "UTF-16LE: 2" in out


def test_infer_writes_contract(run, make_skill_file, capsys):
    source = make_skill_file(rows=3)

    assert run("infer", str(source)) == 0

    out = capsys.readouterr().out
    assert "skill: <skills>/<skill>" in out
    assert 'CREATE TABLE "skill"' in out
    assert (run.base / "config" / "schemas" / "skill.json").is_file()


def test_cleanup_removes_orphans(run, make_skill_file, capsys):
    assert run("import", str(make_skill_file(rows=2)), "--auto-infer") == 0
    capsys.readouterr()

    assert run("cleanup") == 0
    assert "Removed orphaned metadata for 0 table(s)" in capsys.readouterr().out


def test_backfill_after_lost_catalog(run, make_skill_file, source_dir, tmp_path, capsys):
    assert run("import", str(make_skill_file(rows=4)), "--auto-infer") == 0
    with sqlite3.connect(str(tmp_path / "sync.db")) as connection:
        connection.execute("DELETE FROM file_encoding_metadata")
    capsys.readouterr()

    assert run("backfill", str(source_dir)) == 0
    assert "1 migrated" in capsys.readouterr().out
