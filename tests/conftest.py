"""
Shared fixtures: an in-memory SQLite session, a ConfigManager rooted in a
temporary directory, and builders for UTF-16LE server table files.
"""

import pytest

from helpers import encode_utf16le_bom, skill_rows_xml, table_document
from xml_sync.config.config_manager import ConfigManager, reset_config_manager
from xml_sync.database.metadata_store import EncodingMetadataStore
from xml_sync.database.session import DatabaseSession
from xml_sync.processing.exporter import XmlExporter
from xml_sync.processing.importer import XmlImporter
from xml_sync.validation.field_filter import FieldCompatibilityFilter


ENV_VARS = (
    "XML_SYNC_CONNECTION_STRING",
    "XML_SYNC_DB_PATH",
    "XML_SYNC_DB_SCHEMA_PREFIX",
    "XML_SYNC_SCHEMA_PATH",
    "XML_SYNC_RULES_PATH",
    "XML_SYNC_EXPORT_PATH",
    "XML_SYNC_SCRATCH_PATH",
    "XML_SYNC_BATCH_SIZE",
    "XML_SYNC_WORKERS",
    "XML_SYNC_MAX_WIDENINGS",
    "XML_SYNC_VARCHAR_HEADROOM",
    "XML_SYNC_MAX_VARCHAR_LENGTH",
    "XML_SYNC_SAMPLE_LIMIT",
    "XML_SYNC_CONFIG_PATH",
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Every test runs against SQLite with no configuration leaking in from the shell."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XML_SYNC_DB_DIALECT", "sqlite")
    reset_config_manager()
    yield
    reset_config_manager()


@pytest.fixture
def session():
    db = DatabaseSession.sqlite()
    yield db
    db.close()


@pytest.fixture
def config_manager(tmp_path):
    return ConfigManager(tmp_path)


@pytest.fixture
def store(session):
    return EncodingMetadataStore(session)


@pytest.fixture
def field_filter():
    return FieldCompatibilityFilter()


@pytest.fixture
def importer(session, store, config_manager, field_filter):
    return XmlImporter(session, store, config_manager, field_filter=field_filter)


@pytest.fixture
def exporter(session, store, config_manager, field_filter, importer):
    return XmlExporter(session, store, config_manager, field_filter, importer.detector)


@pytest.fixture
def source_dir(tmp_path):
    path = tmp_path / "source"
    path.mkdir()
    return path


@pytest.fixture
def make_skill_file(source_dir):
    """Write a UTF-16LE skill table with a BOM and return its path."""
    def build(rows=500, name="skill.xml", directory=None, root_attributes='version="3"'):
        target_dir = directory or source_dir
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        text = table_document("skills", skill_rows_xml(rows), root_attributes)
        path.write_bytes(encode_utf16le_bom(text))
        return path
    return build
