"""
Encoding metadata backfill.

Tables imported before the encoding catalog existed have no record of how
their source files were encoded, so they would be exported with the
fallback encoding. The backfill re-detects encoding, BOM and content hash
from the original files on disk and writes the missing catalog rows.

Source layout (the same one the exporter writes):
- ``<source_dir>/<table>.xml`` for single-file tables
- ``<source_dir>/<table>/*.xml`` for multi-file tables
- ``<source_dir>/<partition>/<table>.xml`` for partitioned tables
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Union

from ..config.config_manager import ConfigManager
from ..encoding.content_hasher import ContentHasher
from ..encoding.encoding_detector import EncodingDetector
from ..exceptions import XMLSyncError
from ..models import EncodingMetadata, FragmentLayout, MigrationResult
from ..parsing.xml_parser import XMLParser
from .metadata_store import EncodingMetadataStore


def find_source_files(source_dir: Union[str, Path], table_name: str, partition_key: str = "") -> List[Path]:
    """Original file(s) of a table, in fragment order; empty when nothing is found."""
    base = Path(source_dir) / partition_key if partition_key else Path(source_dir)
    single = base / f"{table_name}.xml"
    if single.is_file():
        return [single]
    folder = base / table_name
    if folder.is_dir():
        return sorted(p for p in folder.iterdir() if p.is_file() and p.suffix.lower() == ".xml")
    return []


class MetadataBackfillMigration:
    """
    Writes catalog rows for tables that have data but no encoding metadata.

    Args:
        store: Target encoding metadata store
        config_manager: Lists the known table schemas
        field_filter: Filter whose view of the rows is hashed, as on import
    """

    def __init__(self, store: EncodingMetadataStore, config_manager: ConfigManager, field_filter=None,
                 detector: Optional[EncodingDetector] = None):
        self.logger = logging.getLogger(__name__)
        self.store = store
        self.session = store.session
        self.config_manager = config_manager
        self.parser = XMLParser(detector or EncodingDetector())
        self.hasher = ContentHasher(self.parser, field_filter)

    def run(self, source_dir: Union[str, Path], table_names: Optional[Sequence[str]] = None,
            partitions: Sequence[str] = ("",)) -> MigrationResult:
        """
        Backfill every known table (or the given ones) for the given partitions.

        Returns:
            MigrationResult with migrated, already present, not found and failed tables
        """
        self.logger.info(f"Starting encoding metadata backfill from {source_dir}")
        result = MigrationResult()
        names = list(table_names) if table_names is not None else self.config_manager.list_table_schemas()

        for table_name in names:
            if not self.session.table_exists(table_name):
                self.logger.debug(f"Table {table_name} does not exist, skipping")
                continue
            for partition_key in partitions:
                label = f"{table_name}[{partition_key}]" if partition_key else table_name
                result.total_tables += 1
                if self.store.has_metadata(table_name, partition_key):
                    self.logger.debug(f"{label} already has metadata, skipping")
                    result.already_present.append(label)
                    continue
                files = find_source_files(source_dir, table_name, partition_key)
                if not files:
                    self.logger.warning(f"No source file found for {label} under {source_dir}")
                    result.not_found.append(label)
                    continue
                try:
                    metadata = self._detect(table_name, partition_key, files)
                except XMLSyncError as e:
                    self.logger.error(f"Backfill of {label} failed: {e}")
                    result.failed.append({"table": label, "error": str(e)})
                    continue
                self.store.upsert(metadata)
                result.migrated.append(label)
                self.logger.info(f"Backfilled {label}: {metadata.original_encoding} bom={metadata.has_bom}")

        self.logger.info(result.summary())
        return result

    def redetect(self, source_dir: Union[str, Path], force: bool = False) -> int:
        """
        Re-detect the encoding of existing catalog rows from their source files.

        Without ``force`` only rows recorded with the ambiguous ``UTF-16`` name
        are revisited. Counters and hashes are left alone.

        Returns:
            Number of rows updated
        """
        updated = 0
        for metadata in self.store.list_all():
            if not force and metadata.original_encoding != "UTF-16":
                continue
            files = find_source_files(source_dir, metadata.table_name, metadata.partition_key)
            if not files:
                continue
            info, _ = self.parser.detector.detect_file(files[0])
            if (info.encoding, info.has_bom) == (metadata.original_encoding, metadata.has_bom):
                continue
            self.logger.info(
                f"Re-detected {metadata.table_name}[{metadata.partition_key}]: "
                f"{metadata.original_encoding} -> {info.encoding}"
            )
            metadata.original_encoding = info.encoding
            metadata.has_bom = info.has_bom
            self.store.upsert(metadata)
            updated += 1
        return updated

    def _detect(self, table_name: str, partition_key: str, files: List[Path]) -> EncodingMetadata:
        schema = self.config_manager.load_table_schema(table_name)
        documents = [self.parser.parse_file(p) for p in files]
        info = documents[0].encoding_info
        return EncodingMetadata(
            table_name=table_name,
            partition_key=partition_key,
            original_encoding=info.encoding,
            has_bom=info.has_bom,
            original_content_hash=self.hasher.hash_documents(documents, schema),
            fragments=[FragmentLayout(d.fragment_name, d.root_attributes) for d in documents],
        )
