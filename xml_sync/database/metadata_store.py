"""
Encoding Metadata Store

CRUD layer over the ``file_encoding_metadata`` catalog. One row per
``(table_name, map_type)`` records how the source file was encoded, the
content hash taken at import, the last round-trip verdict and monotonic
import/export counters.

The store also owns the per-key locks that serialize jobs touching the same
table/partition: importers and exporters hold ``serialized(table, partition)``
around counter updates and destination-file writes.
"""

import json
import logging
import threading
from collections import Counter
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, Iterator, List, Optional, Tuple

from ..config.processing_defaults import ProcessingDefaults
from ..interfaces import MetadataStoreInterface
from ..models import EncodingMetadata, EncodingStatistics, FragmentLayout, ValidationStatus
from .session import DatabaseSession


_COLUMNS = (
    "table_name, map_type, original_encoding, has_bom, original_file_hash, last_validation_result, "
    "import_count, export_count, last_import_time, last_export_time, fragment_layout"
)


class EncodingMetadataStore(MetadataStoreInterface):
    """Catalog access plus the per-(table, partition) serialization point."""

    def __init__(self, session: DatabaseSession, table_name: str = ProcessingDefaults.METADATA_TABLE):
        self.session = session
        self.catalog_table = table_name
        self.logger = logging.getLogger(__name__)
        self._locks: Dict[Tuple[str, str], threading.RLock] = {}
        self._locks_guard = threading.Lock()
        self._catalog_ready = False

    @property
    def _qualified(self) -> str:
        return self.session.qualified(self.catalog_table)

    def ensure_catalog(self) -> None:
        """Create the catalog table when it does not exist yet."""
        if self._catalog_ready:
            return
        self.session.execute(self.session.dialect.catalog_ddl(self._qualified))
        self._catalog_ready = True
        self.logger.debug(f"Catalog table {self.catalog_table} ready")

    def lock_for(self, table_name: str, partition_key: str = "") -> threading.RLock:
        key = (table_name, partition_key or "")
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def serialized(self, table_name: str, partition_key: str = "") -> Iterator[None]:
        """Hold the table/partition lock for the duration of the block."""
        lock = self.lock_for(table_name, partition_key)
        with lock:
            yield

    def _now(self) -> datetime:
        return datetime.now().replace(microsecond=0)

    def _param(self, value):
        return self.session.dialect.to_db_param(value)

    @staticmethod
    def _parse_time(value) -> Optional[datetime]:
        if value is None or isinstance(value, datetime):
            return value
        return datetime.fromisoformat(str(value))

    def _row_to_metadata(self, row: tuple) -> EncodingMetadata:
        (table_name, map_type, encoding, has_bom, content_hash, validation,
         import_count, export_count, last_import, last_export, layout) = row
        fragments = [FragmentLayout.from_dict(f) for f in json.loads(layout)] if layout else []
        return EncodingMetadata(
            table_name=table_name,
            partition_key=map_type or "",
            original_encoding=encoding,
            has_bom=bool(has_bom),
            original_content_hash=content_hash,
            last_validation_result=ValidationStatus(validation) if validation else ValidationStatus.NOT_VALIDATED,
            import_count=int(import_count or 0),
            export_count=int(export_count or 0),
            last_import_time=self._parse_time(last_import),
            last_export_time=self._parse_time(last_export),
            fragments=fragments,
        )

    def get(self, table_name: str, partition_key: str = "") -> Optional[EncodingMetadata]:
        self.ensure_catalog()
        rows = self.session.query(
            f"SELECT {_COLUMNS} FROM {self._qualified} WHERE table_name = ? AND map_type = ?",
            (table_name, partition_key or ""),
        )
        return self._row_to_metadata(rows[0]) if rows else None

    def has_metadata(self, table_name: str, partition_key: str = "") -> bool:
        return self.get(table_name, partition_key) is not None

    def record_import(self, table_name: str, partition_key: str, encoding: str, has_bom: bool,
                      content_hash: str, fragments: Optional[List[FragmentLayout]] = None) -> EncodingMetadata:
        """
        Upsert after a successful import.

        Increments import_count, replaces encoding, BOM flag, hash and layout,
        and resets the validation verdict since the content just changed.
        """
        self.ensure_catalog()
        partition_key = partition_key or ""
        layout = json.dumps([f.to_dict() for f in (fragments or [])], ensure_ascii=False)
        now = self._param(self._now())

        with self.serialized(table_name, partition_key):
            updated = self.session.execute(
                f"UPDATE {self._qualified} SET original_encoding = ?, has_bom = ?, original_file_hash = ?, "
                f"last_validation_result = NULL, import_count = import_count + 1, last_import_time = ?, "
                f"fragment_layout = ? WHERE table_name = ? AND map_type = ?",
                (encoding, 1 if has_bom else 0, content_hash, now, layout, table_name, partition_key),
            )
            if updated == 0:
                self.session.execute(
                    f"INSERT INTO {self._qualified} ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, NULL, 1, 0, ?, NULL, ?)",
                    (table_name, partition_key, encoding, 1 if has_bom else 0, content_hash, now, layout),
                )
                self.logger.info(f"Created encoding metadata for {table_name}[{partition_key}]: {encoding} bom={has_bom}")
            else:
                self.logger.debug(f"Updated encoding metadata for {table_name}[{partition_key}]")
            return self.get(table_name, partition_key)

    def record_export(self, table_name: str, partition_key: str = "", encoding: Optional[str] = None,
                      has_bom: Optional[bool] = None) -> EncodingMetadata:
        """
        Increment export_count after a successful export.

        Tables exported before ever being imported get a catalog row using
        the encoding the exporter actually wrote.
        """
        self.ensure_catalog()
        partition_key = partition_key or ""
        now = self._param(self._now())

        with self.serialized(table_name, partition_key):
            updated = self.session.execute(
                f"UPDATE {self._qualified} SET export_count = export_count + 1, last_export_time = ? "
                f"WHERE table_name = ? AND map_type = ?",
                (now, table_name, partition_key),
            )
            if updated == 0:
                self.session.execute(
                    f"INSERT INTO {self._qualified} ({_COLUMNS}) VALUES (?, ?, ?, ?, NULL, NULL, 0, 1, NULL, ?, NULL)",
                    (table_name, partition_key, encoding or ProcessingDefaults.DEFAULT_ENCODING,
                     1 if (has_bom if has_bom is not None else ProcessingDefaults.DEFAULT_HAS_BOM) else 0, now),
                )
            return self.get(table_name, partition_key)

    def record_validation(self, table_name: str, partition_key: str, status: ValidationStatus) -> None:
        self.ensure_catalog()
        value = None if status == ValidationStatus.NOT_VALIDATED else status.value
        with self.serialized(table_name, partition_key or ""):
            self.session.execute(
                f"UPDATE {self._qualified} SET last_validation_result = ? WHERE table_name = ? AND map_type = ?",
                (value, table_name, partition_key or ""),
            )

    def upsert(self, metadata: EncodingMetadata) -> None:
        """Write a full catalog row without touching counters; used by the backfill migration."""
        self.ensure_catalog()
        layout = json.dumps([f.to_dict() for f in metadata.fragments], ensure_ascii=False)
        validation = (None if metadata.last_validation_result == ValidationStatus.NOT_VALIDATED
                      else metadata.last_validation_result.value)
        with self.serialized(metadata.table_name, metadata.partition_key):
            self.delete(metadata.table_name, metadata.partition_key)
            self.session.execute(
                f"INSERT INTO {self._qualified} ({_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (metadata.table_name, metadata.partition_key, metadata.original_encoding,
                 1 if metadata.has_bom else 0, metadata.original_content_hash, validation,
                 metadata.import_count, metadata.export_count,
                 self._param(metadata.last_import_time), self._param(metadata.last_export_time), layout),
            )

    def list_all(self) -> List[EncodingMetadata]:
        self.ensure_catalog()
        rows = self.session.query(f"SELECT {_COLUMNS} FROM {self._qualified} ORDER BY table_name, map_type")
        return [self._row_to_metadata(r) for r in rows]

    def list_partitions(self, table_name: str) -> List[str]:
        return [m.partition_key for m in self.list_all() if m.table_name == table_name]

    def delete(self, table_name: str, partition_key: Optional[str] = None) -> int:
        """Delete one partition's row, or every row of the table when partition_key is None."""
        self.ensure_catalog()
        if partition_key is None:
            return self.session.execute(f"DELETE FROM {self._qualified} WHERE table_name = ?", (table_name,))
        return self.session.execute(
            f"DELETE FROM {self._qualified} WHERE table_name = ? AND map_type = ?",
            (table_name, partition_key),
        )

    def cleanup_orphans(self) -> List[str]:
        """Remove catalog rows whose data table no longer exists; returns the removed table names."""
        removed = []
        for table_name in sorted({m.table_name for m in self.list_all()}):
            if not self.session.table_exists(table_name):
                count = self.delete(table_name)
                removed.append(table_name)
                self.logger.info(f"Removed {count} orphaned metadata row(s) for {table_name}")
        return removed

    def most_common_encoding(self, table_name: str) -> Optional[Tuple[str, bool]]:
        """Most frequent (encoding, has_bom) among the table's partitions."""
        entries = [m for m in self.list_all() if m.table_name == table_name]
        if not entries:
            return None
        counts = Counter((m.original_encoding, m.has_bom) for m in entries)
        return counts.most_common(1)[0][0]

    def encoding_statistics(self) -> EncodingStatistics:
        entries = self.list_all()
        return EncodingStatistics(
            total_entries=len(entries),
            with_bom=sum(1 for m in entries if m.has_bom),
            by_encoding=dict(Counter(m.original_encoding for m in entries)),
            by_validation=dict(Counter(m.last_validation_result.value for m in entries)),
        )
