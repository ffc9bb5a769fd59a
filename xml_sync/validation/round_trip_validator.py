"""
Round-Trip Validator

Proves that what is in the database still reproduces the imported files.
Each table/partition is re-exported into a scratch directory, re-read with
the same decode and normalize rules the importer used, re-hashed and
compared with the content hash recorded at import.

A mismatch is recorded (FAIL in the catalog plus a ValidationMismatch in the
summary) and validation proceeds to the next table; it is never raised.
"""

import logging
import shutil
import uuid
from pathlib import Path
from typing import List, Optional, Union

from ..config.config_manager import ConfigManager
from ..database.metadata_store import EncodingMetadataStore
from ..encoding.content_hasher import ContentHasher
from ..exceptions import XMLSyncError
from ..models import EncodingMetadata, TableValidation, ValidationMismatch, ValidationStatus, ValidationSummary
from ..parsing.xml_parser import XMLParser
from ..processing.exporter import XmlExporter


class RoundTripValidator:
    """
    Re-export, re-hash and compare.

    Args:
        exporter: Exporter used to render the scratch copies
        store: Encoding metadata store holding the recorded hashes
        config_manager: Supplies the schema contracts and the scratch directory
        scratch_dir: Overrides the configured scratch directory
    """

    def __init__(self, exporter: XmlExporter, store: Optional[EncodingMetadataStore] = None,
                 config_manager: Optional[ConfigManager] = None,
                 scratch_dir: Optional[Union[str, Path]] = None):
        self.logger = logging.getLogger(__name__)
        self.exporter = exporter
        self.store = store or exporter.store
        self.config_manager = config_manager or exporter.config_manager
        self.scratch_dir = Path(scratch_dir) if scratch_dir else self.config_manager.scratch_dir
        self.parser = XMLParser(exporter.detector)
        self.hasher = ContentHasher(self.parser, exporter.field_filter)

    def validate_table(self, table_name: str, partition_key: str = "") -> ValidationSummary:
        """Validate one table/partition."""
        summary = ValidationSummary()
        metadata = self.store.get(table_name, partition_key or "")
        if metadata is None:
            self.logger.warning(f"No encoding metadata for {table_name}[{partition_key}], not validated")
            summary.results.append(TableValidation(
                table_name, partition_key or "", ValidationStatus.NOT_VALIDATED, message="no metadata"
            ))
            return summary
        self._validate(metadata, summary)
        return summary

    def validate_all(self, table_names: Optional[List[str]] = None, cancel_token=None) -> ValidationSummary:
        """
        Validate every catalog entry, or only those of the given tables.

        Returns:
            ValidationSummary with pass/fail/not-validated counts
        """
        summary = ValidationSummary()
        entries = self.store.list_all()
        if table_names is not None:
            wanted = set(table_names)
            entries = [m for m in entries if m.table_name in wanted]
        for metadata in entries:
            if cancel_token is not None and cancel_token.is_cancelled:
                self.logger.warning("Validation cancelled")
                break
            self._validate(metadata, summary)
        self.logger.info(summary.summary())
        return summary

    def _validate(self, metadata: EncodingMetadata, summary: ValidationSummary) -> None:
        table_name, partition_key = metadata.table_name, metadata.partition_key
        if not metadata.original_content_hash:
            summary.results.append(TableValidation(
                table_name, partition_key, ValidationStatus.NOT_VALIDATED, message="no recorded hash"
            ))
            return

        scratch = self.scratch_dir / f"{table_name}_{uuid.uuid4().hex[:8]}"
        # The verdict must describe the rows the hash was taken over
        with self.store.serialized(table_name, partition_key):
            current = self.store.get(table_name, partition_key)
            if current is not None:
                metadata = current
            try:
                outcome = self._compare(metadata, scratch)
            except XMLSyncError as e:
                self.logger.error(f"Validation of {table_name}[{partition_key}] failed: {e}")
                outcome = TableValidation(table_name, partition_key, ValidationStatus.FAIL,
                                          original_hash=metadata.original_content_hash,
                                          message=f"{type(e).__name__}: {e}")
            finally:
                shutil.rmtree(scratch, ignore_errors=True)

            self.store.record_validation(table_name, partition_key, outcome.status)
        summary.results.append(outcome)
        if outcome.status == ValidationStatus.FAIL:
            summary.mismatches.append(ValidationMismatch(
                table_name, partition_key, outcome.original_hash, outcome.exported_hash, outcome.message
            ))
            self.logger.warning(f"Round trip FAILED for {table_name}[{partition_key}]: {outcome.message}")
        else:
            self.logger.info(f"Round trip passed for {table_name}[{partition_key}]")

    def _compare(self, metadata: EncodingMetadata, scratch: Path) -> TableValidation:
        table_name, partition_key = metadata.table_name, metadata.partition_key
        schema = self.config_manager.load_table_schema(table_name)
        rendered = self.exporter.export_to_bytes(table_name, partition_key)
        paths = self.exporter.write_documents(rendered, scratch / table_name)

        documents = []
        for path, (fragment_name, _) in zip(paths, rendered.documents):
            document = self.parser.parse_file(path)
            document.fragment_name = fragment_name
            documents.append(document)
        exported_hash = self.hasher.hash_documents(documents, schema)

        problems = []
        if exported_hash != metadata.original_content_hash:
            problems.append("content hash differs")
        info = documents[0].encoding_info
        if (info.encoding, info.has_bom) != (metadata.original_encoding, metadata.has_bom):
            problems.append(f"re-export is {info.encoding} bom={info.has_bom}, expected "
                            f"{metadata.original_encoding} bom={metadata.has_bom}")

        return TableValidation(
            table_name,
            partition_key,
            ValidationStatus.FAIL if problems else ValidationStatus.PASS,
            original_hash=metadata.original_content_hash,
            exported_hash=exported_hash,
            message="; ".join(problems),
        )
