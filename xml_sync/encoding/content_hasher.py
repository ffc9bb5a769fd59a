"""
Content Hasher

Fingerprints the logical content of a table file so that an import and a
later export can be compared without caring about formatting. The hash
covers the root tag and its attributes, every row's non-null fields as
``(column, value)`` pairs in sorted order, and the fragment names when a
table spans several files.

Insignificant differences are canonicalized away: surrounding whitespace of
leaf values, attribute order, pretty-printing inside structured fields and
the byte encoding of the file. Rows are hashed after the compatibility
filter, which is idempotent, so an exported file hashes the same as its
source.
"""

import hashlib
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from ..models import ColumnSource, TableSchema, xml_field_name
from ..parsing.xml_parser import ParsedDocument, XMLParser, canonical_fragment


_FIELD_SEPARATOR = "\x1f"
_RECORD_SEPARATOR = "\x1e"


class ContentHasher:
    """
    SHA-256 over the canonical row content of one logical table.

    Args:
        parser: Parser used for the byte and file entry points
        field_filter: Default compatibility filter applied to every row before hashing
    """

    def __init__(self, parser: Optional[XMLParser] = None, field_filter=None):
        self.parser = parser or XMLParser()
        self.field_filter = field_filter
        self.logger = logging.getLogger(__name__)

    def canonical_rows(self, document: ParsedDocument, scope: str, row_tag: Optional[str] = None,
                       field_filter=None) -> List[Dict[str, str]]:
        """Rows of one document as column to canonical value maps."""
        row_tag = row_tag or self.parser.detect_row_tag(document.root)
        if row_tag is None:
            return []
        rows = []
        for row in self.parser.row_elements(document.root, row_tag):
            fields = self.parser.flatten_row(row)
            values = {name: flat.value for name, flat in fields.items() if flat.value is not None}
            if field_filter is not None:
                values = self._filtered(field_filter, scope, values)
            canonical = {}
            for name, value in values.items():
                if fields[name].source == ColumnSource.FRAGMENT:
                    canonical[name] = canonical_fragment(value)
                else:
                    canonical[name] = value.strip()
            rows.append(canonical)
        return rows

    @staticmethod
    def _filtered(field_filter, scope: str, values: Dict[str, str]) -> Dict[str, str]:
        # apply() leaves the filter statistics untouched; attributes are judged by their XML name
        filtered = {}
        for name, value in values.items():
            result = field_filter.apply(xml_field_name(name), scope, value)
            if result is not None:
                filtered[name] = result
        return filtered

    def hash_documents(self, documents: Sequence[ParsedDocument], schema: Optional[TableSchema] = None,
                       field_filter=None, table_name: str = "") -> str:
        """
        Hash one logical table made of one or more documents in fragment order.

        Args:
            documents: Parsed fragments in original order
            schema: Table schema; supplies the row tag and the filter scope
            field_filter: Filter overriding the hasher's default
            table_name: Filter scope when no schema is given

        Returns:
            Hex SHA-256 digest
        """
        field_filter = field_filter if field_filter is not None else self.field_filter
        scope = schema.table_name if schema is not None else table_name
        row_tag = schema.row_element_tag if schema is not None else None

        digest = hashlib.sha256()
        multi = len(documents) > 1
        for document in documents:
            parts = [document.root_tag]
            for key, value in sorted(document.root_attributes.items()):
                parts.append(f"@{key}={value.strip()}")
            if multi:
                parts.append(f"#{document.fragment_name}")
            digest.update(_FIELD_SEPARATOR.join(parts).encode("utf-8"))
            digest.update(_RECORD_SEPARATOR.encode("utf-8"))

            for row in self.canonical_rows(document, scope, row_tag, field_filter):
                line = _FIELD_SEPARATOR.join(f"{k}={v}" for k, v in sorted(row.items()))
                digest.update(line.encode("utf-8"))
                digest.update(_RECORD_SEPARATOR.encode("utf-8"))
        return digest.hexdigest()

    def hash_bytes(self, raw: bytes, schema: Optional[TableSchema] = None, field_filter=None,
                   table_name: str = "", fragment_name: str = "") -> str:
        document = self.parser.parse_bytes(raw, fragment_name=fragment_name,
                                           source_identifier=table_name or fragment_name)
        return self.hash_documents([document], schema, field_filter, table_name)

    def hash_file(self, paths: Union[str, Path, Sequence[Union[str, Path]]],
                  schema: Optional[TableSchema] = None, field_filter=None, table_name: str = "") -> str:
        """
        Hash one file, or several fragment files in order.

        Raises:
            EmptySourceError: If a file is missing or empty
            XMLParsingError: If a file is malformed
        """
        if isinstance(paths, (str, Path)):
            paths = [paths]
        documents = [self.parser.parse_file(p) for p in paths]
        return self.hash_documents(documents, schema, field_filter, table_name)
