"""
XML reading and row flattening for game-server table files.

A table file is a root element holding a repeated row element. Each row is
flattened into fields:

- attributes of the row element become ``_attr_<name>`` fields
- simple child elements (no attributes, no children, single occurrence)
  become fields named after their tag
- anything more structured (nested or repeated children) is kept as a
  ``fragment`` field holding the serialized XML of those children

Parsing always goes through raw bytes so the encoding detector sees the
file before any decoding happens.
"""

import logging
import re
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Union

from lxml import etree

from ..encoding.encoding_detector import EncodingDetector, read_source_bytes
from ..exceptions import XMLParsingError
from ..models import ATTRIBUTE_PREFIX, ColumnSource, EncodingInfo


_XML_DECLARATION = re.compile(r'^\s*<\?xml[^>]*\?>', re.IGNORECASE)

# A leaf carrying only null="true" stands for SQL NULL
NULL_MARKER_ATTRIBUTE = "null"


@dataclass
class FlatField:
    """One field of a flattened row."""
    source: ColumnSource
    value: Optional[str]
    elements: List = field(default_factory=list)


@dataclass
class ParsedDocument:
    """A decoded and parsed table file."""
    root: object
    encoding_info: EncodingInfo
    fragment_name: str = ""
    raw_size: int = 0

    @property
    def root_tag(self) -> str:
        return clean_tag(self.root.tag)

    @property
    def root_attributes(self) -> Dict[str, str]:
        return {clean_tag(k): v for k, v in self.root.attrib.items()}


def clean_tag(tag) -> str:
    """Local name of an element or attribute, without namespace."""
    if not isinstance(tag, str):
        return ""
    return etree.QName(tag).localname if tag.startswith("{") else tag


def element_children(element) -> Iterator:
    """Child elements, skipping comments and processing instructions."""
    for child in element:
        if isinstance(child.tag, str):
            yield child


def is_simple_leaf(element) -> bool:
    if len(element) and any(isinstance(c.tag, str) for c in element):
        return False
    attributes = [clean_tag(k) for k in element.attrib]
    return not attributes or attributes == [NULL_MARKER_ATTRIBUTE]


def serialize_fragment(elements: List) -> str:
    """Serialize sibling elements, without their tails, as one fragment string."""
    return "".join(etree.tostring(e, encoding="unicode", with_tail=False) for e in elements)


def parse_fragment(text: str) -> List:
    """
    Parse a stored fragment back into elements.

    Raises:
        XMLParsingError: If the stored text is not well-formed
    """
    try:
        wrapper = etree.fromstring(f"<fragment>{text}</fragment>", _strict_parser())
    except etree.XMLSyntaxError as e:
        raise XMLParsingError(f"Stored fragment is not well-formed: {e}", text)
    return list(element_children(wrapper))


def canonical_fragment(text: str) -> str:
    """C14N form of a fragment with whitespace-only text and tails removed."""
    wrapper = etree.fromstring(f"<fragment>{text}</fragment>", _strict_parser())
    for element in wrapper.iter():
        if element.text is not None and not element.text.strip():
            element.text = None
        if element.tail is not None and not element.tail.strip():
            element.tail = None
    return etree.tostring(wrapper, method="c14n").decode("utf-8")


def _strict_parser():
    return etree.XMLParser(
        recover=False,  # Malformed files must fail, not import half a table
        strip_cdata=False,
        resolve_entities=False,  # Security: don't resolve external entities
        no_network=True,  # Security: disable network access
        huge_tree=True,
    )


class XMLParser:
    """
    Reads table files and flattens their rows.

    The parser is stateless apart from counters, so a worker can reuse one
    instance for every file it handles.
    """

    def __init__(self, detector: Optional[EncodingDetector] = None):
        self.detector = detector or EncodingDetector()
        self.logger = logging.getLogger(__name__)
        self.parse_count = 0

    def parse_file(self, path: Union[str, Path]) -> ParsedDocument:
        """
        Read, detect and parse one file.

        Raises:
            EmptySourceError: If the file is missing or empty
            XMLParsingError: If the content cannot be decoded or parsed
        """
        raw = read_source_bytes(path)
        return self.parse_bytes(raw, fragment_name=Path(path).name, source_identifier=str(path))

    def parse_bytes(self, raw: bytes, fragment_name: str = "",
                    source_identifier: Optional[str] = None) -> ParsedDocument:
        """Detect encoding from the raw bytes, decode, then parse."""
        info = self.detector.detect(raw)
        text = self.detector.decode(raw, info)
        root = self.parse_text(text, source_identifier or fragment_name)
        return ParsedDocument(root=root, encoding_info=info, fragment_name=fragment_name, raw_size=len(raw))

    def parse_text(self, text: str, source_identifier: Optional[str] = None):
        """
        Parse decoded XML text.

        Raises:
            XMLParsingError: If the XML is malformed or empty
        """
        self.parse_count += 1
        if not text or not text.strip():
            raise XMLParsingError("XML content is empty", source_identifier=source_identifier)

        # lxml refuses str input that still declares an encoding
        cleaned = _XML_DECLARATION.sub("", text, count=1)
        try:
            root = etree.fromstring(cleaned.encode("utf-8"), _strict_parser())
        except etree.XMLSyntaxError as e:
            self.logger.error(f"XML syntax error in {source_identifier}: {e}")
            raise XMLParsingError(f"XML syntax error: {e}", text, source_identifier)
        if root is None:
            raise XMLParsingError("XML document has no root element", text, source_identifier)
        return root

    @staticmethod
    def detect_row_tag(root) -> Optional[str]:
        """Most frequent child tag under the root, first seen wins ties."""
        counts = Counter()
        order = []
        for child in element_children(root):
            tag = clean_tag(child.tag)
            if tag not in counts:
                order.append(tag)
            counts[tag] += 1
        if not counts:
            return None
        return max(order, key=lambda t: (counts[t], -order.index(t)))

    def row_elements(self, root, row_tag: str) -> Iterator:
        """Row elements in document order; other root children are ignored."""
        skipped = 0
        for child in element_children(root):
            if clean_tag(child.tag) == row_tag:
                yield child
            else:
                skipped += 1
        if skipped:
            self.logger.warning(f"Ignored {skipped} non-row element(s) under <{clean_tag(root.tag)}>")

    @staticmethod
    def flatten_row(row) -> "OrderedDict[str, FlatField]":
        """
        Flatten one row element into named fields in document order.

        Returns:
            Ordered mapping of column name to FlatField
        """
        fields = OrderedDict()
        for name, value in row.attrib.items():
            fields[ATTRIBUTE_PREFIX + clean_tag(name)] = FlatField(ColumnSource.ATTRIBUTE, value)

        groups = OrderedDict()
        for child in element_children(row):
            groups.setdefault(clean_tag(child.tag), []).append(child)

        for tag, elements in groups.items():
            if len(elements) == 1 and is_simple_leaf(elements[0]):
                leaf = elements[0]
                if leaf.get(NULL_MARKER_ATTRIBUTE) == "true":
                    value = None
                else:
                    value = leaf.text if leaf.text is not None else ""
                fields[tag] = FlatField(ColumnSource.ELEMENT, value, elements)
            else:
                fields[tag] = FlatField(ColumnSource.FRAGMENT, serialize_fragment(elements), elements)
        return fields
