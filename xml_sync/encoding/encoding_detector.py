"""
Encoding detection for legacy game-server XML files.

Most server files are UTF-16LE with a byte-order mark, but a fair share are
UTF-8 (with or without BOM) or carry a legacy code page declared in the XML
prolog. The export side must write files back exactly the way they were
found, so detection always works on the raw bytes before anything is
decoded.

Detection priority:
1) Byte-order mark
2) UTF-16 byte pattern of a BOM-less ``<`` opening
3) Declared encoding in the XML prolog
4) Strict UTF-8 decode
5) chardet guess
6) Configured default
"""

import codecs
import logging
import re
from dataclasses import replace
from pathlib import Path
from typing import Optional, Tuple, Union

import chardet

from ..config.processing_defaults import ProcessingDefaults
from ..exceptions import EmptySourceError, XMLParsingError
from ..models import EncodingInfo


BOMS = (
    (codecs.BOM_UTF8, "UTF-8"),
    (codecs.BOM_UTF16_LE, "UTF-16LE"),
    (codecs.BOM_UTF16_BE, "UTF-16BE"),
)

_DECLARATION = re.compile(rb'<\?xml[^>]*encoding\s*=\s*["\']([^"\']+)["\']', re.IGNORECASE)

_ALIASES = {
    "UTF8": "UTF-8",
    "UTF-8-SIG": "UTF-8",
    "UTF16": "UTF-16",
    "UTF-16-LE": "UTF-16LE",
    "UTF16LE": "UTF-16LE",
    "UTF-16-BE": "UTF-16BE",
    "UTF16BE": "UTF-16BE",
    "UNICODE": "UTF-16LE",
    "ASCII": "US-ASCII",
    "LATIN-1": "ISO-8859-1",
    "LATIN1": "ISO-8859-1",
    "EUCKR": "EUC-KR",
    "CP949": "CP949",
    "SHIFT-JIS": "SHIFT_JIS",
    "SJIS": "SHIFT_JIS",
}

_PYTHON_CODECS = {
    "UTF-8": "utf-8",
    "UTF-16LE": "utf-16-le",
    "UTF-16BE": "utf-16-be",
    "UTF-16": "utf-16-le",
    "US-ASCII": "ascii",
}

_BOM_BYTES = {
    "UTF-8": codecs.BOM_UTF8,
    "UTF-16LE": codecs.BOM_UTF16_LE,
    "UTF-16": codecs.BOM_UTF16_LE,
    "UTF-16BE": codecs.BOM_UTF16_BE,
}


def normalize_encoding_name(name: Optional[str]) -> Optional[str]:
    """Canonical upper-case encoding name, e.g. ``utf_16_le`` -> ``UTF-16LE``."""
    if not name:
        return None
    key = name.strip().upper().replace("_", "-")
    if key == "SHIFT-JIS":
        return "SHIFT_JIS"
    return _ALIASES.get(key, _ALIASES.get(key.replace("-", ""), key))


def python_codec(encoding: str) -> str:
    """
    Python codec used to read or write ``encoding``.

    Raises:
        LookupError: If Python has no codec for the name
    """
    normalized = normalize_encoding_name(encoding)
    if normalized in _PYTHON_CODECS:
        return _PYTHON_CODECS[normalized]
    return codecs.lookup(normalized).name


def declaration_name(encoding: str) -> str:
    """Encoding name written into the XML prolog; both UTF-16 byte orders are declared as UTF-16."""
    normalized = normalize_encoding_name(encoding)
    if normalized in ("UTF-16LE", "UTF-16BE"):
        return "UTF-16"
    return normalized


def bom_bytes(encoding: str) -> bytes:
    return _BOM_BYTES.get(normalize_encoding_name(encoding), b"")


def sniff_bom(raw: bytes) -> Tuple[Optional[str], int]:
    """Return (encoding, bom_length) when ``raw`` starts with a known BOM."""
    for bom, name in BOMS:
        if raw.startswith(bom):
            return name, len(bom)
    return None, 0


class EncodingDetector:
    """
    Sniffs the encoding and byte-order mark of XML files.

    Stateless apart from configuration, so one instance is shared across workers.
    """

    def __init__(self, default_encoding: str = ProcessingDefaults.DEFAULT_ENCODING,
                 large_file_bytes: int = ProcessingDefaults.LARGE_FILE_BYTES,
                 logger: logging.Logger = None):
        self.default_encoding = normalize_encoding_name(default_encoding)
        self.large_file_bytes = large_file_bytes
        self.logger = logger or logging.getLogger(__name__)

    def detect(self, raw: bytes) -> EncodingInfo:
        """
        Detect encoding and BOM from raw bytes.

        Args:
            raw: Complete file content or a leading sample of it

        Returns:
            EncodingInfo with normalized encoding name and confidence score
        """
        declared = self._declared_encoding(raw)
        encoding, bom_length = sniff_bom(raw)
        if encoding:
            info = EncodingInfo(encoding, True, detection_source="bom", declared_encoding=declared)
            return replace(info, confidence=self.confidence(info, len(raw)))

        pattern = self._utf16_pattern(raw)
        if pattern:
            info = EncodingInfo(pattern, False, detection_source="pattern", declared_encoding=declared)
            return replace(info, confidence=self.confidence(info, len(raw)))

        if declared and not declared.startswith("UTF-16"):
            try:
                python_codec(declared)
                info = EncodingInfo(declared, False, detection_source="declaration", declared_encoding=declared)
                return replace(info, confidence=self.confidence(info, len(raw)))
            except LookupError:
                self.logger.warning(f"Ignoring unknown declared encoding {declared}")

        try:
            raw.decode("utf-8")
            info = EncodingInfo("UTF-8", False, detection_source="utf-8", declared_encoding=declared)
            return replace(info, confidence=self.confidence(info, len(raw)))
        except UnicodeDecodeError:
            pass

        sample = raw[:10240]
        guess = chardet.detect(sample)
        guessed = normalize_encoding_name(guess.get("encoding"))
        if guessed:
            if guessed == "US-ASCII":
                guessed = "UTF-8"
            try:
                python_codec(guessed)
                info = EncodingInfo(guessed, False, detection_source="chardet", declared_encoding=declared)
                score = int((guess.get("confidence") or 0) * 50)
                return replace(info, confidence=min(100, score + self.confidence(info, len(raw))))
            except LookupError:
                self.logger.debug(f"chardet guessed unsupported encoding {guessed}")

        self.logger.warning(f"Could not detect encoding, defaulting to {self.default_encoding}")
        return EncodingInfo(self.default_encoding, False, 0, "default", declared)

    def detect_file(self, path: Union[str, Path]) -> Tuple[EncodingInfo, bytes]:
        """
        Read a file and detect its encoding.

        Returns:
            (EncodingInfo, raw bytes)

        Raises:
            EmptySourceError: If the file is missing or zero bytes long
        """
        raw = read_source_bytes(path)
        info = self.detect(raw)
        self.logger.debug(
            f"{path}: {info.encoding} bom={info.has_bom} via {info.detection_source} "
            f"(confidence {info.confidence})"
        )
        return info, raw

    def confidence(self, info: EncodingInfo, size: int) -> int:
        score = 0
        if info.has_bom:
            score += 60
            if info.encoding in ("UTF-16LE", "UTF-16BE"):
                score += 30
            elif info.encoding == "UTF-8":
                score += 20
        elif info.detection_source == "pattern":
            score += 50
        elif info.detection_source == "declaration":
            score += 40
        elif info.detection_source == "utf-8":
            score += 30
        if info.declared_encoding and normalize_encoding_name(info.declared_encoding) in (
                info.encoding, declaration_name(info.encoding)):
            score += 20
        if size > self.large_file_bytes:
            score += 10
        return min(score, 100)

    def decode(self, raw: bytes, info: EncodingInfo) -> str:
        """
        Decode raw bytes with the detected encoding, dropping the BOM.

        Raises:
            XMLParsingError: If the bytes are not valid in that encoding
        """
        _, bom_length = sniff_bom(raw)
        body = raw[bom_length:] if info.has_bom else raw
        try:
            return body.decode(python_codec(info.encoding))
        except (UnicodeDecodeError, LookupError) as e:
            raise XMLParsingError(f"Cannot decode content as {info.encoding}: {e}")

    def encode(self, text: str, encoding: str, has_bom: bool) -> bytes:
        """Encode text for writing, prepending the BOM when the original had one."""
        body = text.encode(python_codec(encoding))
        if has_bom:
            return bom_bytes(encoding) + body
        return body

    @staticmethod
    def _declared_encoding(raw: bytes) -> Optional[str]:
        head = raw[:400]
        # UTF-16 prologs interleave NULs; drop them so the ASCII regex still matches
        if b"\x00" in head:
            head = head.replace(b"\x00", b"")
        match = _DECLARATION.search(head)
        if match:
            return normalize_encoding_name(match.group(1).decode("ascii", errors="ignore"))
        return None

    @staticmethod
    def _utf16_pattern(raw: bytes, code_units: int = 8) -> Optional[str]:
        """UTF-16 without a BOM, recognized by ASCII text alternating with NUL bytes."""
        head = raw[:code_units * 2]
        if len(head) < 8:
            return None
        head = head[:len(head) - len(head) % 2]
        even, odd = head[0::2], head[1::2]
        if not any(odd) and all(even):
            return "UTF-16LE"
        if not any(even) and all(odd):
            return "UTF-16BE"
        return None


def read_source_bytes(path: Union[str, Path]) -> bytes:
    """
    Read a source file, treating missing and zero-byte files alike.

    Raises:
        EmptySourceError: If the file is missing or empty
    """
    source = Path(path)
    if not source.is_file():
        raise EmptySourceError(f"Source file not found: {source}", str(source))
    raw = source.read_bytes()
    if not raw:
        raise EmptySourceError(f"Source file is empty: {source}", str(source))
    return raw


class EncodingFallbackStrategy:
    """
    Picks an export encoding when a table has no catalog entry yet.

    Order: most common encoding among the table's other partitions, then the
    default for the file extension, then the configured default.
    """

    EXTENSION_DEFAULTS = {
        ".xml": ("UTF-16LE", True),
    }

    def __init__(self, store=None, default_encoding: str = ProcessingDefaults.DEFAULT_ENCODING,
                 default_has_bom: bool = ProcessingDefaults.DEFAULT_HAS_BOM):
        self.store = store
        self.default_encoding = normalize_encoding_name(default_encoding)
        self.default_has_bom = default_has_bom
        self.logger = logging.getLogger(__name__)

    def resolve(self, table_name: str, extension: str = ".xml") -> EncodingInfo:
        if self.store is not None:
            common = self.store.most_common_encoding(table_name)
            if common is not None:
                encoding, has_bom = common
                self.logger.info(f"Using table-level encoding {encoding} for {table_name}")
                return EncodingInfo(encoding, has_bom, 50, "table-history")

        if extension.lower() in self.EXTENSION_DEFAULTS:
            encoding, has_bom = self.EXTENSION_DEFAULTS[extension.lower()]
            return EncodingInfo(encoding, has_bom, 30, "extension")

        return EncodingInfo(self.default_encoding, self.default_has_bom, 10, "default")


def fallback_encoding(table_name: str, store=None, extension: str = ".xml") -> EncodingInfo:
    """Export encoding for a table that has no catalog entry of its own."""
    return EncodingFallbackStrategy(store).resolve(table_name, extension)
