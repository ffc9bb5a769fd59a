"""
Encoding detection and content hashing.

NOTE: content_hasher depends on the parsing package, which depends on
encoding_detector. Import ContentHasher from its module directly.
"""

from .encoding_detector import EncodingDetector, EncodingFallbackStrategy, fallback_encoding, read_source_bytes

__all__ = ['EncodingDetector', 'EncodingFallbackStrategy', 'fallback_encoding', 'read_source_bytes']
