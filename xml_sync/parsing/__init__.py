"""XML parsing components."""

from .xml_parser import XMLParser, ParsedDocument, FlatField

__all__ = ['XMLParser', 'ParsedDocument', 'FlatField']
