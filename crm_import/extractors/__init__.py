"""File parsers for CRM export uploads."""

from .base import BaseParser, detect_entity_type
from .file_parser import FileParser
from .remote_parser import RemoteFileParser

__all__ = [
    "BaseParser",
    "detect_entity_type",
    "FileParser",
    "RemoteFileParser",
]
