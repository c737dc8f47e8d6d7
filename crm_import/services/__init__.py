"""Services for mapping, transforming, validating and resolving import data."""

from .schema_registry import SchemaRegistry
from .mapping_engine import MappingEngine, MappingCheck
from .transformer import TransformEngine
from .validator import RecordValidator
from .template_store import TemplateStore
from .audit import AuditSink, LoggingAuditSink, InMemoryAuditSink
from .error_resolution import ErrorWorkstation

__all__ = [
    "SchemaRegistry",
    "MappingEngine",
    "MappingCheck",
    "TransformEngine",
    "RecordValidator",
    "TemplateStore",
    "AuditSink",
    "LoggingAuditSink",
    "InMemoryAuditSink",
    "ErrorWorkstation",
]
