"""Data models for the import pipeline."""

from .schema import (
    EntityType,
    DataType,
    TransformationType,
    ValidationRuleType,
    TargetField,
    ValidationRule,
    FieldMapping,
    EntityMappingSet,
    MappingTemplate,
)
from .record import (
    ErrorType,
    Severity,
    FieldIssue,
    ImportError,
    MappedRecord,
    ValidationResult,
    RecordStatus,
    RecordOutcome,
    CommitResult,
    RetryResult,
    BulkActionSummary,
    ErrorFilter,
    BLOCKING_ERROR_TYPES,
    SKIPPABLE_ERROR_TYPES,
)
from .session import (
    SessionStatus,
    SourceRow,
    UploadedFile,
    ImportSettings,
    EntityProgress,
    AuditEvent,
    ImportSession,
)

__all__ = [
    "EntityType",
    "DataType",
    "TransformationType",
    "ValidationRuleType",
    "TargetField",
    "ValidationRule",
    "FieldMapping",
    "EntityMappingSet",
    "MappingTemplate",
    "ErrorType",
    "Severity",
    "FieldIssue",
    "ImportError",
    "MappedRecord",
    "ValidationResult",
    "RecordStatus",
    "RecordOutcome",
    "CommitResult",
    "RetryResult",
    "BulkActionSummary",
    "ErrorFilter",
    "BLOCKING_ERROR_TYPES",
    "SKIPPABLE_ERROR_TYPES",
    "SessionStatus",
    "SourceRow",
    "UploadedFile",
    "ImportSettings",
    "EntityProgress",
    "AuditEvent",
    "ImportSession",
]
