"""Record and error models produced by validation and commit passes."""

from dataclasses import dataclass, field as dataclass_field
from typing import Any, Dict, List, Optional
from enum import Enum
from datetime import datetime
import uuid


class ErrorType(str, Enum):
    """Classification of a row-level failure."""
    VALIDATION = "validation"
    REFERENCE = "reference"
    DUPLICATE = "duplicate"
    FORMAT = "format"
    REQUIRED = "required"
    SYSTEM = "system"


class Severity(str, Enum):
    """Operator-facing severity of an error."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Errors that block completion until fixed
BLOCKING_ERROR_TYPES = frozenset({ErrorType.REQUIRED, ErrorType.VALIDATION})

# Errors an operator may skip instead of fixing
SKIPPABLE_ERROR_TYPES = frozenset({
    ErrorType.FORMAT,
    ErrorType.REFERENCE,
    ErrorType.DUPLICATE,
    ErrorType.SYSTEM,
})

DEFAULT_SEVERITY = {
    ErrorType.REQUIRED: Severity.HIGH,
    ErrorType.VALIDATION: Severity.MEDIUM,
    ErrorType.FORMAT: Severity.MEDIUM,
    ErrorType.REFERENCE: Severity.HIGH,
    ErrorType.DUPLICATE: Severity.LOW,
    ErrorType.SYSTEM: Severity.CRITICAL,
}

RETRYABLE_ERROR_TYPES = frozenset({ErrorType.REFERENCE, ErrorType.DUPLICATE, ErrorType.SYSTEM})


@dataclass
class FieldIssue:
    """A single rule failure on one field of one row."""
    error_type: ErrorType
    message: str
    field: Optional[str] = None
    value: Optional[Any] = None
    suggested_fix: Optional[str] = None

    @property
    def severity(self) -> Severity:
        return DEFAULT_SEVERITY[self.error_type]

    @property
    def can_retry(self) -> bool:
        return self.error_type in RETRYABLE_ERROR_TYPES

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "error_type": self.error_type.value,
            "message": self.message,
            "field": self.field,
            "value": self.value,
            "suggested_fix": self.suggested_fix,
            "severity": self.severity.value,
        }


@dataclass
class ImportError:
    """
    One failing source row.

    The top-level type, field and message describe the primary issue (the
    first one found in rule order). ``issues`` holds every field-level
    failure on the row. ``source_data`` is the raw row and is never changed
    by resolution actions; operator overrides live in ``applied_fixes``.
    """
    entity_type: str
    source_row_number: int
    source_data: Dict[str, str]
    error_message: str
    error_type: ErrorType
    field: Optional[str] = None
    suggested_fix: Optional[str] = None
    can_retry: bool = False
    severity: Severity = Severity.MEDIUM
    issues: List[FieldIssue] = dataclass_field(default_factory=list)
    applied_fixes: Dict[str, str] = dataclass_field(default_factory=dict)
    reviewed: bool = False
    attempts: int = 0
    id: str = dataclass_field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = dataclass_field(default_factory=datetime.utcnow)

    @classmethod
    def from_issues(
        cls,
        entity_type: str,
        source_row_number: int,
        source_data: Dict[str, str],
        issues: List[FieldIssue],
    ) -> "ImportError":
        """Build an error for a row from its field issues, primary issue first."""
        primary = issues[0]
        return cls(
            entity_type=entity_type,
            source_row_number=source_row_number,
            source_data=dict(source_data),
            error_message=primary.message,
            error_type=primary.error_type,
            field=primary.field,
            suggested_fix=primary.suggested_fix,
            can_retry=primary.can_retry,
            severity=primary.severity,
            issues=list(issues),
        )

    @property
    def is_blocking(self) -> bool:
        """Blocking errors must be fixed before the session can complete."""
        return self.error_type in BLOCKING_ERROR_TYPES

    @property
    def is_skippable(self) -> bool:
        return self.error_type in SKIPPABLE_ERROR_TYPES

    def effective_data(self) -> Dict[str, str]:
        """Source row with operator overrides layered on top."""
        data = dict(self.source_data)
        data.update(self.applied_fixes)
        return data

    def matches_text(self, text: str) -> bool:
        """Case-insensitive search over message, field and source values."""
        needle = text.lower()
        haystack = [self.error_message, self.field or ""]
        haystack.extend(str(v) for v in self.source_data.values())
        return any(needle in value.lower() for value in haystack)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "entity_type": self.entity_type,
            "source_row_number": self.source_row_number,
            "source_data": self.source_data,
            "error_message": self.error_message,
            "error_type": self.error_type.value,
            "field": self.field,
            "suggested_fix": self.suggested_fix,
            "can_retry": self.can_retry,
            "severity": self.severity.value,
            "blocking": self.is_blocking,
            "issues": [i.to_dict() for i in self.issues],
            "applied_fixes": self.applied_fixes,
            "reviewed": self.reviewed,
            "attempts": self.attempts,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class MappedRecord:
    """A row that passed validation, holding typed target values."""
    entity_type: str
    source_row_number: int
    data: Dict[str, Any]
    source_data: Dict[str, str] = dataclass_field(default_factory=dict)
    source_id: Optional[str] = None  # Id the row carried in the source CRM

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type,
            "source_row_number": self.source_row_number,
            "data": self.data,
            "source_id": self.source_id,
        }


@dataclass
class ValidationResult:
    """
    Output of one validation pass over an entity type's rows.

    ``errors`` is what the pass found. Once queued on the session, fixes and
    skips change the queue, not this list; report live counts through
    ``to_dict(errors=...)``.
    """
    entity_type: str
    valid_records: List[MappedRecord] = dataclass_field(default_factory=list)
    errors: List[ImportError] = dataclass_field(default_factory=list)
    mapping_version: int = 0

    @property
    def total(self) -> int:
        return len(self.valid_records) + len(self.errors)

    def errors_by_type(self, errors: Optional[List[ImportError]] = None) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for error in self.errors if errors is None else errors:
            counts[error.error_type.value] = counts.get(error.error_type.value, 0) + 1
        return counts

    def to_dict(self, errors: Optional[List[ImportError]] = None) -> Dict[str, Any]:
        """Convert to dictionary representation, counting ``errors`` when given."""
        errors = self.errors if errors is None else errors
        return {
            "entity_type": self.entity_type,
            "mapping_version": self.mapping_version,
            "valid_count": len(self.valid_records),
            "error_count": len(errors),
            "errors_by_type": self.errors_by_type(errors),
        }


class RecordStatus(str, Enum):
    """Where one source row stands in the session."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class RecordOutcome:
    """Per-row import outcome: the target id once committed, the queued error while failing."""
    entity_type: str
    source_row_number: int
    status: RecordStatus = RecordStatus.PENDING
    target_id: Optional[str] = None
    error_id: Optional[str] = None
    error_type: Optional[ErrorType] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type,
            "source_row_number": self.source_row_number,
            "status": self.status.value,
            "target_id": self.target_id,
            "error_id": self.error_id,
            "error_type": self.error_type.value if self.error_type else None,
            "error_message": self.error_message,
        }


@dataclass
class CommitResult:
    """Result of writing one record to the target system."""
    source_row_number: int
    success: bool = False
    target_id: Optional[str] = None  # ID assigned by target system
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_row_number": self.source_row_number,
            "success": self.success,
            "target_id": self.target_id,
            "error": self.error,
            "error_code": self.error_code,
        }


@dataclass
class RetryResult:
    """Outcome of re-validating (and committing) a single error row."""
    error_id: str
    success: bool
    target_id: Optional[str] = None
    error: Optional[ImportError] = None  # Replacement error on failure
    committed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "error_id": self.error_id,
            "success": self.success,
            "target_id": self.target_id,
            "committed": self.committed,
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class BulkActionSummary:
    """Outcome of a bulk action applied row by row."""
    action: str
    matched: int = 0
    succeeded: int = 0
    failed: int = 0
    error_ids_failed: List[str] = dataclass_field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "action": self.action,
            "matched": self.matched,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "error_ids_failed": self.error_ids_failed,
        }


@dataclass
class ErrorFilter:
    """Criteria for querying the error queue. Empty fields match everything."""
    entity_type: Optional[str] = None
    error_type: Optional[ErrorType] = None
    severity: Optional[Severity] = None
    text_search: Optional[str] = None

    def matches(self, error: ImportError) -> bool:
        if self.entity_type and error.entity_type != self.entity_type:
            return False
        if self.error_type and error.error_type != self.error_type:
            return False
        if self.severity and error.severity != self.severity:
            return False
        if self.text_search and not error.matches_text(self.text_search):
            return False
        return True

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ErrorFilter":
        """Create from dictionary representation."""
        data = data or {}
        error_type = data.get("error_type")
        severity = data.get("severity")
        return cls(
            entity_type=data.get("entity_type"),
            error_type=ErrorType(error_type) if error_type else None,
            severity=Severity(severity) if severity else None,
            text_search=data.get("text_search"),
        )
