"""Import session models: status machine, uploaded files, settings and progress."""

from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, Set, Tuple
from enum import Enum
from datetime import datetime
import os
import threading
import uuid

from .schema import EntityMappingSet
from .record import ImportError, ValidationResult


class SessionStatus(str, Enum):
    """Status of an import session."""
    CREATED = "created"
    UPLOADING = "uploading"
    MAPPING = "mapping"
    VALIDATING = "validating"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


ALLOWED_TRANSITIONS: Dict[SessionStatus, Set[SessionStatus]] = {
    SessionStatus.CREATED: {SessionStatus.UPLOADING, SessionStatus.CANCELLED},
    SessionStatus.UPLOADING: {
        SessionStatus.MAPPING, SessionStatus.FAILED, SessionStatus.CANCELLED,
    },
    SessionStatus.MAPPING: {
        SessionStatus.UPLOADING, SessionStatus.VALIDATING,
        SessionStatus.FAILED, SessionStatus.CANCELLED,
    },
    SessionStatus.VALIDATING: {
        SessionStatus.MAPPING, SessionStatus.IMPORTING,
        SessionStatus.FAILED, SessionStatus.CANCELLED,
    },
    SessionStatus.IMPORTING: {
        SessionStatus.VALIDATING, SessionStatus.COMPLETED,
        SessionStatus.FAILED, SessionStatus.CANCELLED, SessionStatus.ROLLED_BACK,
    },
    SessionStatus.COMPLETED: {SessionStatus.ROLLED_BACK},
    SessionStatus.FAILED: {SessionStatus.ROLLED_BACK},
    SessionStatus.CANCELLED: {SessionStatus.ROLLED_BACK},
    SessionStatus.ROLLED_BACK: set(),
}

# No further pipeline work is accepted in these states
TERMINAL_STATUSES = frozenset({
    SessionStatus.COMPLETED,
    SessionStatus.FAILED,
    SessionStatus.CANCELLED,
    SessionStatus.ROLLED_BACK,
})


@dataclass(frozen=True)
class SourceRow:
    """A raw data row keyed by header, tagged with its 1-based file position."""
    source_row_number: int
    values: Dict[str, str]


@dataclass(frozen=True)
class UploadedFile:
    """
    One parsed source file.

    Frozen once built. Re-uploading replaces the whole object.
    """
    file_name: str
    original_file_name: str
    file_size_bytes: int
    entity_type: str
    headers: Tuple[str, ...] = ()
    total_records: int = 0
    preview_rows: Tuple[Dict[str, str], ...] = ()
    suggested_mappings: Dict[str, int] = field(default_factory=dict)
    parse_error: Optional[Dict[str, Any]] = None
    rows: Tuple[SourceRow, ...] = ()
    uploaded_at: datetime = field(default_factory=datetime.utcnow, compare=False)

    @property
    def is_parsed(self) -> bool:
        return self.parse_error is None

    def to_dict(self, include_rows: bool = False) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "file_name": self.file_name,
            "original_file_name": self.original_file_name,
            "file_size_bytes": self.file_size_bytes,
            "entity_type": self.entity_type,
            "headers": list(self.headers),
            "total_records": self.total_records,
            "preview_rows": list(self.preview_rows),
            "suggested_mappings": self.suggested_mappings,
            "parse_error": self.parse_error,
            "uploaded_at": self.uploaded_at.isoformat(),
        }
        if include_rows:
            result["rows"] = [
                {"source_row_number": r.source_row_number, "values": r.values}
                for r in self.rows
            ]
        return result


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class ImportSettings:
    """Settings for one import session."""
    batch_size: int = 100
    max_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    preview_rows: int = 10
    max_file_size_bytes: int = 100 * 1024 * 1024

    # Rule toggles
    validate_references: bool = True
    detect_duplicates: bool = True
    validate_emails: bool = True

    # Commit options
    preserve_ids: bool = False
    auto_retry_references: bool = False

    # Default data transformations
    trim_whitespace: bool = True
    capitalize_names: bool = False
    standardize_phones: bool = True

    ENV_PREFIX = "CRM_IMPORT_"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {f.name: getattr(self, f.name) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ImportSettings":
        """Create from dictionary representation. Unknown keys are ignored."""
        data = data or {}
        defaults = cls()
        return cls(
            batch_size=int(data.get("batch_size", defaults.batch_size)),
            max_workers=int(data.get("max_workers", defaults.max_workers)),
            preview_rows=int(data.get("preview_rows", defaults.preview_rows)),
            max_file_size_bytes=int(data.get("max_file_size_bytes", defaults.max_file_size_bytes)),
            validate_references=data.get("validate_references", defaults.validate_references),
            detect_duplicates=data.get("detect_duplicates", defaults.detect_duplicates),
            validate_emails=data.get("validate_emails", defaults.validate_emails),
            preserve_ids=data.get("preserve_ids", defaults.preserve_ids),
            auto_retry_references=data.get("auto_retry_references", defaults.auto_retry_references),
            trim_whitespace=data.get("trim_whitespace", defaults.trim_whitespace),
            capitalize_names=data.get("capitalize_names", defaults.capitalize_names),
            standardize_phones=data.get("standardize_phones", defaults.standardize_phones),
        )

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None,
                 base: Optional[Dict[str, Any]] = None) -> "ImportSettings":
        """
        Build settings from ``CRM_IMPORT_*`` environment variables.

        Args:
            environ: Mapping to read from (defaults to ``os.environ``)
            base: Settings dictionary the environment overrides

        Returns:
            ImportSettings
        """
        environ = os.environ if environ is None else environ
        data = dict(base or {})
        defaults = cls()
        for f in fields(cls):
            raw = environ.get(cls.ENV_PREFIX + f.name.upper())
            if raw is None:
                continue
            if isinstance(getattr(defaults, f.name), bool):
                data[f.name] = _env_bool(raw)
            else:
                data[f.name] = int(raw)
        return cls.from_dict(data)

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "ImportSettings":
        """Return a copy with the given keys overridden."""
        data = self.to_dict()
        data.update(overrides or {})
        return ImportSettings.from_dict(data)


@dataclass
class EntityProgress:
    """Progress counters for one entity type."""
    entity_type: str
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    status: str = "pending"

    @property
    def percentage(self) -> float:
        if not self.total:
            return 0.0
        return round(100.0 * self.processed / self.total, 1)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": self.entity_type,
            "total": self.total,
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "percentage": self.percentage,
            "status": self.status,
        }


@dataclass
class AuditEvent:
    """A compliance record of a state transition or operator decision."""
    session_id: str
    event_type: str  # transition, skip, rollback, ...
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "session_id": self.session_id,
            "event_type": self.event_type,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class ImportSession:
    """
    One migration run for a firm.

    The session is the unit of isolation: every mutation happens under
    ``lock``, and ``cancel_event`` lets an in-flight validation or commit
    pass stop between batches.
    """
    firm_id: str
    entity_types: List[str] = field(default_factory=list)
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: SessionStatus = SessionStatus.CREATED
    settings: ImportSettings = field(default_factory=ImportSettings)
    created_at: datetime = field(default_factory=datetime.utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    current_step: Optional[str] = None
    failure_reason: Optional[str] = None

    files: Dict[str, UploadedFile] = field(default_factory=dict)
    mappings: Dict[str, EntityMappingSet] = field(default_factory=dict)
    validation_results: Dict[str, ValidationResult] = field(default_factory=dict)
    errors: Dict[str, ImportError] = field(default_factory=dict)

    # entity -> source row number -> target id
    committed_rows: Dict[str, Dict[int, str]] = field(default_factory=dict)
    skipped_rows: Dict[str, Set[int]] = field(default_factory=dict)
    # entity -> source id -> target id
    id_crosswalk: Dict[str, Dict[str, str]] = field(default_factory=dict)
    # (entity, target id) in commit order, used for rollback
    commit_log: List[Tuple[str, str]] = field(default_factory=list)
    audit_trail: List[AuditEvent] = field(default_factory=list)

    lock: threading.RLock = field(default_factory=threading.RLock, repr=False, compare=False)
    cancel_event: threading.Event = field(default_factory=threading.Event, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def can_transition(self, target: SessionStatus) -> bool:
        return target in ALLOWED_TRANSITIONS[self.status]

    def errors_for(self, entity_type: str) -> List[ImportError]:
        """Errors of one entity type in source row order."""
        return sorted(
            (e for e in self.errors.values() if e.entity_type == entity_type),
            key=lambda e: e.source_row_number,
        )

    def has_committed(self, entity_type: str) -> bool:
        """A commit pass has run for this entity type in this session."""
        return entity_type in self.committed_rows

    def handled_rows(self, entity_type: str) -> Set[int]:
        """Rows already committed or skipped; later passes leave them alone."""
        return set(self.committed_rows.get(entity_type, {})) | self.skipped_rows.get(entity_type, set())

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "session_id": self.session_id,
            "firm_id": self.firm_id,
            "entity_types": list(self.entity_types),
            "status": self.status.value,
            "settings": self.settings.to_dict(),
            "created_at": self.created_at.isoformat(),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "current_step": self.current_step,
            "failure_reason": self.failure_reason,
            "files": {k: v.to_dict() for k, v in self.files.items()},
            "mappings": {k: v.to_dict() for k, v in self.mappings.items()},
            "validation_results": {
                k: v.to_dict(errors=self.errors_for(k)) for k, v in self.validation_results.items()
            },
            "error_count": len(self.errors),
            "committed_counts": {k: len(v) for k, v in self.committed_rows.items()},
            "skipped_counts": {k: len(v) for k, v in self.skipped_rows.items()},
        }
