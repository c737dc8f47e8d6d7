"""Exceptions raised by the import pipeline."""

from typing import Any, Dict, Optional


class ImportPipelineError(Exception):
    """Base class for all pipeline errors."""


class ParseError(ImportPipelineError):
    """
    A file could not be turned into a header row and row set.

    When parsing is delegated to a remote service, ``raw_response`` holds
    whatever the service sent back (e.g. an HTML error page) so operators can
    tell a broken upstream apart from a genuinely empty export.
    """

    def __init__(
        self,
        message: str,
        file_name: Optional[str] = None,
        raw_response: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.file_name = file_name
        self.raw_response = raw_response
        self.status_code = status_code

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "message": self.message,
            "file_name": self.file_name,
            "raw_response": self.raw_response,
            "status_code": self.status_code,
        }


class MappingError(ImportPipelineError):
    """A mapping refers to an unknown target field or source column."""


class MappingConflictError(ImportPipelineError):
    """A mapping write was based on a version that is no longer current."""

    def __init__(self, entity_type: str, expected_version: int, current_version: int):
        super().__init__(
            f"Mapping for {entity_type} changed since it was read "
            f"(expected version {expected_version}, current {current_version})"
        )
        self.entity_type = entity_type
        self.expected_version = expected_version
        self.current_version = current_version


class SessionStateError(ImportPipelineError):
    """An operation is not allowed in the session's current state."""


class DependencyOrderError(ImportPipelineError):
    """Entity types committed out of foreign-key order, or a dependency cycle."""


class ImportCancelledError(ImportPipelineError):
    """An in-flight validation or commit pass was cancelled."""


class TransformationError(ImportPipelineError):
    """A transformation function failed on a value."""

    def __init__(self, transformation: str, value: Any, reason: str, field: Optional[str] = None):
        super().__init__(f"Transformation '{transformation}' failed on {value!r}: {reason}")
        self.transformation = transformation
        self.value = value
        self.reason = reason
        self.field = field


class CommitError(ImportPipelineError):
    """The commit sink failed a whole batch."""


class NotFoundError(ImportPipelineError):
    """A session, error, file or template does not exist."""
