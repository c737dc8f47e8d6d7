"""Error resolution workstation: query, fix, skip and bulk-handle queued import errors."""

import csv
import io
import json
import logging
from typing import Any, Dict, List, Optional

from ..exceptions import ImportPipelineError, SessionStateError
from ..models.record import (
    BLOCKING_ERROR_TYPES,
    BulkActionSummary,
    ErrorFilter,
    ImportError,
    RetryResult,
)
from ..models.session import ImportSession
from .validator import suggest_fixes

logger = logging.getLogger(__name__)

BULK_ACTIONS = ("skip_all", "retry_all_fixable", "mark_reviewed")

CSV_COLUMNS = [
    "error_id",
    "entity_type",
    "source_row_number",
    "error_type",
    "severity",
    "blocking",
    "field",
    "error_message",
    "suggested_fix",
    "attempts",
    "source_data",
]


class ErrorWorkstation:
    """
    Operator-facing service over a session's error queue.

    Supports:
    - Filtered, ordered error listing and per-entity summaries
    - Static fix suggestions per error type
    - Single-row fixes with field overrides (re-validated, then committed)
    - Audited skips of skippable errors
    - Bulk actions applied row by row
    - CSV export of the queue
    """

    def __init__(self, orchestrator):
        """
        Initialize the workstation.

        Args:
            orchestrator: ImportOrchestrator owning validation and commits
        """
        self.orchestrator = orchestrator
        self.registry = orchestrator.registry

    def list_errors(self, session: ImportSession, error_filter: Optional[ErrorFilter] = None) -> List[ImportError]:
        """
        List queued errors matching a filter.

        Errors are ordered by entity commit order, then source row number.
        """
        error_filter = error_filter or ErrorFilter()
        with session.lock:
            errors = [e for e in session.errors.values() if error_filter.matches(e)]
            kinds = list(dict.fromkeys([*session.files, *(e.entity_type for e in errors)]))
        order = {entity: i for i, entity in enumerate(self.registry.commit_order(kinds))}
        return sorted(errors, key=lambda e: (order.get(e.entity_type, len(order)), e.source_row_number))

    def error_summary(self, session: ImportSession) -> Dict[str, Any]:
        """Per-entity error counts by type, plus blocking and skippable totals."""
        entities: Dict[str, Dict[str, Any]] = {}
        blocking = 0
        for error in self.list_errors(session):
            summary = entities.setdefault(error.entity_type, {
                "total": 0,
                "by_type": {},
                "blocking": 0,
                "skippable": 0,
            })
            summary["total"] += 1
            summary["by_type"][error.error_type.value] = summary["by_type"].get(error.error_type.value, 0) + 1
            if error.is_blocking:
                summary["blocking"] += 1
                blocking += 1
            else:
                summary["skippable"] += 1

        total = sum(s["total"] for s in entities.values())
        return {
            "total": total,
            "blocking": blocking,
            "skippable": total - blocking,
            "blocking_types": sorted(t.value for t in BLOCKING_ERROR_TYPES),
            "entities": entities,
        }

    def suggestions(self, session: ImportSession, error_id: str) -> List[str]:
        """Static guidance for an error, its own suggested fix first."""
        error = self.orchestrator.get_error(session, error_id)
        suggestions = suggest_fixes(error.error_type)
        if error.suggested_fix and error.suggested_fix not in suggestions:
            suggestions.insert(0, error.suggested_fix)
        return suggestions

    def apply_fix(self, session: ImportSession, error_id: str, fixed_fields: Dict[str, Any]) -> RetryResult:
        """
        Re-validate an error row with operator overrides.

        Args:
            session: Session holding the error
            error_id: Id of the queued error
            fixed_fields: New values keyed by source header or target field name

        Returns:
            RetryResult; on failure ``error`` holds the replacement error
        """
        result = self.orchestrator.retry_error(session, error_id, fixed_fields)
        self.orchestrator.audit(session, "fix", {
            "error_id": error_id,
            "fields": sorted((fixed_fields or {}).keys()),
            "success": result.success,
        })
        return result

    def skip(self, session: ImportSession, error_id: str, reason: Optional[str] = None) -> ImportError:
        """
        Skip a skippable error; its row is left out of the import.

        Raises:
            SessionStateError: the error blocks completion and must be fixed
        """
        with session.lock:
            if session.is_terminal:
                raise SessionStateError(f"Session {session.session_id} is {session.status.value}")
            error = self.orchestrator.get_error(session, error_id)
            if not error.is_skippable:
                raise SessionStateError(
                    f"{error.error_type.value} errors block completion and cannot be skipped"
                )
            del session.errors[error_id]
            session.skipped_rows.setdefault(error.entity_type, set()).add(error.source_row_number)
            self.orchestrator.audit(session, "skip", {
                "error_id": error_id,
                "entity_type": error.entity_type,
                "source_row_number": error.source_row_number,
                "error_type": error.error_type.value,
                "reason": reason,
            })
        logger.info(f"Skipped {error.entity_type} row {error.source_row_number} ({error.error_type.value})")
        return error

    def mark_reviewed(self, session: ImportSession, error_id: str) -> ImportError:
        with session.lock:
            error = self.orchestrator.get_error(session, error_id)
            error.reviewed = True
            return error

    def bulk_action(
        self,
        session: ImportSession,
        action: str,
        error_filter: Optional[ErrorFilter] = None,
        reason: Optional[str] = None,
    ) -> BulkActionSummary:
        """
        Apply an action to every matching error, one row at a time.

        Successes are never undone because other rows failed. ``skip_all``
        and ``retry_all_fixable`` only touch the errors their action applies
        to (skippable, and retryable or skippable, respectively).

        Args:
            action: skip_all, retry_all_fixable or mark_reviewed

        Returns:
            BulkActionSummary
        """
        if action not in BULK_ACTIONS:
            raise ValueError(f"Unknown bulk action '{action}'. Expected one of: {', '.join(BULK_ACTIONS)}")

        errors = self.list_errors(session, error_filter)
        if action == "skip_all":
            errors = [e for e in errors if e.is_skippable]
        elif action == "retry_all_fixable":
            errors = [e for e in errors if e.can_retry or e.is_skippable]

        summary = BulkActionSummary(action=action, matched=len(errors))
        for error in errors:
            try:
                if action == "skip_all":
                    self.skip(session, error.id, reason)
                    ok = True
                elif action == "retry_all_fixable":
                    ok = self.orchestrator.retry_error(session, error.id).success
                else:
                    self.mark_reviewed(session, error.id)
                    ok = True
            except ImportPipelineError as e:
                logger.error(f"{action} failed for error {error.id}: {e}")
                ok = False

            if ok:
                summary.succeeded += 1
            else:
                summary.failed += 1
                summary.error_ids_failed.append(error.id)

        self.orchestrator.audit(session, "bulk_action", summary.to_dict())
        logger.info(f"Bulk {action}: {summary.succeeded} succeeded, {summary.failed} failed")
        return summary

    def export_errors_csv(self, session: ImportSession, error_filter: Optional[ErrorFilter] = None) -> str:
        """Render matching errors as a CSV report."""
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=CSV_COLUMNS)
        writer.writeheader()
        for error in self.list_errors(session, error_filter):
            writer.writerow({
                "error_id": error.id,
                "entity_type": error.entity_type,
                "source_row_number": error.source_row_number,
                "error_type": error.error_type.value,
                "severity": error.severity.value,
                "blocking": error.is_blocking,
                "field": error.field or "",
                "error_message": error.error_message,
                "suggested_fix": error.suggested_fix or "",
                "attempts": error.attempts,
                "source_data": json.dumps(error.source_data, ensure_ascii=False),
            })
        return buffer.getvalue()
