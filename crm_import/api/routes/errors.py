"""Error resolution endpoints for a session's error queue."""

from typing import Optional
from fastapi import APIRouter
from fastapi.responses import Response

from ..models import BulkActionRequest, ErrorFilterModel, FixRequest, SkipRequest
from ..storage import session_storage
from ...models.record import ErrorType, Severity

router = APIRouter()


def _filter(
    entity_type: Optional[str],
    error_type: Optional[ErrorType],
    severity: Optional[Severity],
    text_search: Optional[str],
):
    return ErrorFilterModel(
        entity_type=entity_type,
        error_type=error_type,
        severity=severity,
        text_search=text_search,
    ).to_filter()


@router.get("")
def list_errors(
    session_id: str,
    entity_type: Optional[str] = None,
    error_type: Optional[ErrorType] = None,
    severity: Optional[Severity] = None,
    text_search: Optional[str] = None,
):
    """List errors, ordered by entity commit order then source row."""
    session = session_storage.get(session_id)
    errors = session_storage.workstation.list_errors(
        session, _filter(entity_type, error_type, severity, text_search)
    )
    return {"errors": [e.to_dict() for e in errors], "total": len(errors)}


@router.get("/summary")
def error_summary(session_id: str):
    session = session_storage.get(session_id)
    return session_storage.workstation.error_summary(session)


@router.get("/export")
def export_errors(
    session_id: str,
    entity_type: Optional[str] = None,
    error_type: Optional[ErrorType] = None,
    severity: Optional[Severity] = None,
    text_search: Optional[str] = None,
):
    """Download matching errors as CSV."""
    session = session_storage.get(session_id)
    content = session_storage.workstation.export_errors_csv(
        session, _filter(entity_type, error_type, severity, text_search)
    )
    return Response(
        content=content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="import_errors_{session_id}.csv"'},
    )


@router.post("/bulk")
def bulk_action(session_id: str, data: BulkActionRequest):
    """Apply an action to every matching error; partial success is reported, not undone."""
    session = session_storage.get(session_id)
    summary = session_storage.workstation.bulk_action(
        session, data.action.value, data.filter.to_filter(), data.reason
    )
    return summary.to_dict()


@router.get("/{error_id}")
def get_error(session_id: str, error_id: str):
    session = session_storage.get(session_id)
    return session_storage.orchestrator.get_error(session, error_id).to_dict()


@router.get("/{error_id}/suggestions")
def get_suggestions(session_id: str, error_id: str):
    session = session_storage.get(session_id)
    return {"error_id": error_id, "suggestions": session_storage.workstation.suggestions(session, error_id)}


@router.post("/{error_id}/fix")
def apply_fix(session_id: str, error_id: str, data: FixRequest):
    session = session_storage.get(session_id)
    return session_storage.workstation.apply_fix(session, error_id, data.fixed_fields).to_dict()


@router.post("/{error_id}/skip")
def skip_error(session_id: str, error_id: str, data: Optional[SkipRequest] = None):
    session = session_storage.get(session_id)
    error = session_storage.workstation.skip(session, error_id, data.reason if data else None)
    return {"status": "skipped", "error": error.to_dict()}
