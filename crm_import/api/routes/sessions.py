"""Import session endpoints: upload, mapping, validation, commit and lifecycle."""

import asyncio
from typing import List, Optional

from fastapi import APIRouter, File, Form, Query, UploadFile

from ..models import (
    MappingUpdate,
    RecordStatus,
    RollbackRequest,
    SessionCreate,
    TemplateApply,
    ValidateRequest,
)
from ..storage import session_storage

router = APIRouter()


@router.post("")
def create_session(data: SessionCreate):
    """Create a new import session."""
    session = session_storage.orchestrator.create_session(data.firm_id, data.entity_types, data.settings)
    return session_storage.add(session).to_dict()


@router.get("")
def list_sessions():
    """List all sessions."""
    sessions = session_storage.list_all()
    return {"sessions": [s.to_dict() for s in sessions], "total": len(sessions)}


@router.get("/{session_id}")
def get_session(session_id: str):
    return session_storage.get(session_id).to_dict()


@router.delete("/{session_id}")
def delete_session(session_id: str):
    """Delete a session. Committed records stay in the target."""
    session = session_storage.get(session_id)
    session.cancel_event.set()
    session_storage.delete(session_id)
    return {"status": "deleted"}


@router.post("/{session_id}/files")
async def upload_file(
    session_id: str,
    file: UploadFile = File(...),
    entity_type: Optional[str] = Form(None),
):
    """Upload and parse one export file. Parsing runs off the event loop."""
    session = session_storage.get(session_id)
    content = await file.read()
    loop = asyncio.get_running_loop()
    uploaded = await loop.run_in_executor(
        None,
        session_storage.orchestrator.upload_file,
        session,
        content,
        file.filename or "upload.csv",
        entity_type,
    )
    return uploaded.to_dict()


@router.post("/{session_id}/files/batch")
async def upload_files(session_id: str, files: List[UploadFile] = File(...)):
    """Upload several files; each file's entity type comes from its name."""
    session = session_storage.get(session_id)
    uploads = []
    for upload in files:
        uploads.append((await upload.read(), upload.filename or "upload.csv", None))
    loop = asyncio.get_running_loop()
    results = await loop.run_in_executor(None, session_storage.orchestrator.upload_files, session, uploads)
    return {"files": [r.to_dict() for r in results]}


@router.delete("/{session_id}/files/{entity_type}")
def remove_file(session_id: str, entity_type: str):
    session = session_storage.get(session_id)
    session_storage.orchestrator.remove_file(session, entity_type)
    return {"status": "removed", "entity_type": entity_type}


@router.get("/{session_id}/mappings/{entity_type}")
def get_mappings(session_id: str, entity_type: str):
    session = session_storage.get(session_id)
    return session_storage.orchestrator.get_mappings(session, entity_type).to_dict()


@router.put("/{session_id}/mappings/{entity_type}")
def set_mapping(session_id: str, entity_type: str, data: MappingUpdate):
    """Bind one target field; rejected with 409 when ``expected_version`` is stale."""
    session = session_storage.get(session_id)
    rules = [r.to_rule() for r in data.validation_rules] if data.validation_rules is not None else None
    updated = session_storage.orchestrator.set_mapping(
        session,
        entity_type,
        data.target_field,
        data.source_field,
        data_type=data.data_type,
        transformation=data.transformation,
        validation_rules=rules,
        default_value=data.default_value,
        expected_version=data.expected_version,
    )
    return updated.to_dict()


@router.post("/{session_id}/mappings/{entity_type}/template")
def apply_template(session_id: str, entity_type: str, data: TemplateApply):
    session = session_storage.get(session_id)
    updated = session_storage.orchestrator.apply_template(
        session, entity_type, data.template_name, data.expected_version
    )
    return updated.to_dict()


@router.get("/{session_id}/mappings/{entity_type}/check")
def check_mappings(session_id: str, entity_type: str):
    session = session_storage.get(session_id)
    return session_storage.orchestrator.check_mappings(session, entity_type).to_dict()


@router.get("/{session_id}/preview/{entity_type}")
def preview(session_id: str, entity_type: str, limit: Optional[int] = None):
    """Post-transform preview rows with their issues."""
    session = session_storage.get(session_id)
    rows = session_storage.orchestrator.preview(session, entity_type, limit)
    return {"entity_type": entity_type, "rows": rows}


@router.post("/{session_id}/validate")
def validate(session_id: str, data: Optional[ValidateRequest] = None):
    session = session_storage.get(session_id)
    entity_types = data.entity_types if data else None
    results = session_storage.orchestrator.validate(session, entity_types)
    return {"results": {k: v.to_dict() for k, v in results.items()}, "status": session.status.value}


@router.post("/{session_id}/commit/{entity_type}")
def commit(session_id: str, entity_type: str):
    """Commit the pending valid records of one entity type."""
    session = session_storage.get(session_id)
    results = session_storage.orchestrator.commit(session, entity_type)
    return {
        "entity_type": entity_type,
        "committed": sum(1 for r in results if r.success),
        "failed": sum(1 for r in results if not r.success),
        "results": [r.to_dict() for r in results],
    }


@router.post("/{session_id}/execute")
def execute(session_id: str):
    """Validate and commit every uploaded entity type in dependency order."""
    session = session_storage.get(session_id)
    results = session_storage.orchestrator.execute(session)
    return {
        "status": session.status.value,
        "committed": {k: sum(1 for r in v if r.success) for k, v in results.items()},
        "progress": session_storage.orchestrator.get_progress(session),
    }


@router.post("/{session_id}/complete")
def complete(session_id: str):
    session = session_storage.get(session_id)
    return session_storage.orchestrator.complete(session).to_dict()


@router.post("/{session_id}/cancel")
def cancel(session_id: str):
    session = session_storage.get(session_id)
    return session_storage.orchestrator.cancel(session).to_dict()


@router.post("/{session_id}/rollback")
def rollback(session_id: str, data: Optional[RollbackRequest] = None):
    """Delete every record the session committed."""
    session = session_storage.get(session_id)
    deleted = session_storage.orchestrator.rollback(session, data.reason if data else None)
    return {"status": session.status.value, "deleted": deleted}


@router.get("/{session_id}/progress")
def get_progress(session_id: str):
    session = session_storage.get(session_id)
    return session_storage.orchestrator.get_progress(session)


@router.get("/{session_id}/records")
def list_records(
    session_id: str,
    entity_type: Optional[str] = None,
    status: Optional[RecordStatus] = None,
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
):
    """Per-row import outcomes, filterable by entity type and status."""
    session = session_storage.get(session_id)
    return session_storage.orchestrator.list_records(session, entity_type, status, limit, offset)


@router.get("/{session_id}/report")
def get_report(session_id: str):
    session = session_storage.get(session_id)
    return session_storage.orchestrator.build_report(session)


@router.get("/{session_id}/audit")
def get_audit_trail(session_id: str):
    session = session_storage.get(session_id)
    with session.lock:
        events = [e.to_dict() for e in session.audit_trail]
    return {"events": events}
