"""Mapping template endpoints."""

from typing import Optional
from fastapi import APIRouter, HTTPException

from ..models import TemplateCreate
from ..storage import session_storage
from ...models.schema import MappingTemplate

router = APIRouter()


@router.get("")
def list_templates(entity_type: Optional[str] = None):
    """List templates, optionally for one entity type."""
    templates = session_storage.orchestrator.template_store.list(entity_type)
    return {"templates": [t.to_dict() for t in templates], "total": len(templates)}


@router.get("/{entity_type}/{name}")
def get_template(entity_type: str, name: str):
    template = session_storage.orchestrator.template_store.get(entity_type, name)
    if not template:
        raise HTTPException(status_code=404, detail="Template not found")
    return template.to_dict()


@router.post("")
def save_template(data: TemplateCreate):
    """Create or replace a template."""
    orchestrator = session_storage.orchestrator
    template = MappingTemplate.from_dict({
        "name": data.name,
        "entity_type": orchestrator.registry.resolve_entity_type(data.entity_type),
        "description": data.description,
        "mappings": data.mappings,
    })
    return orchestrator.template_store.save(template).to_dict()


@router.delete("/{entity_type}/{name}")
def delete_template(entity_type: str, name: str):
    if not session_storage.orchestrator.template_store.delete(entity_type, name):
        raise HTTPException(status_code=404, detail="Template not found")
    return {"status": "deleted"}
