"""Store of reusable mapping templates, keyed by entity type."""

import logging
import re
import threading
from pathlib import Path
from typing import Dict, List, Optional

from ..exceptions import MappingError
from ..models.schema import MappingTemplate

logger = logging.getLogger(__name__)


# Column names of a standard PerfexCRM export
BUILTIN_TEMPLATES = [
    {
        "name": "perfex_clients",
        "entity_type": "clients",
        "description": "PerfexCRM customers export",
        "mappings": {
            "name": {"source_field": "company"},
            "phone": {"source_field": "phonenumber", "transformation": "phone_format"},
            "addressStreet": {"source_field": "address"},
            "addressCity": {"source_field": "city"},
            "addressStateProvince": {"source_field": "state"},
            "addressPostalCode": {"source_field": "zip"},
            "addressCountry": {"source_field": "country"},
            "website": {"source_field": "website"},
            "taxId": {"source_field": "vat"},
        },
    },
    {
        "name": "perfex_projects",
        "entity_type": "projects",
        "description": "PerfexCRM projects export",
        "mappings": {
            "name": {"source_field": "name"},
            "description": {"source_field": "description"},
            "clientId": {"source_field": "clientid"},
            "startDate": {"source_field": "start_date", "transformation": "date_format"},
            "endDate": {"source_field": "deadline", "transformation": "date_format"},
            "budgetAmount": {"source_field": "project_cost"},
            "estimatedHours": {"source_field": "estimated_hours"},
            "status": {"source_field": "status"},
        },
    },
    {
        "name": "perfex_tasks",
        "entity_type": "tasks",
        "description": "PerfexCRM tasks export",
        "mappings": {
            "title": {"source_field": "name"},
            "description": {"source_field": "description"},
            "projectId": {"source_field": "rel_id"},
            "clientId": {"source_field": "clientid"},
            "assignedTo": {"source_field": "assignee"},
            "dueDate": {"source_field": "duedate", "transformation": "date_format"},
            "priority": {"source_field": "priority"},
            "status": {"source_field": "status"},
        },
    },
    {
        "name": "perfex_contacts",
        "entity_type": "contacts",
        "description": "PerfexCRM contacts export",
        "mappings": {
            "name": {"source_field": "firstname", "transformation": "capitalize"},
            "email": {"source_field": "email", "transformation": "lowercase"},
            "phone": {"source_field": "phonenumber", "transformation": "phone_format"},
            "contactType": {"source_field": "title"},
            "clientId": {"source_field": "userid"},
        },
    },
    {
        "name": "perfex_invoices",
        "entity_type": "invoices",
        "description": "PerfexCRM invoices export",
        "mappings": {
            "invoiceNumber": {"source_field": "number"},
            "clientId": {"source_field": "clientid"},
            "invoiceDate": {"source_field": "date", "transformation": "date_format"},
            "dueDate": {"source_field": "duedate", "transformation": "date_format"},
            "subtotal": {"source_field": "subtotal"},
            "taxAmount": {"source_field": "total_tax"},
            "totalAmount": {"source_field": "total"},
            "status": {"source_field": "status"},
        },
    },
]

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


class TemplateStore:
    """
    Store for named MappingTemplates.

    Supports:
    - Built-in PerfexCRM export templates
    - Loading from and saving to a directory of JSON files
    - Create, read, update, delete keyed by (entity type, name)
    """

    def __init__(self, templates_dir: Optional[str] = None, include_builtin: bool = True):
        """
        Initialize the template store.

        Args:
            templates_dir: Directory of template JSON files (also the save target)
            include_builtin: Register the built-in PerfexCRM templates
        """
        self._templates: Dict[str, Dict[str, MappingTemplate]] = {}
        self._lock = threading.RLock()
        self.templates_dir = templates_dir

        if include_builtin:
            for data in BUILTIN_TEMPLATES:
                self.save(MappingTemplate.from_dict(data), persist=False)
        if templates_dir:
            self.load_templates_from_directory(templates_dir)

    def load_templates_from_directory(self, directory: str) -> int:
        """
        Load all template files from a directory.

        Args:
            directory: Path to directory containing template JSON files

        Returns:
            Number of templates loaded
        """
        loaded = 0
        path = Path(directory)

        if not path.exists():
            logger.warning(f"Templates directory does not exist: {directory}")
            return 0

        for file_path in sorted(path.glob("**/*.json")):
            try:
                template = MappingTemplate.from_json_file(str(file_path))
                self.save(template, persist=False)
                loaded += 1
                logger.info(f"Loaded template: {template.name} from {file_path}")
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"Failed to load template from {file_path}: {e}")

        return loaded

    def _key(self, entity_type) -> str:
        return str(getattr(entity_type, "value", entity_type))

    def get(self, entity_type, name: str) -> Optional[MappingTemplate]:
        with self._lock:
            return self._templates.get(self._key(entity_type), {}).get(name)

    def require(self, entity_type, name: str) -> MappingTemplate:
        """Get a template or raise MappingError."""
        template = self.get(entity_type, name)
        if template is None:
            raise MappingError(f"Template not found: {self._key(entity_type)}/{name}")
        return template

    def list(self, entity_type=None) -> List[MappingTemplate]:
        """List templates, optionally for one entity type."""
        with self._lock:
            if entity_type is not None:
                return list(self._templates.get(self._key(entity_type), {}).values())
            return [t for group in self._templates.values() for t in group.values()]

    def save(self, template: MappingTemplate, persist: bool = True) -> MappingTemplate:
        """Create or replace a template; written to ``templates_dir`` when set."""
        if not template.name:
            raise MappingError("Template name is required")
        with self._lock:
            self._templates.setdefault(self._key(template.entity_type), {})[template.name] = template
        if persist and self.templates_dir:
            path = self._path_for(template.entity_type, template.name)
            path.parent.mkdir(parents=True, exist_ok=True)
            template.save_to_json(str(path))
            logger.info(f"Saved template {template.name} to {path}")
        return template

    def delete(self, entity_type, name: str) -> bool:
        with self._lock:
            removed = self._templates.get(self._key(entity_type), {}).pop(name, None)
        if removed is None:
            return False
        if self.templates_dir:
            path = self._path_for(entity_type, name)
            if path.exists():
                path.unlink()
        return True

    def _path_for(self, entity_type, name: str) -> Path:
        safe_name = _SAFE_NAME.sub("_", name)
        return Path(self.templates_dir) / f"{self._key(entity_type)}__{safe_name}.json"
