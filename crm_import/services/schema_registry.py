"""Schema registry for the target CRM's entity types and fields."""

import json
import logging
from typing import Any, Dict, Iterable, List, Optional
from pathlib import Path

from ..exceptions import DependencyOrderError, MappingError
from ..models.schema import DataType, TargetField

logger = logging.getLogger(__name__)


# Foreign-key field name -> entity kind it points at
REFERENCE_FIELDS: Dict[str, str] = {
    "clientId": "clients",
    "projectId": "projects",
    "contactId": "contacts",
    "taskId": "tasks",
    "assignedTo": "users",
    "userId": "users",
}

# Business keys used for duplicate-record detection
NATURAL_KEYS: Dict[str, List[str]] = {
    "clients": ["email"],
    "contacts": ["email"],
    "invoices": ["invoiceNumber"],
}

# Entity kinds that exist in the target but are never imported
REFERENCE_ONLY_KINDS = ("users",)


def _f(name, label, type_, required=False, aliases=()):
    return TargetField(
        name=name,
        label=label,
        type=type_,
        required=required,
        aliases=tuple(aliases),
        references=REFERENCE_FIELDS.get(name),
    )


S, N, D, B, E, P = (
    DataType.STRING, DataType.NUMBER, DataType.DATE,
    DataType.BOOLEAN, DataType.EMAIL, DataType.PHONE,
)

DEFAULT_FIELDS: Dict[str, List[TargetField]] = {
    "clients": [
        _f("name", "Company Name", S, True, ("company", "client", "client name", "customer", "customer name", "organization", "business name")),
        _f("email", "Email Address", E, False, ("email", "e-mail", "mail", "contact email")),
        _f("phone", "Phone Number", P, False, ("phone", "phonenumber", "telephone", "tel", "mobile")),
        _f("addressStreet", "Street Address", S, False, ("address", "street", "address line 1", "billing street")),
        _f("addressCity", "City", S, False, ("city", "town", "billing city")),
        _f("addressStateProvince", "State/Province", S, False, ("state", "province", "region", "billing state")),
        _f("addressPostalCode", "Postal Code", S, False, ("zip", "zip code", "postcode", "postal", "billing zip")),
        _f("addressCountry", "Country", S, False, ("country", "billing country")),
        _f("website", "Website", S, False, ("url", "web", "homepage")),
        _f("taxId", "Tax ID/VAT Number", S, False, ("vat", "tax id", "vat number", "tax number", "gst", "ein")),
        _f("industry", "Industry", S, False, ("sector",)),
    ],
    "projects": [
        _f("name", "Project Name", S, True, ("project", "project title", "title")),
        _f("description", "Description", S, False, ("details", "notes", "summary")),
        _f("clientId", "Client ID", N, True, ("client", "client id", "customer id", "clientid", "customer")),
        _f("startDate", "Start Date", D, False, ("start", "start date", "started")),
        _f("endDate", "End Date", D, False, ("end", "deadline", "due date", "finish date")),
        _f("budgetAmount", "Budget Amount", N, False, ("budget", "project cost", "cost")),
        _f("estimatedHours", "Estimated Hours", N, False, ("hours", "estimate", "estimated")),
        _f("status", "Status", S, False, ("state", "project status")),
    ],
    "tasks": [
        _f("title", "Task Title", S, True, ("task", "name", "task name", "subject")),
        _f("description", "Description", S, False, ("details", "notes")),
        _f("projectId", "Project ID", N, False, ("project", "project id", "projectid")),
        _f("clientId", "Client ID", N, True, ("client", "client id", "customer id", "clientid")),
        _f("assignedTo", "Assigned To", N, False, ("assignee", "assigned", "owner", "assignees")),
        _f("dueDate", "Due Date", D, False, ("due", "duedate", "deadline")),
        _f("priority", "Priority", S, False, ()),
        _f("status", "Status", S, False, ("state", "task status")),
    ],
    "contacts": [
        _f("name", "Contact Name", S, True, ("contact", "full name", "contact person")),
        _f("email", "Email Address", E, False, ("email", "e-mail", "mail")),
        _f("phone", "Phone Number", P, False, ("phone", "phonenumber", "telephone", "mobile")),
        _f("companyName", "Company Name", S, False, ("company", "organization", "account")),
        _f("contactType", "Contact Type", S, True, ("type", "role", "category")),
        _f("address", "Address", S, False, ("street",)),
        _f("city", "City", S, False, ("town",)),
        _f("province", "Province/State", S, False, ("state", "region")),
        _f("clientId", "Client ID", N, False, ("client id", "clientid", "customer id")),
    ],
    "invoices": [
        _f("invoiceNumber", "Invoice Number", S, True, ("invoice", "invoice no", "number", "invoice #", "invoice id")),
        _f("clientId", "Client ID", N, True, ("client", "client id", "customer id", "clientid", "customer")),
        _f("contactId", "Contact ID", N, False, ("contact", "contact id")),
        _f("invoiceDate", "Invoice Date", D, True, ("date", "issue date", "issued", "invoice date")),
        _f("dueDate", "Due Date", D, True, ("due", "duedate", "payment due")),
        _f("subtotal", "Subtotal", N, True, ("sub total", "net", "net amount")),
        _f("taxAmount", "Tax Amount", N, False, ("tax", "total tax", "vat amount")),
        _f("totalAmount", "Total Amount", N, True, ("total", "amount", "grand total", "gross")),
        _f("status", "Status", S, False, ("payment status", "state")),
    ],
    "time_entries": [
        _f("date", "Date", D, True, ("entry date", "work date", "day")),
        _f("hours", "Hours", N, True, ("duration", "time", "time spent", "hours worked")),
        _f("description", "Description", S, False, ("note", "notes", "details")),
        _f("projectId", "Project ID", N, False, ("project", "project id")),
        _f("taskId", "Task ID", N, False, ("task", "task id")),
        _f("userId", "User ID", N, False, ("user", "staff", "employee", "staff id")),
        _f("billable", "Billable", B, False, ("is billable", "billed")),
    ],
}


class SchemaRegistry:
    """
    Registry of target CRM entity types and their fields.

    Supports:
    - Field lookups (labels, types, required flags, aliases)
    - Foreign-key and natural-key metadata per entity type
    - Dependency ordering of entity types for commits
    - Loading extra or overriding entity definitions from JSON files
    """

    def __init__(self, schemas_dir: Optional[str] = None):
        """
        Initialize the schema registry.

        Args:
            schemas_dir: Optional directory of JSON entity definitions
        """
        self.fields: Dict[str, List[TargetField]] = {
            entity: list(entity_fields) for entity, entity_fields in DEFAULT_FIELDS.items()
        }
        self.natural_key_fields: Dict[str, List[str]] = {k: list(v) for k, v in NATURAL_KEYS.items()}

        if schemas_dir:
            self.load_schemas_from_directory(schemas_dir)

    def load_schemas_from_directory(self, directory: str) -> int:
        """
        Load entity definitions from a directory.

        Each file holds ``{"entity_type": ..., "fields": [...], "natural_keys": [...]}``.

        Args:
            directory: Path to directory containing schema JSON files

        Returns:
            Number of entity definitions loaded
        """
        loaded = 0
        path = Path(directory)

        if not path.exists():
            logger.warning(f"Schema directory does not exist: {directory}")
            return 0

        for file_path in sorted(path.glob("**/*.json")):
            try:
                with open(file_path, 'r') as f:
                    data = json.load(f)
                self.register_entity(
                    data["entity_type"],
                    [self._field_from_dict(fd) for fd in data.get("fields", [])],
                    natural_keys=data.get("natural_keys"),
                )
                loaded += 1
                logger.info(f"Loaded entity schema: {data['entity_type']} from {file_path}")
            except (OSError, ValueError, KeyError) as e:
                logger.error(f"Failed to load schema from {file_path}: {e}")

        return loaded

    def _field_from_dict(self, data: Dict[str, Any]) -> TargetField:
        name = data["name"]
        return TargetField(
            name=name,
            label=data.get("label", name),
            type=DataType(data.get("type", "string")),
            required=data.get("required", False),
            aliases=tuple(data.get("aliases", ())),
            references=data.get("references", REFERENCE_FIELDS.get(name)),
        )

    def register_entity(
        self,
        entity_type: str,
        fields: List[TargetField],
        natural_keys: Optional[List[str]] = None,
    ) -> None:
        """Register (or replace) the field list of an entity type."""
        entity_type = str(getattr(entity_type, "value", entity_type))
        self.fields[entity_type] = list(fields)
        if natural_keys is not None:
            self.natural_key_fields[entity_type] = list(natural_keys)

    def resolve_entity_type(self, entity_type: Any) -> str:
        """
        Normalize an entity type (enum member or string) to its registry key.

        Raises:
            MappingError: if the entity type is not registered
        """
        key = str(getattr(entity_type, "value", entity_type)).strip().lower()
        if key not in self.fields:
            raise MappingError(f"Unknown entity type: {entity_type}")
        return key

    def list_entity_types(self) -> List[str]:
        """List all importable entity types."""
        return list(self.fields.keys())

    def get_fields(self, entity_type: Any) -> List[TargetField]:
        return list(self.fields[self.resolve_entity_type(entity_type)])

    def get_field(self, entity_type: Any, field_name: str) -> Optional[TargetField]:
        """Get a target field by name."""
        for target_field in self.get_fields(entity_type):
            if target_field.name == field_name:
                return target_field
        return None

    def is_required(self, entity_type: Any, field_name: str) -> bool:
        target_field = self.get_field(entity_type, field_name)
        return bool(target_field and target_field.required)

    def required_fields(self, entity_type: Any) -> List[str]:
        return [f.name for f in self.get_fields(entity_type) if f.required]

    def reference_fields(self, entity_type: Any) -> Dict[str, str]:
        """Foreign-key fields of an entity type and the kinds they point at."""
        return {f.name: f.references for f in self.get_fields(entity_type) if f.references}

    def reference_target(self, entity_type: Any, field_name: str) -> Optional[str]:
        target_field = self.get_field(entity_type, field_name)
        return target_field.references if target_field else None

    def natural_keys(self, entity_type: Any) -> List[str]:
        return list(self.natural_key_fields.get(self.resolve_entity_type(entity_type), []))

    def dependencies(self, entity_type: Any) -> List[str]:
        """
        Importable entity types this one holds foreign keys into.

        Reference-only kinds (users) are excluded; they already exist in
        the target.
        """
        entity_type = self.resolve_entity_type(entity_type)
        deps = []
        for target in self.reference_fields(entity_type).values():
            if target in self.fields and target != entity_type and target not in deps:
                deps.append(target)
        return deps

    def commit_order(self, entity_types: Optional[Iterable[Any]] = None) -> List[str]:
        """
        Order entity types so every type follows the types it references.

        Stable: independent types keep their input order. Dependencies outside
        the given set are ignored.

        Raises:
            DependencyOrderError: if the dependency graph has a cycle
        """
        if entity_types is None:
            entity_types = self.list_entity_types()
        requested: List[str] = []
        for entity_type in entity_types:
            key = self.resolve_entity_type(entity_type)
            if key not in requested:
                requested.append(key)

        pending = {e: {d for d in self.dependencies(e) if d in requested} for e in requested}
        ordered: List[str] = []
        while pending:
            ready = [e for e in requested if e in pending and not pending[e]]
            if not ready:
                cycle = ", ".join(sorted(pending))
                raise DependencyOrderError(f"Dependency cycle between entity types: {cycle}")
            entity_type = ready[0]
            ordered.append(entity_type)
            del pending[entity_type]
            for deps in pending.values():
                deps.discard(entity_type)
        return ordered

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            entity: {
                "fields": [f.to_dict() for f in entity_fields],
                "natural_keys": self.natural_key_fields.get(entity, []),
                "dependencies": self.dependencies(entity),
            }
            for entity, entity_fields in self.fields.items()
        }

