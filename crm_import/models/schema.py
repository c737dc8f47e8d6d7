"""Schema models for target fields, field mappings and mapping templates."""

from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional
from enum import Enum
import json


class EntityType(str, Enum):
    """Target record kinds that can be imported."""
    CLIENTS = "clients"
    PROJECTS = "projects"
    TASKS = "tasks"
    CONTACTS = "contacts"
    INVOICES = "invoices"
    TIME_ENTRIES = "time_entries"


class DataType(str, Enum):
    """Semantic type of a target field."""
    STRING = "string"
    NUMBER = "number"
    DATE = "date"
    BOOLEAN = "boolean"
    EMAIL = "email"
    PHONE = "phone"


class TransformationType(str, Enum):
    """Value transformations applied before validation."""
    TRIM = "trim"
    UPPERCASE = "uppercase"
    LOWERCASE = "lowercase"
    CAPITALIZE = "capitalize"
    PHONE_FORMAT = "phone_format"
    DATE_FORMAT = "date_format"


class ValidationRuleType(str, Enum):
    """Extra per-mapping validation rules."""
    REQUIRED = "required"
    EMAIL = "email"
    PHONE = "phone"
    DATE = "date"
    NUMBER = "number"
    LENGTH = "length"
    PATTERN = "pattern"


@dataclass(frozen=True)
class TargetField:
    """Definition of a field in the target CRM schema."""
    name: str
    label: str
    type: DataType
    required: bool = False
    aliases: tuple = ()
    references: Optional[str] = None  # Entity kind a foreign key points at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        result = {
            "name": self.name,
            "label": self.label,
            "type": self.type.value,
            "required": self.required,
        }
        if self.references:
            result["references"] = self.references
        return result


@dataclass
class ValidationRule:
    """An extra validation rule attached to a field mapping."""
    type: ValidationRuleType
    value: Optional[Any] = None
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "type": self.type.value,
            "value": self.value,
            "message": self.message,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationRule":
        """Create from dictionary representation."""
        return cls(
            type=ValidationRuleType(data.get("type", "pattern")),
            value=data.get("value"),
            message=data.get("message", ""),
        )


@dataclass
class FieldMapping:
    """Binding of one source column to one target field."""
    target_field: str
    source_field: Optional[str] = None  # None when the target is unmapped
    data_type: DataType = DataType.STRING
    required: bool = False
    transformation: Optional[TransformationType] = None
    validation_rules: List[ValidationRule] = field(default_factory=list)
    default_value: Optional[str] = None  # Used when the source cell is empty

    @property
    def is_mapped(self) -> bool:
        return bool(self.source_field)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "source_field": self.source_field,
            "target_field": self.target_field,
            "data_type": self.data_type.value,
            "required": self.required,
            "transformation": self.transformation.value if self.transformation else None,
            "validation_rules": [r.to_dict() for r in self.validation_rules],
            "default_value": self.default_value,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FieldMapping":
        """Create from dictionary representation."""
        data_type = data.get("data_type") or data.get("dataType") or "string"
        try:
            data_type = DataType(data_type)
        except ValueError:
            data_type = DataType.STRING

        transformation = data.get("transformation")
        transformation = TransformationType(transformation) if transformation else None

        return cls(
            source_field=data.get("source_field", data.get("sourceField")),
            target_field=data.get("target_field", data.get("targetField", "")),
            data_type=data_type,
            required=data.get("required", False),
            transformation=transformation,
            validation_rules=[
                ValidationRule.from_dict(r)
                for r in data.get("validation_rules", data.get("validationRules", []))
            ],
            default_value=data.get("default_value", data.get("defaultValue")),
        )


@dataclass
class EntityMappingSet:
    """
    The live set of field mappings for one entity type in one session.

    ``version`` increases on every change and is used to reject writes based
    on a stale read.
    """
    entity_type: str
    mappings: Dict[str, FieldMapping] = field(default_factory=dict)
    version: int = 1

    def get(self, target_field: str) -> Optional[FieldMapping]:
        return self.mappings.get(target_field)

    def mapped(self) -> List[FieldMapping]:
        """Mappings that have a source column bound."""
        return [m for m in self.mappings.values() if m.is_mapped]

    def source_for(self, target_field: str) -> Optional[str]:
        mapping = self.mappings.get(target_field)
        return mapping.source_field if mapping else None

    def with_mapping(self, mapping: FieldMapping) -> "EntityMappingSet":
        """Return a copy with one mapping replaced and the version bumped."""
        mappings = dict(self.mappings)
        mappings[mapping.target_field] = mapping
        return replace(self, mappings=mappings, version=self.version + 1)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "entity_type": str(getattr(self.entity_type, "value", self.entity_type)),
            "version": self.version,
            "mappings": {k: v.to_dict() for k, v in self.mappings.items()},
        }


@dataclass
class MappingTemplate:
    """A named, reusable set of mappings for one entity type."""
    name: str
    entity_type: EntityType
    description: str = ""
    mappings: Dict[str, FieldMapping] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "name": self.name,
            "entity_type": str(getattr(self.entity_type, "value", self.entity_type)),
            "description": self.description,
            "mappings": {k: v.to_dict() for k, v in self.mappings.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MappingTemplate":
        """Create from dictionary representation."""
        mappings = {}
        for target_field, mapping_data in data.get("mappings", {}).items():
            if isinstance(mapping_data, str):
                # Shorthand: {"email": "Email Address"}
                mapping_data = {"source_field": mapping_data}
            mappings[target_field] = FieldMapping.from_dict(
                {**mapping_data, "target_field": target_field}
            )

        entity_type = data.get("entity_type", "clients")
        try:
            entity_type = EntityType(entity_type)
        except ValueError:
            pass  # registered from a schema file

        return cls(
            name=data.get("name", ""),
            entity_type=entity_type,
            description=data.get("description", ""),
            mappings=mappings,
        )

    @classmethod
    def from_json_file(cls, file_path: str) -> "MappingTemplate":
        """Load template from JSON file."""
        with open(file_path, 'r') as f:
            data = json.load(f)
        return cls.from_dict(data)

    def save_to_json(self, file_path: str) -> None:
        """Save template to JSON file."""
        with open(file_path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)
