"""Column-to-field mapping suggestions, templates and mapping edits."""

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence

from ..exceptions import MappingError
from ..models.schema import (
    DataType,
    EntityMappingSet,
    FieldMapping,
    MappingTemplate,
    TargetField,
    TransformationType,
    ValidationRule,
)
from .schema_registry import SchemaRegistry

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def normalize_header(name: str) -> str:
    """Lowercase and strip everything but letters and digits."""
    return _NON_ALNUM.sub("", (name or "").lower())


def infer_data_type(field_name: str, declared: Optional[DataType] = None) -> DataType:
    """
    Infer a mapping's data type from the target field name.

    Substring rules, case-insensitive: email, phone, date, then
    amount/budget/id as numbers. When no rule fires the registry's declared
    type is used, falling back to string.
    """
    name = (field_name or "").lower()
    if "email" in name:
        return DataType.EMAIL
    if "phone" in name:
        return DataType.PHONE
    if "date" in name:
        return DataType.DATE
    if "amount" in name or "budget" in name or "id" in name:
        return DataType.NUMBER
    return declared or DataType.STRING


@dataclass
class MappingCheck:
    """Pre-validation check of a mapping set."""
    missing_required: List[str] = field(default_factory=list)
    duplicate_sources: Dict[str, List[str]] = field(default_factory=dict)
    unmapped_headers: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.missing_required and not self.duplicate_sources

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "ok": self.ok,
            "missing_required": self.missing_required,
            "duplicate_sources": [
                {"source_field": s, "targets": t} for s, t in self.duplicate_sources.items()
            ],
            "unmapped_headers": self.unmapped_headers,
            "warnings": self.warnings,
        }


class MappingEngine:
    """
    Builds and edits the field mappings of an entity type.

    Supports:
    - Deterministic header suggestions (field name, then label, then aliases)
    - Template application by case-insensitive substring matching
    - Single mapping edits with a version bump
    - Detection of source columns bound to several targets
    """

    def __init__(self, registry: Optional[SchemaRegistry] = None):
        self.registry = registry or SchemaRegistry()

    def suggest_mapping(self, headers: Sequence[str], entity_type: Any) -> Dict[str, int]:
        """
        Suggest a source column for each target field.

        Three passes over the target fields: exact normalized match on the
        field name, then on the label, then on each alias. A header is used
        at most once and the first match wins.

        Args:
            headers: Ordered source headers
            entity_type: Entity type to map onto

        Returns:
            Dictionary of target field name -> source column index
        """
        target_fields = self.registry.get_fields(entity_type)
        normalized = [normalize_header(h) for h in headers]
        used: set = set()
        suggestions: Dict[str, int] = {}

        def candidates(target_field: TargetField, stage: int) -> List[str]:
            if stage == 0:
                return [target_field.name]
            if stage == 1:
                return [target_field.label]
            return list(target_field.aliases)

        for stage in range(3):
            for target_field in target_fields:
                if target_field.name in suggestions:
                    continue
                for candidate in candidates(target_field, stage):
                    wanted = normalize_header(candidate)
                    index = next(
                        (i for i, h in enumerate(normalized) if h == wanted and i not in used and h),
                        None,
                    )
                    if index is not None:
                        suggestions[target_field.name] = index
                        used.add(index)
                        break

        logger.debug(f"Suggested {len(suggestions)} mappings for {entity_type}")
        return suggestions

    def _new_mapping(self, target_field: TargetField, source_field: Optional[str] = None) -> FieldMapping:
        return FieldMapping(
            target_field=target_field.name,
            source_field=source_field,
            data_type=infer_data_type(target_field.name, target_field.type),
            required=target_field.required,
        )

    def build_mapping_set(
        self,
        entity_type: Any,
        headers: Sequence[str],
        suggestions: Optional[Dict[str, int]] = None,
    ) -> EntityMappingSet:
        """
        Build the initial mapping set for a file.

        Every target field gets a mapping; fields without a suggestion stay
        unmapped. ``required`` always comes from the registry.
        """
        entity_type = self.registry.resolve_entity_type(entity_type)
        if suggestions is None:
            suggestions = self.suggest_mapping(headers, entity_type)

        mappings = {}
        for target_field in self.registry.get_fields(entity_type):
            index = suggestions.get(target_field.name)
            source = headers[index] if index is not None and index < len(headers) else None
            mappings[target_field.name] = self._new_mapping(target_field, source)

        return EntityMappingSet(entity_type=entity_type, mappings=mappings)

    def match_header(self, source_field: str, headers: Sequence[str]) -> Optional[str]:
        """First header containing, or contained in, the template's source field."""
        wanted = (source_field or "").lower()
        if not wanted:
            return None
        for header in headers:
            current = header.lower()
            if not current:
                continue
            if wanted in current or current in wanted:
                return header
        return None

    def apply_template(
        self,
        template: MappingTemplate,
        headers: Sequence[str],
    ) -> EntityMappingSet:
        """
        Seed a mapping set from a template.

        Template entries whose source field matches no header leave their
        target unmapped; this is not an error.

        Args:
            template: Template to apply
            headers: Headers of the current file

        Returns:
            New EntityMappingSet with only matched targets bound
        """
        entity_type = self.registry.resolve_entity_type(template.entity_type)
        result = self.build_mapping_set(entity_type, headers, suggestions={})
        matched = 0

        for target_name, template_mapping in template.mappings.items():
            target_field = self.registry.get_field(entity_type, target_name)
            if target_field is None:
                logger.warning(f"Template {template.name} names unknown field {entity_type}.{target_name}")
                continue
            header = self.match_header(template_mapping.source_field, headers)
            if header is None:
                continue

            data_type = template_mapping.data_type
            if data_type == DataType.STRING:
                data_type = infer_data_type(target_name, target_field.type)

            result.mappings[target_name] = replace(
                template_mapping,
                target_field=target_name,
                source_field=header,
                data_type=data_type,
                required=target_field.required,
                validation_rules=list(template_mapping.validation_rules),
            )
            matched += 1

        logger.info(f"Applied template {template.name}: {matched}/{len(template.mappings)} fields matched")
        return result

    def merge_template(self, current: EntityMappingSet, seeded: EntityMappingSet) -> EntityMappingSet:
        """Overlay the matched entries of a template result onto the live set."""
        mappings = dict(current.mappings)
        for target_name, mapping in seeded.mappings.items():
            if mapping.is_mapped:
                mappings[target_name] = mapping
        return replace(current, mappings=mappings, version=current.version + 1)

    def set_mapping(
        self,
        mapping_set: EntityMappingSet,
        target_field: str,
        source_field: Optional[str],
        data_type: Optional[DataType] = None,
        transformation: Optional[TransformationType] = None,
        validation_rules: Optional[List[ValidationRule]] = None,
        headers: Optional[Sequence[str]] = None,
        default_value: Optional[str] = None,
    ) -> EntityMappingSet:
        """
        Bind (or unbind, with ``source_field=None``) one target field.

        Binding a column that is already bound elsewhere is allowed; it is
        reported by ``check_mappings`` and flagged on every row at validation.

        Raises:
            MappingError: unknown target field, or source column not in ``headers``
        """
        registry_field = self.registry.get_field(mapping_set.entity_type, target_field)
        if registry_field is None:
            raise MappingError(f"Unknown target field: {mapping_set.entity_type}.{target_field}")
        if source_field and headers is not None and source_field not in headers:
            raise MappingError(f"Source column not found in file: {source_field}")

        current = mapping_set.get(target_field) or self._new_mapping(registry_field)
        updated = replace(
            current,
            source_field=source_field or None,
            data_type=data_type or current.data_type,
            required=registry_field.required,
            transformation=transformation if transformation is not None else current.transformation,
            validation_rules=list(validation_rules) if validation_rules is not None else list(current.validation_rules),
            default_value=default_value if default_value is not None else current.default_value,
        )
        return mapping_set.with_mapping(updated)

    def find_duplicate_sources(self, mapping_set: EntityMappingSet) -> Dict[str, List[str]]:
        """Source columns bound to more than one target field."""
        bound: Dict[str, List[str]] = {}
        for mapping in mapping_set.mapped():
            bound.setdefault(mapping.source_field, []).append(mapping.target_field)
        return {source: targets for source, targets in bound.items() if len(targets) > 1}

    def check_mappings(
        self,
        mapping_set: EntityMappingSet,
        headers: Optional[Sequence[str]] = None,
    ) -> MappingCheck:
        """Report missing required targets, duplicate sources and unused columns."""
        check = MappingCheck()
        for name in self.registry.required_fields(mapping_set.entity_type):
            mapping = mapping_set.get(name)
            if not (mapping and (mapping.is_mapped or mapping.default_value)):
                check.missing_required.append(name)

        check.duplicate_sources = self.find_duplicate_sources(mapping_set)
        for source, targets in check.duplicate_sources.items():
            check.warnings.append(f"Column '{source}' is mapped to {', '.join(targets)}")

        if headers is not None:
            bound = {m.source_field for m in mapping_set.mapped()}
            check.unmapped_headers = [h for h in headers if h not in bound]
            if check.unmapped_headers:
                check.warnings.append(f"{len(check.unmapped_headers)} source column(s) are not mapped")

        return check


SINGULAR_NAMES = {
    "clients": "client",
    "projects": "project",
    "tasks": "task",
    "contacts": "contact",
    "invoices": "invoice",
    "time_entries": "timeentry",
}

# Extra id headers used by known CRM exports
EXTRA_ID_HEADERS = {
    "clients": ("userid",),
}


def find_source_id_column(headers: Sequence[str], entity_type: str) -> Optional[str]:
    """
    Find the column holding the record's own id in the source CRM.

    Matches ``id``, ``<singular>id`` and ``<singular>_id`` (normalized), plus
    known export-specific names. Foreign-key columns never match because
    their prefix names another entity type.
    """
    entity_type = str(getattr(entity_type, "value", entity_type))
    singular = SINGULAR_NAMES.get(entity_type, entity_type.rstrip("s"))
    wanted = ["id", f"{singular}id", *EXTRA_ID_HEADERS.get(entity_type, ())]
    normalized = {normalize_header(h): h for h in reversed(list(headers))}
    for candidate in wanted:
        if candidate in normalized:
            return normalized[candidate]
    return None
