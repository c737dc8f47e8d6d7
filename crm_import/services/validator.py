"""Validation engine: classifies mapped rows as valid records or import errors."""

import re
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from dateutil import parser as date_parser

from ..exceptions import ImportCancelledError, TransformationError
from ..loaders.base import TargetLookup
from ..models.record import (
    ErrorType,
    FieldIssue,
    ImportError,
    MappedRecord,
    ValidationResult,
)
from ..models.schema import DataType, EntityMappingSet, FieldMapping, ValidationRuleType
from ..models.session import ImportSettings, SourceRow
from .mapping_engine import MappingEngine
from .schema_registry import SchemaRegistry
from .transformer import TransformEngine

logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[A-Za-z0-9.!#$%&'*+/=?^_`{|}~-]+@[A-Za-z0-9-]+(\.[A-Za-z0-9-]+)*\.[A-Za-z]{2,}$")
NUMBER_PATTERN = re.compile(r"^[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?$")
TRUE_VALUES = frozenset({"true", "yes", "y", "1", "t"})
FALSE_VALUES = frozenset({"false", "no", "n", "0", "f"})

# Two different fill-in defaults; a date string that parses to the same
# value under both names a full calendar date.
_DATE_DEFAULTS = (datetime(2000, 1, 1), datetime(2001, 2, 2))

FIX_SUGGESTIONS: Dict[ErrorType, List[str]] = {
    ErrorType.VALIDATION: [
        "Check data format and constraints",
        "Verify field length requirements",
        "Ensure data matches expected pattern",
        "Map each source column to a single target field",
    ],
    ErrorType.REFERENCE: [
        "Import referenced records first",
        "Verify ID mapping is correct",
        "Check for missing relationships",
    ],
    ErrorType.DUPLICATE: [
        "Skip duplicate records",
        "Update existing records instead",
        "Use different unique identifiers",
    ],
    ErrorType.FORMAT: [
        "Convert data to expected format",
        "Check date/time formatting",
        "Verify number formatting",
    ],
    ErrorType.REQUIRED: [
        "Provide missing required data",
        "Use default values where appropriate",
        "Review field mapping requirements",
    ],
    ErrorType.SYSTEM: [
        "Retry the record",
        "Check the transformation configured for the field",
        "Contact support if the error persists",
    ],
}


def suggest_fixes(error_type: Any) -> List[str]:
    """Static operator guidance for an error type."""
    return list(FIX_SUGGESTIONS.get(ErrorType(error_type), []))


def is_valid_email(value: str) -> bool:
    return bool(EMAIL_PATTERN.match(value))


def is_valid_phone(value: str) -> bool:
    """Digit-count heuristic: 7 to 15 digits, only phone punctuation around them."""
    if re.search(r"[^\d\s()+.\-x]", value, re.IGNORECASE):
        return False
    return 7 <= len(re.sub(r"\D", "", value)) <= 15


def parse_number(value: str) -> Optional[float]:
    cleaned = value.replace(",", "").strip()
    if cleaned.startswith("$"):
        cleaned = cleaned[1:]
    if not NUMBER_PATTERN.match(cleaned):
        return None
    return float(cleaned)


def parse_date(value: str) -> Optional[str]:
    """
    Parse a full calendar date to ISO ``YYYY-MM-DD``.

    Impossible dates (day 45, month 13) and partial dates are rejected,
    never clamped.
    """
    try:
        first, second = (date_parser.parse(value, default=d) for d in _DATE_DEFAULTS)
    except (ValueError, OverflowError):
        return None
    if first.date() != second.date():
        return None
    return first.date().isoformat()


def parse_boolean(value: str) -> Optional[bool]:
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    return None


@dataclass
class RowOutcome:
    """Per-row evaluation result before batch-level checks."""
    row: SourceRow
    values: Dict[str, str] = field(default_factory=dict)
    issues: List[FieldIssue] = field(default_factory=list)

    @property
    def failed_fields(self) -> set:
        return {i.field for i in self.issues if i.field}


class RecordValidator:
    """
    Validator for mapped source rows.

    Supports:
    - Required, duplicate-mapping, format, reference and duplicate-record
      rules, evaluated in that order; the first failure per field wins
    - Per-row fault isolation (transform or internal failures become
      system errors on that row only)
    - Parallel evaluation in batch-sized chunks with source order preserved
    - Cancellation between chunks
    """

    def __init__(
        self,
        registry: Optional[SchemaRegistry] = None,
        transform_engine: Optional[TransformEngine] = None,
    ):
        """
        Initialize the validator.

        Args:
            registry: Schema registry for required, reference and natural-key metadata
            transform_engine: Engine that produces post-transform values
        """
        self.registry = registry or SchemaRegistry()
        self.transform_engine = transform_engine or TransformEngine()
        self.mapping_engine = MappingEngine(self.registry)

    def validate(
        self,
        entity_type: str,
        mapping_set: EntityMappingSet,
        rows: Sequence[SourceRow],
        lookup: Optional[TargetLookup] = None,
        settings: Optional[ImportSettings] = None,
        crosswalk: Optional[Dict[str, Dict[str, str]]] = None,
        cancel_event: Optional[threading.Event] = None,
        source_id_column: Optional[str] = None,
    ) -> ValidationResult:
        """
        Validate all rows of one entity type.

        Args:
            entity_type: Entity type of the rows
            mapping_set: Mapping snapshot to validate against
            rows: Source rows in file order
            lookup: Target existence checks (reference and duplicate rules)
            settings: Session settings
            crosswalk: Source id -> target id per entity type, for ids
                committed earlier in the session
            cancel_event: Checked between chunks
            source_id_column: Column holding each row's own source id

        Returns:
            ValidationResult whose valid records and errors partition ``rows``

        Raises:
            ImportCancelledError: if ``cancel_event`` is set between chunks
        """
        settings = settings or ImportSettings()
        entity_type = self.registry.resolve_entity_type(entity_type)
        duplicates = self.mapping_engine.find_duplicate_sources(mapping_set)
        batch_size = max(1, settings.batch_size)

        def evaluate(row: SourceRow) -> RowOutcome:
            return self.evaluate_row(
                entity_type, mapping_set, row, lookup, settings, crosswalk, duplicates
            )

        outcomes: List[RowOutcome] = []
        with ThreadPoolExecutor(max_workers=max(1, settings.max_workers)) as executor:
            for start in range(0, len(rows), batch_size):
                if cancel_event is not None and cancel_event.is_set():
                    raise ImportCancelledError(
                        f"Validation of {entity_type} cancelled after {start} of {len(rows)} rows"
                    )
                chunk = rows[start:start + batch_size]
                outcomes.extend(executor.map(evaluate, chunk))

        if settings.detect_duplicates:
            self._flag_batch_duplicates(entity_type, outcomes, {})

        result = ValidationResult(entity_type=entity_type, mapping_version=mapping_set.version)
        for outcome in outcomes:
            if outcome.issues:
                result.errors.append(ImportError.from_issues(
                    entity_type, outcome.row.source_row_number, outcome.row.values, outcome.issues
                ))
            else:
                result.valid_records.append(
                    self.build_record(entity_type, mapping_set, outcome, source_id_column)
                )

        logger.info(
            f"Validated {len(rows)} {entity_type} rows: "
            f"{len(result.valid_records)} valid, {len(result.errors)} errors"
        )
        return result

    def validate_row(
        self,
        entity_type: str,
        mapping_set: EntityMappingSet,
        row: SourceRow,
        lookup: Optional[TargetLookup] = None,
        settings: Optional[ImportSettings] = None,
        crosswalk: Optional[Dict[str, Dict[str, str]]] = None,
        source_id_column: Optional[str] = None,
        seen_keys: Optional[Dict[Tuple[str, str], int]] = None,
    ) -> Tuple[Optional[MappedRecord], List[FieldIssue]]:
        """
        Validate a single row, e.g. on retry with operator overrides.

        Args:
            seen_keys: Natural keys already claimed by other pending rows,
                as ``(field, normalized value) -> source row number``

        Returns:
            (MappedRecord, []) when valid, otherwise (None, issues)
        """
        settings = settings or ImportSettings()
        entity_type = self.registry.resolve_entity_type(entity_type)
        duplicates = self.mapping_engine.find_duplicate_sources(mapping_set)
        outcome = self.evaluate_row(
            entity_type, mapping_set, row, lookup, settings, crosswalk, duplicates
        )
        if settings.detect_duplicates and seen_keys:
            self._flag_batch_duplicates(entity_type, [outcome], dict(seen_keys))
        if outcome.issues:
            return None, outcome.issues
        return self.build_record(entity_type, mapping_set, outcome, source_id_column), []

    def evaluate_row(
        self,
        entity_type: str,
        mapping_set: EntityMappingSet,
        row: SourceRow,
        lookup: Optional[TargetLookup],
        settings: ImportSettings,
        crosswalk: Optional[Dict[str, Dict[str, str]]],
        duplicates: Dict[str, List[str]],
    ) -> RowOutcome:
        """Run rules 1 to 5 on one row. Never raises."""
        outcome = RowOutcome(row=row)
        try:
            outcome.values = self.transform_engine.transform_row(row.values, mapping_set, settings)
        except TransformationError as e:
            outcome.issues.append(FieldIssue(
                error_type=ErrorType.SYSTEM,
                message=f"Transformation '{e.transformation}' failed on {e.field}: {e.reason}",
                field=e.field,
                value=e.value,
                suggested_fix="Fix the value or change the field's transformation",
            ))
            return outcome

        try:
            self._check_required(entity_type, mapping_set, outcome)
            self._check_duplicate_mapping(duplicates, outcome)
            self._check_formats(mapping_set, settings, outcome)
            if settings.validate_references and lookup is not None:
                self._check_references(entity_type, outcome, lookup, crosswalk or {})
            if settings.detect_duplicates and lookup is not None:
                self._check_existing_records(entity_type, outcome, lookup)
        except Exception as e:
            logger.error(f"Unexpected error validating {entity_type} row {row.source_row_number}: {e}")
            outcome.issues.append(FieldIssue(
                error_type=ErrorType.SYSTEM,
                message=f"Unexpected error during validation: {e}",
                suggested_fix="Retry the record",
            ))
        return outcome

    def _add(self, outcome: RowOutcome, issue: FieldIssue) -> None:
        if issue.field and issue.field in outcome.failed_fields:
            return
        outcome.issues.append(issue)

    def _check_required(self, entity_type: str, mapping_set: EntityMappingSet, outcome: RowOutcome) -> None:
        for name in self.registry.required_fields(entity_type):
            if outcome.values.get(name, "") != "":
                continue
            target_field = self.registry.get_field(entity_type, name)
            mapping = mapping_set.get(name)
            if mapping is None or not mapping.is_mapped:
                message = f"Required field '{target_field.label}' is not mapped"
            else:
                message = f"Required field '{target_field.label}' is empty"
            self._add(outcome, FieldIssue(
                error_type=ErrorType.REQUIRED,
                message=message,
                field=name,
                suggested_fix=f"Provide a value for {target_field.label}",
            ))

    def _check_duplicate_mapping(self, duplicates: Dict[str, List[str]], outcome: RowOutcome) -> None:
        for source, targets in duplicates.items():
            if not str(outcome.row.values.get(source, "")).strip():
                continue
            outcome.issues.append(FieldIssue(
                error_type=ErrorType.VALIDATION,
                message=f"Column '{source}' is mapped to multiple fields: {', '.join(targets)}",
                field=None,
                value=source,
                suggested_fix="Map the column to a single target field",
            ))

    def _check_formats(self, mapping_set: EntityMappingSet, settings: ImportSettings, outcome: RowOutcome) -> None:
        for mapping in mapping_set.mappings.values():
            value = outcome.values.get(mapping.target_field, "")
            if value == "" or mapping.target_field in outcome.failed_fields:
                continue
            issue = self._check_type(mapping.data_type, mapping.target_field, value, settings)
            if issue is None:
                issue = self._check_rules(mapping, value)
            if issue is not None:
                self._add(outcome, issue)

    def _check_type(
        self,
        data_type: DataType,
        field_name: str,
        value: str,
        settings: ImportSettings,
    ) -> Optional[FieldIssue]:
        """Check a value against the mapping's data type."""
        if data_type == DataType.EMAIL and settings.validate_emails and not is_valid_email(value):
            return FieldIssue(ErrorType.FORMAT, f"Invalid email address: {value}", field_name, value,
                              "Use format: user@example.com")
        if data_type == DataType.PHONE and not is_valid_phone(value):
            return FieldIssue(ErrorType.FORMAT, f"Invalid phone number: {value}", field_name, value,
                              "Use a phone number with 7 to 15 digits")
        if data_type == DataType.DATE and parse_date(value) is None:
            return FieldIssue(ErrorType.FORMAT, f"Invalid date: {value}", field_name, value,
                              "Use YYYY-MM-DD format")
        if data_type == DataType.NUMBER and parse_number(value) is None:
            return FieldIssue(ErrorType.FORMAT, f"Invalid number: {value}", field_name, value,
                              "Use a plain numeric value")
        if data_type == DataType.BOOLEAN and parse_boolean(value) is None:
            return FieldIssue(ErrorType.FORMAT, f"Invalid boolean: {value}", field_name, value,
                              "Use true/false or yes/no")
        return None

    def _check_rules(self, mapping: FieldMapping, value: str) -> Optional[FieldIssue]:
        """Extra rules attached to the mapping; failures are format errors."""
        type_rules = {
            ValidationRuleType.EMAIL: DataType.EMAIL,
            ValidationRuleType.PHONE: DataType.PHONE,
            ValidationRuleType.DATE: DataType.DATE,
            ValidationRuleType.NUMBER: DataType.NUMBER,
        }
        for rule in mapping.validation_rules:
            failed = False
            if rule.type in type_rules:
                failed = self._check_type(
                    type_rules[rule.type], mapping.target_field, value, ImportSettings()
                ) is not None
            elif rule.type == ValidationRuleType.LENGTH and rule.value is not None:
                failed = len(value) > int(rule.value)
            elif rule.type == ValidationRuleType.PATTERN and rule.value:
                failed = re.search(str(rule.value), value) is None
            # Required-ness comes from the schema registry only

            if failed:
                message = rule.message or f"Value for {mapping.target_field} fails {rule.type.value} rule"
                return FieldIssue(ErrorType.FORMAT, message, mapping.target_field, value,
                                  "Convert data to expected format")
        return None

    def _check_references(
        self,
        entity_type: str,
        outcome: RowOutcome,
        lookup: TargetLookup,
        crosswalk: Dict[str, Dict[str, str]],
    ) -> None:
        for field_name, target_kind in self.registry.reference_fields(entity_type).items():
            value = outcome.values.get(field_name, "")
            if value == "" or field_name in outcome.failed_fields:
                continue
            if self.resolve_reference(target_kind, value, lookup, crosswalk) is not None:
                continue
            self._add(outcome, FieldIssue(
                error_type=ErrorType.REFERENCE,
                message=f"Referenced {target_kind} record '{value}' does not exist",
                field=field_name,
                value=value,
                suggested_fix=f"Import {target_kind} first or use a valid {field_name}",
            ))

    def resolve_reference(
        self,
        target_kind: str,
        value: str,
        lookup: TargetLookup,
        crosswalk: Dict[str, Dict[str, str]],
    ) -> Optional[str]:
        """Target id a foreign-key value points at, or None when unresolved."""
        key = normalize_id(value)
        mapped = crosswalk.get(target_kind, {}).get(key)
        if mapped is not None:
            return mapped
        if lookup.exists(target_kind, key):
            return key
        return None

    def _check_existing_records(self, entity_type: str, outcome: RowOutcome, lookup: TargetLookup) -> None:
        for key_field in self.registry.natural_keys(entity_type):
            value = outcome.values.get(key_field, "")
            if value == "" or key_field in outcome.failed_fields:
                continue
            existing_id = lookup.find_by_natural_key(entity_type, key_field, value)
            if existing_id is None:
                continue
            self._add(outcome, FieldIssue(
                error_type=ErrorType.DUPLICATE,
                message=f"A {entity_type} record with {key_field} '{value}' already exists (id {existing_id})",
                field=key_field,
                value=value,
                suggested_fix="skip or update existing",
            ))

    def _flag_batch_duplicates(
        self,
        entity_type: str,
        outcomes: List[RowOutcome],
        seen: Dict[Tuple[str, str], int],
    ) -> None:
        """Flag rows whose natural key repeats an earlier row, in row order."""
        key_fields = self.registry.natural_keys(entity_type)
        for outcome in outcomes:
            for key_field in key_fields:
                value = outcome.values.get(key_field, "")
                if value == "":
                    continue
                key = (key_field, value.strip().lower())
                first_row = seen.get(key)
                if first_row is None:
                    seen[key] = outcome.row.source_row_number
                    continue
                if first_row == outcome.row.source_row_number:
                    continue
                self._add(outcome, FieldIssue(
                    error_type=ErrorType.DUPLICATE,
                    message=f"Duplicate {key_field} '{value}' (same as row {first_row})",
                    field=key_field,
                    value=value,
                    suggested_fix="skip or update existing",
                ))

    def build_record(
        self,
        entity_type: str,
        mapping_set: EntityMappingSet,
        outcome: RowOutcome,
        source_id_column: Optional[str] = None,
    ) -> MappedRecord:
        """Convert post-transform values to typed target values."""
        data: Dict[str, Any] = {}
        for target_field, value in outcome.values.items():
            mapping = mapping_set.get(target_field)
            data[target_field] = self.coerce(value, mapping.data_type if mapping else DataType.STRING)

        source_id = None
        if source_id_column:
            raw_id = str(outcome.row.values.get(source_id_column, "")).strip()
            source_id = normalize_id(raw_id) if raw_id else None

        return MappedRecord(
            entity_type=entity_type,
            source_row_number=outcome.row.source_row_number,
            data=data,
            source_data=dict(outcome.row.values),
            source_id=source_id,
        )

    def coerce(self, value: str, data_type: DataType) -> Any:
        if value == "":
            return None
        if data_type == DataType.NUMBER:
            number = parse_number(value)
            if number is not None and number.is_integer() and "." not in value and "e" not in value.lower():
                return int(number)
            return number
        if data_type == DataType.BOOLEAN:
            return parse_boolean(value)
        if data_type == DataType.DATE:
            return parse_date(value)
        return value


def normalize_id(value: Any) -> str:
    """Canonical string form of an id: trimmed, ``12.0`` -> ``12``."""
    text = str(value).strip()
    if re.match(r"^\d+\.0+$", text):
        return text.split(".")[0]
    return text
