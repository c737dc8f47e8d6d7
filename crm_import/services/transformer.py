"""Value transformations applied to mapped source values before validation."""

import re
import logging
from typing import Any, Callable, Dict, Optional

from dateutil import parser as date_parser

from ..exceptions import TransformationError
from ..models.schema import DataType, EntityMappingSet, FieldMapping, TransformationType
from ..models.session import ImportSettings

logger = logging.getLogger(__name__)

# Target fields that receive the default ``capitalize`` when enabled
NAME_FIELDS = frozenset({"name", "companyName", "contactName"})


class TransformEngine:
    """
    Engine for transforming raw source values into target values.

    Supports:
    - Built-in transformation functions (case, phone and date normalization)
    - Custom transformation functions, which take precedence over built-ins
    - Session defaults (whitespace trimming, phone standardization, name
      capitalization) for mappings without an explicit transformation
    """

    def __init__(self):
        """Initialize the transform engine."""
        self._custom_transforms: Dict[str, Callable[[str], str]] = {}
        self._builtin_transforms = self._register_builtin_transforms()

    def _register_builtin_transforms(self) -> Dict[str, Callable[[str], str]]:
        """Register all built-in transformation functions."""
        return {
            TransformationType.TRIM.value: self._transform_trim,
            TransformationType.UPPERCASE.value: self._transform_uppercase,
            TransformationType.LOWERCASE.value: self._transform_lowercase,
            TransformationType.CAPITALIZE.value: self._transform_capitalize,
            TransformationType.PHONE_FORMAT.value: self._transform_phone_format,
            TransformationType.DATE_FORMAT.value: self._transform_date_format,
        }

    def register_transform(self, name: str, func: Callable[[str], str]) -> None:
        """Register a custom transformation function."""
        self._custom_transforms[name] = func

    def apply(self, name: Any, value: str, field: Optional[str] = None) -> str:
        """
        Apply one named transformation to a value.

        Raises:
            TransformationError: if the transformation is unknown or fails
        """
        name = getattr(name, "value", name)
        func = self._custom_transforms.get(name) or self._builtin_transforms.get(name)
        if func is None:
            raise TransformationError(name, value, "unknown transformation", field=field)
        try:
            return func(value)
        except TransformationError:
            raise
        except Exception as e:
            raise TransformationError(name, value, str(e), field=field) from e

    def default_transformation(
        self,
        mapping: FieldMapping,
        settings: ImportSettings,
    ) -> Optional[str]:
        """Transformation to use for a mapping that does not name one."""
        if mapping.transformation:
            return mapping.transformation.value
        if mapping.data_type == DataType.PHONE and settings.standardize_phones:
            return TransformationType.PHONE_FORMAT.value
        if mapping.target_field in NAME_FIELDS and settings.capitalize_names:
            return TransformationType.CAPITALIZE.value
        return None

    def transform_value(
        self,
        raw: Optional[str],
        mapping: FieldMapping,
        settings: ImportSettings,
    ) -> str:
        """Trim, default and transform one raw cell for a mapping."""
        value = "" if raw is None else str(raw)
        if settings.trim_whitespace:
            value = value.strip()
        if value == "" and mapping.default_value is not None:
            value = str(mapping.default_value)
        if value == "":
            return value

        transformation = self.default_transformation(mapping, settings)
        if transformation:
            value = self.apply(transformation, value, field=mapping.target_field)
        return value

    def transform_row(
        self,
        values: Dict[str, str],
        mapping_set: EntityMappingSet,
        settings: Optional[ImportSettings] = None,
    ) -> Dict[str, str]:
        """
        Transform one source row into post-transform target values.

        Args:
            values: Raw row keyed by source header
            mapping_set: Mappings of the row's entity type
            settings: Session settings (defaults when omitted)

        Returns:
            Dictionary of target field -> transformed string value, for every
            mapped target field

        Raises:
            TransformationError: on the first transformation that fails
        """
        settings = settings or ImportSettings()
        result: Dict[str, str] = {}
        for mapping in mapping_set.mappings.values():
            if not mapping.is_mapped:
                if mapping.default_value is not None:
                    result[mapping.target_field] = str(mapping.default_value)
                continue
            result[mapping.target_field] = self.transform_value(
                values.get(mapping.source_field), mapping, settings
            )
        return result

    def _transform_trim(self, value: str) -> str:
        return value.strip()

    def _transform_uppercase(self, value: str) -> str:
        return value.upper()

    def _transform_lowercase(self, value: str) -> str:
        return value.lower()

    def _transform_capitalize(self, value: str) -> str:
        """Title-case each word, leaving the rest of the word lowercase."""
        return " ".join(word[:1].upper() + word[1:].lower() for word in value.split(" "))

    def _transform_phone_format(self, value: str) -> str:
        """
        Normalize a phone number.

        10 digits become ``(XXX) XXX-XXXX`` and 11 digits with a leading 1
        become ``+1 (XXX) XXX-XXXX``. Other digit strings are kept as digits,
        with ``+`` preserved for international numbers. Values without digits
        are returned unchanged so the phone rule can report them.
        """
        digits = re.sub(r"\D", "", value)
        if not digits:
            return value
        if len(digits) == 10:
            return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"
        if len(digits) == 11 and digits.startswith("1"):
            return f"+1 ({digits[1:4]}) {digits[4:7]}-{digits[7:]}"
        if value.strip().startswith("+"):
            return f"+{digits}"
        return digits

    def _transform_date_format(self, value: str) -> str:
        """Convert a parseable date to ISO ``YYYY-MM-DD``; leave others unchanged."""
        try:
            return date_parser.parse(value).date().isoformat()
        except (ValueError, OverflowError) as e:
            logger.debug(f"Could not normalize date {value!r}: {e}")
            return value
