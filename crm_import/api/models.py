"""Pydantic models for API requests."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum

from ..models.record import ErrorFilter, ErrorType, RecordStatus, Severity
from ..models.schema import DataType, TransformationType, ValidationRule, ValidationRuleType


class BulkActionEnum(str, Enum):
    SKIP_ALL = "skip_all"
    RETRY_ALL_FIXABLE = "retry_all_fixable"
    MARK_REVIEWED = "mark_reviewed"


# Request Models
class SessionCreate(BaseModel):
    firm_id: str
    entity_types: List[str] = Field(default_factory=list)
    settings: Dict[str, Any] = Field(default_factory=dict)


class ValidationRuleModel(BaseModel):
    type: ValidationRuleType
    value: Optional[Any] = None
    message: Optional[str] = None

    def to_rule(self) -> ValidationRule:
        return ValidationRule(type=self.type, value=self.value, message=self.message or "")


class MappingUpdate(BaseModel):
    target_field: str
    source_field: Optional[str] = None
    data_type: Optional[DataType] = None
    transformation: Optional[TransformationType] = None
    validation_rules: Optional[List[ValidationRuleModel]] = None
    default_value: Optional[str] = None
    expected_version: Optional[int] = None


class TemplateApply(BaseModel):
    template_name: str
    expected_version: Optional[int] = None


class ValidateRequest(BaseModel):
    entity_types: Optional[List[str]] = None


class RollbackRequest(BaseModel):
    reason: Optional[str] = None


class ErrorFilterModel(BaseModel):
    entity_type: Optional[str] = None
    error_type: Optional[ErrorType] = None
    severity: Optional[Severity] = None
    text_search: Optional[str] = None

    def to_filter(self) -> ErrorFilter:
        return ErrorFilter(
            entity_type=self.entity_type,
            error_type=self.error_type,
            severity=self.severity,
            text_search=self.text_search,
        )


class FixRequest(BaseModel):
    fixed_fields: Dict[str, Any]


class SkipRequest(BaseModel):
    reason: Optional[str] = None


class BulkActionRequest(BaseModel):
    action: BulkActionEnum
    filter: ErrorFilterModel = Field(default_factory=ErrorFilterModel)
    reason: Optional[str] = None


class TemplateCreate(BaseModel):
    name: str
    entity_type: str
    description: str = ""
    mappings: Dict[str, Any] = Field(default_factory=dict)
