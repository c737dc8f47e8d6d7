"""
Tests for value transformations.
"""

import pytest

from crm_import.exceptions import TransformationError
from crm_import.models.schema import DataType, FieldMapping, TransformationType
from crm_import.models.session import ImportSettings
from crm_import.services.mapping_engine import MappingEngine
from crm_import.services.transformer import TransformEngine


@pytest.fixture
def engine():
    return TransformEngine()


class TestBuiltins:

    @pytest.mark.parametrize("raw,expected", [
        ("5551234567", "(555) 123-4567"),
        ("555.123.4567", "(555) 123-4567"),
        ("1-555-123-4567", "+1 (555) 123-4567"),
        ("+44 20 7946 1234", "+442079461234"),
        ("123-4567", "1234567"),
        ("n/a", "n/a"),
    ])
    def test_phone_format(self, engine, raw, expected):
        assert engine.apply(TransformationType.PHONE_FORMAT, raw) == expected

    @pytest.mark.parametrize("raw,expected", [
        ("01/15/2024", "2024-01-15"),
        ("March 5, 2024", "2024-03-05"),
        ("2024-01-15T10:30:00", "2024-01-15"),
        ("not a date", "not a date"),
    ])
    def test_date_format(self, engine, raw, expected):
        assert engine.apply("date_format", raw) == expected

    def test_case_transforms(self, engine):
        assert engine.apply("uppercase", "acme") == "ACME"
        assert engine.apply("lowercase", "Info@ACME.com") == "info@acme.com"
        assert engine.apply("capitalize", "jOHN  smith") == "John  Smith"
        assert engine.apply("trim", "  x  ") == "x"

    def test_unknown_transformation(self, engine):
        with pytest.raises(TransformationError, match="unknown transformation"):
            engine.apply("reverse", "abc")


class TestCustomTransforms:

    def test_custom_transform_takes_precedence(self, engine):
        engine.register_transform("uppercase", lambda v: v.upper() + "!")

        assert engine.apply("uppercase", "acme") == "ACME!"

    def test_failure_is_wrapped_with_field(self, engine):
        def explode(value):
            raise ValueError("cannot handle " + value)

        engine.register_transform("explode", explode)

        with pytest.raises(TransformationError) as exc_info:
            engine.apply("explode", "Boom", field="name")

        assert exc_info.value.field == "name"
        assert exc_info.value.value == "Boom"
        assert "cannot handle Boom" in exc_info.value.reason


class TestDefaults:

    def test_whitespace_trim_and_default_value(self, engine):
        mapping = FieldMapping(target_field="status", source_field="Status", default_value="active")
        settings = ImportSettings()

        assert engine.transform_value("  open ", mapping, settings) == "open"
        assert engine.transform_value("   ", mapping, settings) == "active"
        assert engine.transform_value(None, mapping, settings) == "active"

    def test_phones_are_standardized_by_default(self, engine):
        mapping = FieldMapping(target_field="phone", source_field="Phone", data_type=DataType.PHONE)

        assert engine.transform_value("555 123 4567", mapping, ImportSettings()) == "(555) 123-4567"
        assert engine.transform_value(
            "555 123 4567", mapping, ImportSettings(standardize_phones=False)
        ) == "555 123 4567"

    def test_names_capitalized_only_when_enabled(self, engine):
        mapping = FieldMapping(target_field="name", source_field="Company")

        assert engine.transform_value("acme corp", mapping, ImportSettings()) == "acme corp"
        assert engine.transform_value(
            "acme corp", mapping, ImportSettings(capitalize_names=True)
        ) == "Acme Corp"

    def test_explicit_transformation_wins(self, engine):
        mapping = FieldMapping(
            target_field="name",
            source_field="Company",
            transformation=TransformationType.UPPERCASE,
        )

        assert engine.transform_value("acme", mapping, ImportSettings(capitalize_names=True)) == "ACME"


def test_transform_row(engine, registry):
    mapping_set = MappingEngine(registry).build_mapping_set("clients", ["Company", "Email", "Phone"])
    row = {"Company": " Acme Corp ", "Email": "info@acme.com", "Phone": "5551234567"}

    values = engine.transform_row(row, mapping_set)

    assert values == {"name": "Acme Corp", "email": "info@acme.com", "phone": "(555) 123-4567"}
