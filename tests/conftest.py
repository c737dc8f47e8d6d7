"""
Pytest configuration and fixtures for the CRM import tests.

Every fixture builds an isolated pipeline on an in-memory target, so tests
never touch the network or share session state.
"""

import csv
import io

import pytest

from crm_import.loaders.memory_loader import InMemoryLoader
from crm_import.models.session import ImportSettings
from crm_import.orchestrator import ImportOrchestrator
from crm_import.services.audit import InMemoryAuditSink
from crm_import.services.error_resolution import ErrorWorkstation
from crm_import.services.schema_registry import SchemaRegistry
from crm_import.services.template_store import TemplateStore
from crm_import.services.transformer import TransformEngine


def build_csv(rows):
    """Render a list of rows (header first) as CSV bytes."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerows(rows)
    return buffer.getvalue().encode("utf-8")


@pytest.fixture
def make_csv():
    return build_csv


@pytest.fixture
def registry():
    return SchemaRegistry()


@pytest.fixture
def loader():
    return InMemoryLoader()


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def transform_engine():
    return TransformEngine()


@pytest.fixture
def settings():
    # Small batches and a single worker keep batch boundaries predictable
    return ImportSettings(batch_size=2, max_workers=1)


@pytest.fixture
def orchestrator(registry, loader, audit_sink, transform_engine, settings):
    return ImportOrchestrator(
        registry=registry,
        loader=loader,
        template_store=TemplateStore(),
        audit_sink=audit_sink,
        settings=settings,
        transform_engine=transform_engine,
    )


@pytest.fixture
def workstation(orchestrator):
    return ErrorWorkstation(orchestrator)


@pytest.fixture
def session(orchestrator):
    return orchestrator.create_session("firm-1")
