"""
Tests for the import session lifecycle: upload, mapping, validation, commit,
retry, completion, cancellation and rollback.
"""

import json
import os

import pytest

from crm_import.exceptions import (
    CommitError,
    DependencyOrderError,
    ImportCancelledError,
    MappingConflictError,
    MappingError,
    NotFoundError,
    ParseError,
    SessionStateError,
)
from crm_import.loaders.memory_loader import InMemoryLoader
from crm_import.models.record import ErrorType
from crm_import.models.schema import TransformationType
from crm_import.models.session import ImportSettings, SessionStatus
from crm_import.orchestrator import ImportOrchestrator
from crm_import.services.transformer import TransformEngine


CLIENT_ROWS = [
    ["Client ID", "Company", "Email", "Phone"],
    ["999", "Acme Corp", "info@acme.com", "555-123-4567"],
    ["1000", "Beta LLC", "not-an-email", "(555) 987-6543"],
    ["1001", "Gamma Inc", "hello@gamma.io", "5551112222"],
]

PROJECT_ROWS = [
    ["Project ID", "Project Name", "Client ID", "Start Date"],
    ["P-1", "Website Redesign", "999", "2024-01-15"],
]

# Raw source rows by position, as the parser hands them over
SOURCE_CLIENTS = [dict(zip(CLIENT_ROWS[0], row)) for row in CLIENT_ROWS[1:]]


def _upload_clients(orchestrator, session, make_csv, rows=None):
    return orchestrator.upload_file(session, make_csv(rows or CLIENT_ROWS), "clients.csv")


def _upload_projects(orchestrator, session, make_csv, rows=None):
    return orchestrator.upload_file(session, make_csv(rows or PROJECT_ROWS), "projects.csv")


class TestUpload:

    def test_upload_moves_session_to_mapping(self, orchestrator, session, make_csv, audit_sink):
        uploaded = _upload_clients(orchestrator, session, make_csv)

        assert session.status == SessionStatus.MAPPING
        assert session.entity_types == ["clients"]
        assert session.files["clients"] is uploaded
        mappings = orchestrator.get_mappings(session, "clients")
        assert mappings.source_for("name") == "Company"
        assert mappings.source_for("email") == "Email"
        assert mappings.source_for("phone") == "Phone"
        assert "file_uploaded" in [e.event_type for e in audit_sink.events]

    def test_parse_error_is_raised_and_nothing_is_attached(self, orchestrator, session):
        with pytest.raises(ParseError) as exc_info:
            orchestrator.upload_file(session, b"<html><body>Sign in</body></html>", "clients.csv")

        assert "Sign in" in exc_info.value.raw_response
        assert session.files == {}
        assert session.status == SessionStatus.UPLOADING

    def test_declared_entity_type_wins(self, orchestrator, session, make_csv):
        uploaded = orchestrator.upload_file(
            session, make_csv([["Name", "Type"], ["Jane", "billing"]]), "export.csv", "contacts"
        )

        assert uploaded.entity_type == "contacts"
        assert "contacts" in session.files

    def test_unknown_declared_entity_type(self, orchestrator, session, make_csv):
        with pytest.raises(MappingError):
            orchestrator.upload_file(session, make_csv([["Name"], ["x"]]), "x.csv", "opportunities")

    def test_reupload_replaces_file_and_bumps_version(self, orchestrator, session, make_csv):
        _upload_clients(orchestrator, session, make_csv)
        orchestrator.set_mapping(session, "clients", "website", "Email")
        version = orchestrator.get_mappings(session, "clients").version

        _upload_clients(orchestrator, session, make_csv, [["Company"], ["Delta"]])

        mappings = orchestrator.get_mappings(session, "clients")
        assert mappings.version == version + 1
        assert mappings.source_for("website") is None
        assert session.files["clients"].total_records == 1
        assert session.entity_types == ["clients"]

    def test_upload_rejected_while_validating(self, orchestrator, session, make_csv):
        _upload_clients(orchestrator, session, make_csv)
        orchestrator.validate(session)

        with pytest.raises(SessionStateError):
            _upload_clients(orchestrator, session, make_csv)

    def test_upload_files_attaches_only_parsed_files(self, orchestrator, session, make_csv):
        results = orchestrator.upload_files(session, [
            (make_csv(CLIENT_ROWS), "clients.csv", None),
            (b"<!DOCTYPE html><html></html>", "contacts.csv", None),
            (make_csv(PROJECT_ROWS), "projects.csv", None),
        ])

        assert [r.is_parsed for r in results] == [True, False, True]
        assert set(session.files) == {"clients", "projects"}
        assert session.status == SessionStatus.MAPPING

    def test_remove_file(self, orchestrator, session, make_csv):
        _upload_clients(orchestrator, session, make_csv)
        _upload_projects(orchestrator, session, make_csv)

        orchestrator.remove_file(session, "projects")

        assert list(session.files) == ["clients"]
        with pytest.raises(NotFoundError):
            orchestrator.get_mappings(session, "projects")


class TestMappingEdits:

    def test_stale_version_is_rejected(self, orchestrator, session, make_csv):
        _upload_clients(orchestrator, session, make_csv)
        version = orchestrator.get_mappings(session, "clients").version

        orchestrator.set_mapping(session, "clients", "website", "Email", expected_version=version)
        with pytest.raises(MappingConflictError) as exc_info:
            orchestrator.set_mapping(session, "clients", "taxId", "Phone", expected_version=version)

        assert exc_info.value.current_version == version + 1
        assert orchestrator.get_mappings(session, "clients").source_for("taxId") is None

    def test_edit_while_validating_discards_results(self, orchestrator, session, make_csv):
        _upload_clients(orchestrator, session, make_csv)
        orchestrator.validate(session)
        assert session.status == SessionStatus.VALIDATING
        assert session.errors

        orchestrator.set_mapping(session, "clients", "email", None)

        assert session.status == SessionStatus.MAPPING
        assert session.validation_results == {}
        assert session.errors == {}

    def test_unknown_source_column(self, orchestrator, session, make_csv):
        _upload_clients(orchestrator, session, make_csv)

        with pytest.raises(MappingError):
            orchestrator.set_mapping(session, "clients", "website", "Homepage")

    def test_apply_builtin_template(self, orchestrator, session, make_csv):
        rows = [["userid", "company", "phonenumber", "city", "vat"], ["5", "acme", "5551234567", "Austin", "123"]]
        orchestrator.upload_file(session, make_csv(rows), "customers.csv")

        updated = orchestrator.apply_template(session, "clients", "perfex_clients")

        assert updated.source_for("name") == "company"
        assert updated.source_for("phone") == "phonenumber"
        assert updated.get("phone").transformation == TransformationType.PHONE_FORMAT
        assert updated.source_for("taxId") == "vat"

    def test_apply_missing_template(self, orchestrator, session, make_csv):
        _upload_clients(orchestrator, session, make_csv)

        with pytest.raises(NotFoundError):
            orchestrator.apply_template(session, "clients", "does-not-exist")

    def test_check_mappings(self, orchestrator, session, make_csv):
        _upload_clients(orchestrator, session, make_csv)
        orchestrator.set_mapping(session, "clients", "website", "Email")

        check = orchestrator.check_mappings(session, "clients")

        assert check.duplicate_sources == {"Email": ["email", "website"]}
        assert check.unmapped_headers == ["Client ID"]


def test_preview_shows_transformed_values_and_issues(orchestrator, session, make_csv):
    _upload_clients(orchestrator, session, make_csv)

    preview = orchestrator.preview(session, "clients", limit=2)

    assert [p["source_row_number"] for p in preview] == [1, 2]
    assert preview[0]["mapped"]["phone"] == "(555) 123-4567"
    assert preview[0]["issues"] == []
    assert preview[1]["issues"][0]["field"] == "email"
    assert session.errors == {}


def test_company_email_phone_import(orchestrator, session, make_csv, loader, workstation):
    _upload_clients(orchestrator, session, make_csv)

    results = orchestrator.validate(session)

    result = results["clients"]
    assert len(result.valid_records) == 2
    assert len(session.errors) == 1
    error = next(iter(session.errors.values()))
    assert (error.error_type, error.field, error.source_row_number) == (ErrorType.FORMAT, "email", 2)

    committed = orchestrator.commit(session, "clients")

    assert [r.success for r in committed] == [True, True]
    assert loader.count("clients") == 2
    assert session.status == SessionStatus.IMPORTING

    with pytest.raises(SessionStateError, match="0 blocking and 1 skippable"):
        orchestrator.complete(session)

    workstation.skip(session, error.id, "bad address")
    orchestrator.complete(session)

    assert session.status == SessionStatus.COMPLETED
    assert session.completed_at is not None


def test_fix_before_commit_joins_pending_records(orchestrator, session, make_csv, loader):
    _upload_clients(orchestrator, session, make_csv)
    orchestrator.validate(session)
    error = next(iter(session.errors.values()))

    result = orchestrator.retry_error(session, error.id, {"email": "sales@beta.com"})

    assert result.success and not result.committed
    assert session.errors == {}
    pending = session.validation_results["clients"].valid_records
    assert [r.source_row_number for r in pending] == [1, 2, 3]
    assert pending[1].source_data == SOURCE_CLIENTS[1]

    orchestrator.commit(session, "clients")
    assert loader.find_by_natural_key("clients", "email", "sales@beta.com") is not None


def test_failed_fix_keeps_error_identity(orchestrator, session, make_csv):
    _upload_clients(orchestrator, session, make_csv)
    orchestrator.validate(session)
    error = next(iter(session.errors.values()))

    result = orchestrator.retry_error(session, error.id, {"Email": "still wrong"})

    assert not result.success
    replacement = session.errors[error.id]
    assert replacement.id == error.id
    assert replacement.attempts == 1
    assert replacement.applied_fixes == {"Email": "still wrong"}
    assert replacement.source_data["Email"] == "not-an-email"
    assert replacement.error_type == ErrorType.FORMAT


def test_fix_with_unknown_field(orchestrator, session, make_csv):
    _upload_clients(orchestrator, session, make_csv)
    orchestrator.validate(session)
    error = next(iter(session.errors.values()))

    with pytest.raises(MappingError):
        orchestrator.retry_error(session, error.id, {"favoriteColor": "blue"})


class TestReferences:

    def test_reference_error_cleared_after_parent_commit(self, orchestrator, session, make_csv, loader, workstation):
        _upload_projects(orchestrator, session, make_csv)
        _upload_clients(orchestrator, session, make_csv)

        orchestrator.validate(session, ["projects"])
        project_errors = session.errors_for("projects")
        assert len(project_errors) == 1
        assert project_errors[0].error_type == ErrorType.REFERENCE
        assert project_errors[0].field == "clientId"

        orchestrator.validate(session, ["clients"])
        orchestrator.commit(session, "clients")
        assert session.id_crosswalk["clients"]["999"] == "1"

        summary = workstation.bulk_action(session, "retry_all_fixable")

        assert session.errors_for("projects") == []
        assert summary.succeeded >= 1
        orchestrator.commit(session, "projects")
        project = loader.all("projects")[0]
        assert project["clientId"] == 1
        assert project["name"] == "Website Redesign"

    def test_auto_retry_after_parent_commit(self, orchestrator, make_csv, loader):
        session = orchestrator.create_session("firm-1", settings={"auto_retry_references": True})
        _upload_projects(orchestrator, session, make_csv)
        _upload_clients(orchestrator, session, make_csv)

        orchestrator.validate(session)
        assert len(session.errors_for("projects")) == 1

        orchestrator.commit(session, "clients")

        assert session.errors_for("projects") == []
        orchestrator.commit(session, "projects")
        assert loader.all("projects")[0]["clientId"] == 1

    def test_commit_out_of_dependency_order(self, orchestrator, session, make_csv):
        _upload_projects(orchestrator, session, make_csv)
        _upload_clients(orchestrator, session, make_csv)
        orchestrator.validate(session)

        with pytest.raises(DependencyOrderError, match="clients"):
            orchestrator.commit(session, "projects")

    def test_parent_already_in_target(self, orchestrator, session, make_csv, loader):
        loader.seed("clients", [{"id": "999", "name": "Acme Corp"}])
        _upload_projects(orchestrator, session, make_csv)

        orchestrator.validate(session)
        results = orchestrator.commit(session, "projects")

        assert [r.success for r in results] == [True]
        assert loader.all("projects")[0]["clientId"] == 999

    def test_execute_commits_in_dependency_order(self, orchestrator, session, make_csv, loader):
        _upload_projects(orchestrator, session, make_csv)
        _upload_clients(orchestrator, session, make_csv)

        results = orchestrator.execute(session)

        assert list(results) == ["clients", "projects"]
        assert loader.count("clients") == 2
        assert loader.count("projects") == 1
        assert loader.all("projects")[0]["clientId"] == 1


class CancelAfterFirstBatchLoader(InMemoryLoader):
    """Sets a cancel flag once the first batch has been written."""

    def __init__(self):
        super().__init__()
        self.cancel_event = None

    def commit_batch(self, entity_type, records):
        results = super().commit_batch(entity_type, records)
        self.cancel_event.set()
        return results


class BrokenLoader(InMemoryLoader):

    def commit_batch(self, entity_type, records):
        raise CommitError("target unavailable")


def _clients_csv(make_csv, count):
    rows = [["Company", "Email"]]
    rows += [[f"Company {i}", f"user{i}@example.com"] for i in range(1, count + 1)]
    return make_csv(rows)


def test_cancel_between_commit_batches(make_csv, settings):
    loader = CancelAfterFirstBatchLoader()
    orchestrator = ImportOrchestrator(loader=loader, settings=settings)
    session = orchestrator.create_session("firm-1")
    loader.cancel_event = session.cancel_event
    orchestrator.upload_file(session, _clients_csv(make_csv, 5), "clients.csv")
    orchestrator.validate(session)

    with pytest.raises(ImportCancelledError):
        orchestrator.commit(session, "clients")

    assert loader.count("clients") == 2
    assert len(session.committed_rows["clients"]) == 2

    orchestrator.cancel(session)
    assert session.status == SessionStatus.CANCELLED
    assert loader.count("clients") == 2


def test_batch_failure_fails_the_session(make_csv, settings):
    orchestrator = ImportOrchestrator(loader=BrokenLoader(), settings=settings)
    session = orchestrator.create_session("firm-1")
    orchestrator.upload_file(session, _clients_csv(make_csv, 3), "clients.csv")
    orchestrator.validate(session)

    with pytest.raises(CommitError):
        orchestrator.commit(session, "clients")

    assert session.status == SessionStatus.FAILED
    assert session.failure_reason == "target unavailable"
    assert orchestrator.rollback(session) == {}
    assert session.status == SessionStatus.ROLLED_BACK


def test_record_rejected_by_target_becomes_retryable_error(orchestrator, make_csv, loader):
    loader.seed("clients", [{"id": "7", "name": "Existing"}])
    session = orchestrator.create_session("firm-1", settings=ImportSettings(preserve_ids=True, batch_size=10))
    rows = [["Client ID", "Company"], ["7", "Acme"], ["8", "Beta"]]
    orchestrator.upload_file(session, make_csv(rows), "clients.csv")
    orchestrator.validate(session)

    results = orchestrator.commit(session, "clients")

    assert [r.success for r in results] == [False, True]
    assert loader.get("clients", "8")["name"] == "Beta"
    error = session.errors_for("clients")[0]
    assert error.error_type == ErrorType.SYSTEM
    assert error.source_row_number == 1

    failed = orchestrator.retry_error(session, error.id)
    assert not failed.success
    assert session.errors[error.id].attempts == 1

    loader.delete_record("clients", "7")
    retried = orchestrator.retry_error(session, error.id)

    assert retried.success and retried.committed
    assert retried.target_id == "7"
    assert session.errors == {}
    assert session.id_crosswalk["clients"] == {"7": "7", "8": "8"}


def test_complete_requires_every_valid_record_committed(orchestrator, session, make_csv, loader):
    loader.seed("clients", [{"id": "5", "name": "Existing"}])
    _upload_projects(orchestrator, session, make_csv, [["Project Name", "Client ID"], ["Intranet", "5"]])
    _upload_clients(orchestrator, session, make_csv, CLIENT_ROWS[:2])
    orchestrator.validate(session)
    assert session.errors == {}
    orchestrator.commit(session, "clients")

    with pytest.raises(SessionStateError, match="uncommitted"):
        orchestrator.complete(session)


def test_complete_is_only_allowed_while_importing(orchestrator, session, make_csv):
    _upload_clients(orchestrator, session, make_csv)

    with pytest.raises(SessionStateError):
        orchestrator.complete(session)


def test_revalidation_skips_committed_and_skipped_rows(orchestrator, session, make_csv, workstation):
    _upload_clients(orchestrator, session, make_csv)
    orchestrator.validate(session)
    orchestrator.commit(session, "clients")
    workstation.bulk_action(session, "skip_all")

    results = orchestrator.validate(session, ["clients"])

    assert results["clients"].total == 0
    assert session.status == SessionStatus.VALIDATING


def test_mapping_change_during_validation_discards_result(make_csv):
    engine = TransformEngine()
    orchestrator = ImportOrchestrator(transform_engine=engine, settings=ImportSettings(max_workers=1))
    session = orchestrator.create_session("firm-1")
    orchestrator.upload_file(session, _clients_csv(make_csv, 3), "clients.csv")
    orchestrator.set_mapping(session, "clients", "name", "Company", transformation=TransformationType.UPPERCASE)
    edited = []

    def edit_once(value):
        if not edited:
            edited.append(value)
            orchestrator.set_mapping(session, "clients", "website", "Email")
        return value.upper()

    engine.register_transform("uppercase", edit_once)

    results = orchestrator.validate(session)

    assert results == {}
    assert session.validation_results == {}
    assert session.status == SessionStatus.MAPPING


class TestLifecycle:

    def test_cancel_stops_further_work(self, orchestrator, session, make_csv):
        orchestrator.cancel(session)

        assert session.status == SessionStatus.CANCELLED
        assert session.is_cancelled
        with pytest.raises(SessionStateError):
            _upload_clients(orchestrator, session, make_csv)
        with pytest.raises(SessionStateError):
            orchestrator.cancel(session)

    def test_rollback_deletes_committed_records_newest_first(self, orchestrator, session, make_csv, loader):
        deleted_order = []
        original = loader.delete_record

        def tracking_delete(entity_type, record_id):
            deleted_order.append(entity_type)
            return original(entity_type, record_id)

        loader.delete_record = tracking_delete
        _upload_projects(orchestrator, session, make_csv)
        _upload_clients(orchestrator, session, make_csv, CLIENT_ROWS[:2])
        orchestrator.execute(session)
        orchestrator.complete(session)

        deleted = orchestrator.rollback(session, "wrong firm")

        assert deleted == {"projects": 1, "clients": 1}
        assert deleted_order == ["projects", "clients"]
        assert loader.count("clients") == 0
        assert session.status == SessionStatus.ROLLED_BACK
        with pytest.raises(SessionStateError):
            orchestrator.rollback(session)

    def test_transitions_are_audited(self, orchestrator, session, make_csv, audit_sink):
        _upload_clients(orchestrator, session, make_csv, CLIENT_ROWS[:2])
        orchestrator.execute(session)
        orchestrator.complete(session)

        transitions = [
            (e.details["from"], e.details["to"])
            for e in session.audit_trail if e.event_type == "transition"
        ]
        assert transitions == [
            ("created", "uploading"),
            ("uploading", "mapping"),
            ("mapping", "validating"),
            ("validating", "importing"),
            ("importing", "completed"),
        ]
        assert [e.event_type for e in audit_sink.events] == [e.event_type for e in session.audit_trail]

    def test_fail(self, orchestrator, session, make_csv):
        _upload_clients(orchestrator, session, make_csv)

        orchestrator.fail(session, "operator aborted")

        assert session.status == SessionStatus.FAILED
        assert session.failure_reason == "operator aborted"
        with pytest.raises(SessionStateError):
            orchestrator.retry_error(session, "missing")


def test_progress_and_report(orchestrator, session, make_csv, tmp_path):
    _upload_projects(orchestrator, session, make_csv)
    _upload_clients(orchestrator, session, make_csv)
    orchestrator.validate(session)
    orchestrator.commit(session, "clients")

    progress = orchestrator.get_progress(session)

    assert progress["total_records"] == 4
    assert progress["successful_records"] == 2
    assert progress["failed_records"] == 2
    assert progress["percentage"] == 100.0
    entities = {e["entity_type"]: e for e in progress["entities"]}
    assert entities["clients"]["status"] == "committed"
    assert entities["projects"]["status"] == "validated"

    path = orchestrator.save_report(session, str(tmp_path))

    assert os.path.exists(path)
    with open(path) as f:
        report = json.load(f)
    assert report["session_id"] == session.session_id
    assert [e["entity_type"] for e in report["errors"]] == ["clients", "projects"]
    assert report["audit_trail"][0]["event_type"] == "created"


def test_record_outcomes_follow_commit_and_row_order(orchestrator, session, make_csv, workstation):
    _upload_projects(orchestrator, session, make_csv)
    _upload_clients(orchestrator, session, make_csv)
    orchestrator.validate(session)
    committed = orchestrator.commit(session, "clients")

    listing = orchestrator.list_records(session)

    assert listing["total"] == 4
    records = listing["records"]
    assert [(r["entity_type"], r["source_row_number"]) for r in records] == [
        ("clients", 1), ("clients", 2), ("clients", 3), ("projects", 1),
    ]
    assert [r["status"] for r in records] == ["success", "failed", "success", "failed"]
    assert records[0]["target_id"] == committed[0].target_id
    assert records[1]["error_type"] == "format"
    assert records[1]["error_id"] in session.errors

    workstation.skip(session, records[1]["error_id"], "bad address")

    skipped = orchestrator.list_records(session, "clients", "skipped")
    assert [r["source_row_number"] for r in skipped["records"]] == [2]
    assert skipped["records"][0]["error_id"] is None


def test_record_outcomes_are_paged(orchestrator, session, make_csv):
    _upload_clients(orchestrator, session, make_csv)

    pending = orchestrator.list_records(session, "clients", limit=2)
    assert pending["total"] == 3
    assert [r["status"] for r in pending["records"]] == ["pending", "pending"]

    rest = orchestrator.list_records(session, "clients", limit=2, offset=2)
    assert [r["source_row_number"] for r in rest["records"]] == [3]

    with pytest.raises(ValueError):
        orchestrator.list_records(session, status="processing")
    with pytest.raises(NotFoundError):
        orchestrator.list_records(session, "projects")
