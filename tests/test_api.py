"""
Tests for the HTTP API.
"""

import csv
import io
import threading

import pytest
from fastapi.testclient import TestClient

from crm_import.api.main import app
from crm_import.api.storage import build_orchestrator, session_storage
from crm_import.extractors.file_parser import FileParser
from crm_import.loaders.api_loader import APILoader
from crm_import.loaders.memory_loader import InMemoryLoader
from crm_import.models.session import ImportSettings
from crm_import.orchestrator import ImportOrchestrator
from crm_import.services.audit import InMemoryAuditSink
from crm_import.services.template_store import TemplateStore

client = TestClient(app)

CLIENTS_CSV = (
    "Client ID,Company,Email,Phone\n"
    "999,Acme Corp,info@acme.com,555-123-4567\n"
    "1000,Beta LLC,not-an-email,(555) 987-6543\n"
    "1001,Gamma Inc,hello@gamma.io,5551112222\n"
).encode("utf-8")

PROJECTS_CSV = b"Project Name,Client ID\nWebsite Redesign,999\n"


@pytest.fixture(autouse=True)
def target():
    loader = InMemoryLoader()
    session_storage.configure(ImportOrchestrator(
        loader=loader,
        template_store=TemplateStore(),
        audit_sink=InMemoryAuditSink(),
        settings=ImportSettings(batch_size=2, max_workers=1),
    ))
    return loader


def _create_session(**settings):
    response = client.post("/api/sessions", json={"firm_id": "firm-1", "settings": settings})
    assert response.status_code == 200
    return response.json()["session_id"]


def _upload(session_id, content, file_name, entity_type=None):
    data = {"entity_type": entity_type} if entity_type else None
    return client.post(
        f"/api/sessions/{session_id}/files",
        files={"file": (file_name, content, "text/csv")},
        data=data,
    )


def test_health():
    response = client.get("/api/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_session_lifecycle(target):
    session_id = _create_session()

    uploaded = _upload(session_id, CLIENTS_CSV, "clients.csv")
    assert uploaded.status_code == 200
    assert uploaded.json()["total_records"] == 3
    assert uploaded.json()["suggested_mappings"]["name"] == 1

    validated = client.post(f"/api/sessions/{session_id}/validate")
    assert validated.status_code == 200
    assert validated.json()["results"]["clients"]["error_count"] == 1

    committed = client.post(f"/api/sessions/{session_id}/commit/clients")
    assert committed.json()["committed"] == 2
    assert target.count("clients") == 2

    blocked = client.post(f"/api/sessions/{session_id}/complete")
    assert blocked.status_code == 400

    errors = client.get(f"/api/sessions/{session_id}/errors").json()
    assert errors["total"] == 1
    error_id = errors["errors"][0]["id"]

    fixed = client.post(
        f"/api/sessions/{session_id}/errors/{error_id}/fix",
        json={"fixed_fields": {"email": "sales@beta.com"}},
    )
    assert fixed.json()["success"] is True
    assert fixed.json()["committed"] is True

    completed = client.post(f"/api/sessions/{session_id}/complete")
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"

    progress = client.get(f"/api/sessions/{session_id}/progress").json()
    assert progress["successful_records"] == 3

    rolled_back = client.post(f"/api/sessions/{session_id}/rollback", json={"reason": "test run"})
    assert rolled_back.json() == {"status": "rolled_back", "deleted": {"clients": 3}}
    assert target.count("clients") == 0


def test_unknown_session():
    response = client.get("/api/sessions/does-not-exist")

    assert response.status_code == 404


def test_html_upload_is_rejected_with_raw_body():
    session_id = _create_session()

    response = _upload(session_id, b"<html><body>502 Bad Gateway</body></html>", "clients.csv")

    assert response.status_code == 422
    detail = response.json()["detail"]
    assert "HTML" in detail["message"]
    assert "502 Bad Gateway" in detail["raw_response"]


def test_declared_entity_type_form_field():
    session_id = _create_session()

    response = _upload(session_id, b"Name,Type\nJane,billing\n", "export.csv", "contacts")

    assert response.json()["entity_type"] == "contacts"


def test_batch_upload():
    session_id = _create_session()

    response = client.post(
        f"/api/sessions/{session_id}/files/batch",
        files=[
            ("files", ("clients.csv", CLIENTS_CSV, "text/csv")),
            ("files", ("projects.csv", PROJECTS_CSV, "text/csv")),
        ],
    )

    assert response.status_code == 200
    assert [f["entity_type"] for f in response.json()["files"]] == ["clients", "projects"]


class TestMappings:

    def test_get_and_update(self):
        session_id = _create_session()
        _upload(session_id, CLIENTS_CSV, "clients.csv")
        url = f"/api/sessions/{session_id}/mappings/clients"

        current = client.get(url).json()
        assert current["mappings"]["email"]["source_field"] == "Email"

        updated = client.put(url, json={
            "target_field": "website",
            "source_field": "Email",
            "expected_version": current["version"],
        })
        assert updated.status_code == 200
        assert updated.json()["version"] == current["version"] + 1

        stale = client.put(url, json={
            "target_field": "taxId",
            "source_field": "Phone",
            "expected_version": current["version"],
        })
        assert stale.status_code == 409

        check = client.get(f"{url}/check").json()
        assert check["duplicate_sources"] == [{"source_field": "Email", "targets": ["email", "website"]}]
        assert check["ok"] is False

    def test_unknown_target_field(self):
        session_id = _create_session()
        _upload(session_id, CLIENTS_CSV, "clients.csv")

        response = client.put(
            f"/api/sessions/{session_id}/mappings/clients",
            json={"target_field": "favoriteColor", "source_field": "Email"},
        )

        assert response.status_code == 400

    def test_invalid_transformation_is_a_request_error(self):
        session_id = _create_session()
        _upload(session_id, CLIENTS_CSV, "clients.csv")

        response = client.put(
            f"/api/sessions/{session_id}/mappings/clients",
            json={"target_field": "name", "source_field": "Company", "transformation": "reverse"},
        )

        assert response.status_code == 422

    def test_no_file_for_entity(self):
        session_id = _create_session()

        response = client.get(f"/api/sessions/{session_id}/mappings/projects")

        assert response.status_code == 404

    def test_apply_template(self):
        session_id = _create_session()
        _upload(session_id, b"company,phonenumber,vat\nacme,5551234567,99\n", "clients.csv")

        response = client.post(
            f"/api/sessions/{session_id}/mappings/clients/template",
            json={"template_name": "perfex_clients"},
        )

        assert response.status_code == 200
        assert response.json()["mappings"]["taxId"]["source_field"] == "vat"

    def test_preview(self):
        session_id = _create_session()
        _upload(session_id, CLIENTS_CSV, "clients.csv")

        rows = client.get(f"/api/sessions/{session_id}/preview/clients", params={"limit": 2}).json()["rows"]

        assert len(rows) == 2
        assert rows[0]["mapped"]["phone"] == "(555) 123-4567"


def test_commit_out_of_order_is_a_conflict():
    session_id = _create_session()
    _upload(session_id, PROJECTS_CSV, "projects.csv")
    _upload(session_id, CLIENTS_CSV, "clients.csv")
    client.post(f"/api/sessions/{session_id}/validate")

    response = client.post(f"/api/sessions/{session_id}/commit/projects")

    assert response.status_code == 409


def test_execute_and_bulk_retry(target):
    session_id = _create_session()
    _upload(session_id, PROJECTS_CSV, "projects.csv")
    _upload(session_id, CLIENTS_CSV, "clients.csv")

    executed = client.post(f"/api/sessions/{session_id}/execute").json()

    assert executed["committed"] == {"clients": 2, "projects": 1}
    assert target.all("projects")[0]["clientId"] == 1

    summary = client.post(
        f"/api/sessions/{session_id}/errors/bulk",
        json={"action": "skip_all", "filter": {"entity_type": "clients"}, "reason": "bad data"},
    ).json()
    assert summary["succeeded"] == 1

    assert client.post(f"/api/sessions/{session_id}/complete").json()["status"] == "completed"


def test_record_outcomes():
    session_id = _create_session()
    _upload(session_id, CLIENTS_CSV, "clients.csv")
    client.post(f"/api/sessions/{session_id}/validate")
    client.post(f"/api/sessions/{session_id}/commit/clients")

    response = client.get(f"/api/sessions/{session_id}/records", params={"status": "failed"})

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["records"][0]["source_row_number"] == 2
    assert body["records"][0]["error_type"] == "format"

    paged = client.get(f"/api/sessions/{session_id}/records", params={"limit": 1, "offset": 1})
    assert paged.json()["total"] == 3
    assert [r["status"] for r in paged.json()["records"]] == ["failed"]

    assert client.get(f"/api/sessions/{session_id}/records", params={"status": "processing"}).status_code == 422
    assert client.get(f"/api/sessions/{session_id}/records", params={"limit": 0}).status_code == 422


class TestErrorEndpoints:

    def _session_with_error(self):
        session_id = _create_session()
        _upload(session_id, CLIENTS_CSV, "clients.csv")
        client.post(f"/api/sessions/{session_id}/validate")
        error = client.get(f"/api/sessions/{session_id}/errors").json()["errors"][0]
        return session_id, error

    def test_filters_and_summary(self):
        session_id, _ = self._session_with_error()

        formats = client.get(f"/api/sessions/{session_id}/errors", params={"error_type": "format"}).json()
        none = client.get(f"/api/sessions/{session_id}/errors", params={"error_type": "reference"}).json()
        summary = client.get(f"/api/sessions/{session_id}/errors/summary").json()

        assert formats["total"] == 1
        assert none["total"] == 0
        assert summary["skippable"] == 1

    def test_detail_and_suggestions(self):
        session_id, error = self._session_with_error()

        detail = client.get(f"/api/sessions/{session_id}/errors/{error['id']}").json()
        suggestions = client.get(f"/api/sessions/{session_id}/errors/{error['id']}/suggestions").json()

        assert detail["field"] == "email"
        assert detail["source_data"]["Email"] == "not-an-email"
        assert suggestions["suggestions"][0] == "Use format: user@example.com"

    def test_skip(self):
        session_id, error = self._session_with_error()

        response = client.post(f"/api/sessions/{session_id}/errors/{error['id']}/skip", json={"reason": "dead lead"})

        assert response.json()["status"] == "skipped"
        assert client.get(f"/api/sessions/{session_id}/errors").json()["total"] == 0
        audit = client.get(f"/api/sessions/{session_id}/audit").json()["events"]
        assert audit[-1]["event_type"] == "skip"
        assert audit[-1]["details"]["reason"] == "dead lead"

    def test_export(self):
        session_id, error = self._session_with_error()

        response = client.get(f"/api/sessions/{session_id}/errors/export")

        assert response.headers["content-type"].startswith("text/csv")
        rows = list(csv.DictReader(io.StringIO(response.text)))
        assert rows[0]["error_id"] == error["id"]

    def test_unknown_error(self):
        session_id, _ = self._session_with_error()

        assert client.get(f"/api/sessions/{session_id}/errors/nope").status_code == 404

    def test_unknown_bulk_action(self):
        session_id, _ = self._session_with_error()

        response = client.post(f"/api/sessions/{session_id}/errors/bulk", json={"action": "delete_all"})

        assert response.status_code == 422


class TestTemplates:

    def test_list_builtin(self):
        response = client.get("/api/templates", params={"entity_type": "clients"})

        assert [t["name"] for t in response.json()["templates"]] == ["perfex_clients"]

    def test_create_get_delete(self):
        created = client.post("/api/templates", json={
            "name": "legacy",
            "entity_type": "Clients",
            "mappings": {"name": "Company", "email": {"source_field": "E-mail"}},
        })
        assert created.status_code == 200
        assert created.json()["entity_type"] == "clients"

        fetched = client.get("/api/templates/clients/legacy").json()
        assert fetched["mappings"]["email"]["source_field"] == "E-mail"

        assert client.delete("/api/templates/clients/legacy").status_code == 200
        assert client.get("/api/templates/clients/legacy").status_code == 404

    def test_unknown_entity_type(self):
        response = client.post("/api/templates", json={"name": "x", "entity_type": "opportunities"})

        assert response.status_code == 400


def test_session_listing_and_delete():
    first = _create_session()
    second = _create_session()

    listed = client.get("/api/sessions").json()
    assert listed["total"] == 2
    assert {s["session_id"] for s in listed["sessions"]} == {first, second}

    assert client.delete(f"/api/sessions/{first}").json() == {"status": "deleted"}
    assert client.get(f"/api/sessions/{first}").status_code == 404


def test_build_orchestrator_from_environment(tmp_path):
    remote = build_orchestrator({
        "CRM_IMPORT_TARGET_URL": "https://crm.example.com/api",
        "CRM_IMPORT_BATCH_SIZE": "25",
        "CRM_IMPORT_TEMPLATES_DIR": str(tmp_path),
    })
    local = build_orchestrator({})

    assert isinstance(remote.loader, APILoader)
    assert remote.settings.batch_size == 25
    assert remote.template_store.templates_dir == str(tmp_path)
    assert isinstance(local.loader, InMemoryLoader)


class HeldParser(FileParser):
    """Parser that holds each upload until the test releases it."""

    def __init__(self):
        super().__init__(ImportSettings())
        self.started = threading.Event()
        self.release = threading.Event()

    def parse(self, content, file_name, declared_entity_type=None):
        self.started.set()
        self.release.wait(5)
        return super().parse(content, file_name, declared_entity_type)


def test_other_requests_are_served_while_an_upload_parses():
    parser = HeldParser()
    session_storage.configure(ImportOrchestrator(
        parser=parser,
        audit_sink=InMemoryAuditSink(),
        settings=ImportSettings(batch_size=2, max_workers=1),
    ))
    responses = {}

    with TestClient(app) as shared:
        session_id = shared.post("/api/sessions", json={"firm_id": "firm-1"}).json()["session_id"]

        def upload():
            responses["upload"] = shared.post(
                f"/api/sessions/{session_id}/files",
                files={"file": ("clients.csv", CLIENTS_CSV, "text/csv")},
            )

        def health():
            responses["health"] = shared.get("/api/health")

        upload_thread = threading.Thread(target=upload)
        upload_thread.start()
        assert parser.started.wait(5)

        health_thread = threading.Thread(target=health)
        health_thread.start()
        health_thread.join(5)

        assert not health_thread.is_alive()
        assert responses["health"].status_code == 200
        assert "upload" not in responses

        parser.release.set()
        upload_thread.join(5)

    assert responses["upload"].status_code == 200
    assert responses["upload"].json()["total_records"] == 3
