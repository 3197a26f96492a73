"""
test_main.py
------------
RecordVerify - Patient-Verified Health Records - Test Suite for main.py
------------------------------------------------------------------------
Exercises the FastAPI routes with TestClient. The upload pipeline is a
MagicMock with an AsyncMock process_upload; record routes use a real
RecordService over a tmp SQLite store with fake call/archive services, so no
external API is contacted.

Tests cover:
    - GET /health returns 200 and required fields
    - Missing X-User-Id is 401
    - Upload validation (no file, bad type) and a successful upload
    - 404 / 403 mapping for record reads
    - POST /verify success, missing phone (400) and platform failure (502)
    - GET /verify/status
    - Unhandled errors are 500 "Server error"

Run:
    pytest tests/test_main.py -v --tb=short

Project: RecordVerify - Patient-Verified Health Records
"""

import os
import sys
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from main import API_PREFIX, create_app
from record_service import RecordService
from record_store import RecordStore
from schemas import DocumentType, HealthRecord, VerificationCall
from tests.fakes import (
    FakeAnalyzer,
    FakeArchive,
    FakeCallClient,
    fatal_initiation,
    make_config,
    sample_extracted,
    snapshot,
)

USER = {"X-User-Id": "user-1"}
UPLOAD_RESULT = {"id": "rec-new", "processingStatus": "processing_complete"}


def _client(tmp_path, call_client=None, pipeline=None, raise_server_exceptions=True):
    config = make_config(tmp_path)
    store = RecordStore(config.db_path)
    store.init_db()
    service = RecordService(
        store,
        call_client or FakeCallClient([snapshot("ongoing")]),
        FakeAnalyzer(),
        FakeArchive(),
        config,
    )
    if pipeline is None:
        pipeline = MagicMock()
        pipeline.process_upload = AsyncMock(return_value=UPLOAD_RESULT)
    app = create_app(config, pipeline=pipeline, service=service)
    client = TestClient(app, raise_server_exceptions=raise_server_exceptions)
    return client, store, pipeline


def _seed(store, record_id="rec-1", user_id="user-1", **kwargs):
    fields = {
        "title": "Annual checkup",
        "patient_name": "John Doe",
        "patient_phone": "+10000000000",
        "extracted_data": sample_extracted(),
        "processing_status": "processing_complete",
    }
    fields.update(kwargs)
    store.create(HealthRecord(id=record_id, user_id=user_id, **fields))


# ── GET /health ────────────────────────────────────────────────────────────────

def test_health_returns_200(tmp_path):
    """GET /health should return HTTP 200."""
    client, _, _ = _client(tmp_path)
    assert client.get("/health").status_code == 200


def test_health_required_fields(tmp_path):
    """GET /health response must include service, version, status, timestamp."""
    client, _, _ = _client(tmp_path)
    data = client.get("/health").json()
    for field in ("service", "version", "status", "timestamp"):
        assert field in data
    assert data["status"] == "ok"


# ── Auth ───────────────────────────────────────────────────────────────────────

def test_missing_user_header_is_401(tmp_path):
    """Record routes require X-User-Id."""
    client, _, _ = _client(tmp_path)
    assert client.get(API_PREFIX).status_code == 401


# ── POST /upload ───────────────────────────────────────────────────────────────

def test_upload_without_file_is_400(tmp_path):
    """No file part is rejected before the pipeline runs."""
    client, _, pipeline = _client(tmp_path)
    response = client.post(f"{API_PREFIX}/upload", data={"title": "x"}, headers=USER)
    assert response.status_code == 400
    assert response.json()["message"] == "No file uploaded"
    pipeline.process_upload.assert_not_called()


def test_upload_bad_type_is_400_and_file_removed(tmp_path):
    """A text file is rejected and nothing is left in the uploads dir."""
    client, _, pipeline = _client(tmp_path)
    response = client.post(
        f"{API_PREFIX}/upload",
        files={"file": ("notes.txt", b"hello", "text/plain")},
        headers=USER,
    )
    assert response.status_code == 400
    assert "Invalid file type" in response.json()["message"]
    assert os.listdir(tmp_path / "uploads") == []
    pipeline.process_upload.assert_not_called()


def test_upload_runs_pipeline_and_returns_201(tmp_path):
    """A valid upload is handed to the pipeline with its form fields."""
    client, _, pipeline = _client(tmp_path)
    response = client.post(
        f"{API_PREFIX}/upload",
        files={"file": ("lab results.pdf", b"%PDF-1.4 test", "application/pdf")},
        data={"title": "Bloodwork", "documentType": "Lab Result", "patientName": "Jane Roe"},
        headers=USER,
    )
    assert response.status_code == 201
    assert response.json() == UPLOAD_RESULT

    intake = pipeline.process_upload.call_args.args[0]
    assert intake.user_id == "user-1"
    assert intake.title == "Bloodwork"
    assert intake.document_type == DocumentType.LAB_RESULT
    assert intake.patient_name == "Jane Roe"
    assert intake.original_file_name == "lab results.pdf"
    assert os.path.isfile(intake.local_file_path)


def test_pipeline_crash_is_500(tmp_path):
    """Unhandled pipeline errors map to a generic 500."""
    pipeline = MagicMock()
    pipeline.process_upload = AsyncMock(side_effect=RuntimeError("disk full"))
    client, _, _ = _client(tmp_path, pipeline=pipeline, raise_server_exceptions=False)
    response = client.post(
        f"{API_PREFIX}/upload",
        files={"file": ("report.pdf", b"%PDF-1.4", "application/pdf")},
        headers=USER,
    )
    assert response.status_code == 500
    assert response.json() == {"message": "Server error"}


# ── Record reads / delete ──────────────────────────────────────────────────────

def test_list_returns_own_records(tmp_path):
    """GET /api/health-records lists the caller's records."""
    client, store, _ = _client(tmp_path)
    _seed(store)
    _seed(store, "rec-2", user_id="user-2")
    data = client.get(API_PREFIX, headers=USER).json()
    assert [r["id"] for r in data["records"]] == ["rec-1"]


def test_get_unknown_record_is_404(tmp_path):
    """Unknown ids map to 404 with a message."""
    client, _, _ = _client(tmp_path)
    response = client.get(f"{API_PREFIX}/nope", headers=USER)
    assert response.status_code == 404
    assert response.json()["message"] == "Health record not found: nope"


def test_get_other_users_record_is_403(tmp_path):
    """Records owned by another user map to 403."""
    client, store, _ = _client(tmp_path)
    _seed(store, user_id="user-2")
    assert client.get(f"{API_PREFIX}/rec-1", headers=USER).status_code == 403
    assert client.get(f"{API_PREFIX}/rec-1/full", headers=USER).status_code == 403


def test_get_full_record(tmp_path):
    """The /full route returns the complete record."""
    client, store, _ = _client(tmp_path)
    _seed(store)
    record = client.get(f"{API_PREFIX}/rec-1/full", headers=USER).json()["record"]
    assert record["extractedData"]["pages"][0]["pageNumber"] == 1


def test_delete_record(tmp_path):
    """DELETE removes the record."""
    client, store, _ = _client(tmp_path)
    _seed(store)
    response = client.delete(f"{API_PREFIX}/rec-1", headers=USER)
    assert response.status_code == 200
    assert response.json() == {"message": "Health record removed"}
    assert store.find_by_id("rec-1") is None


# ── Verification ───────────────────────────────────────────────────────────────

def test_verify_starts_call(tmp_path):
    """POST /verify returns the new call id."""
    client, store, _ = _client(tmp_path)
    _seed(store)
    response = client.post(f"{API_PREFIX}/rec-1/verify", headers=USER)
    assert response.status_code == 200
    assert response.json()["callId"] == "call-123"


def test_verify_with_body_phone(tmp_path):
    """A phone in the body is used when the record has none."""
    call_client = FakeCallClient([snapshot("ongoing")])
    client, store, _ = _client(tmp_path, call_client=call_client)
    _seed(store, patient_phone="")
    response = client.post(
        f"{API_PREFIX}/rec-1/verify", json={"patientPhone": "+15551234567"}, headers=USER,
    )
    assert response.status_code == 200
    assert call_client.initiate_calls[0]["phone"] == "+15551234567"


def test_verify_without_phone_is_400(tmp_path):
    """No phone anywhere is a client error."""
    client, store, _ = _client(tmp_path)
    _seed(store, patient_phone="")
    response = client.post(f"{API_PREFIX}/rec-1/verify", headers=USER)
    assert response.status_code == 400


def test_verify_platform_failure_is_502(tmp_path):
    """A call the platform rejects maps to 502."""
    call_client = FakeCallClient([snapshot("ongoing")], initiate_error=fatal_initiation())
    client, store, _ = _client(tmp_path, call_client=call_client)
    _seed(store)
    response = client.post(f"{API_PREFIX}/rec-1/verify", headers=USER)
    assert response.status_code == 502
    assert "Agent configuration failed" in response.json()["error"]


def test_verify_status_refreshes_active_call(tmp_path):
    """GET /verify/status returns the refreshed call state."""
    call_client = FakeCallClient([snapshot("ongoing")])
    client, store, _ = _client(tmp_path, call_client=call_client)
    _seed(store, verification_call=VerificationCall(call_id="call-123", status="registered"))
    data = client.get(f"{API_PREFIX}/rec-1/verify/status", headers=USER).json()
    assert data["callId"] == "call-123"
    assert data["status"] == "ongoing"


def test_verify_status_without_call_is_404(tmp_path):
    """A record without a call has no verification status."""
    client, store, _ = _client(tmp_path)
    _seed(store)
    response = client.get(f"{API_PREFIX}/rec-1/verify/status", headers=USER)
    assert response.status_code == 404
    assert response.json()["message"] == "No verification call found for this record"
