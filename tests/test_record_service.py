"""
test_record_service.py
----------------------
RecordVerify - Patient-Verified Health Records - Tests for record_service.py
-----------------------------------------------------------------------------
Record reads, deletion, manual verification and the lazily refreshed
verification status, against a real SQLite store and fake collaborators.

Run:
    pytest tests/test_record_service.py -v --tb=short

Project: RecordVerify - Patient-Verified Health Records
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from errors import AuthorizationError, InvalidInputError, RecordNotFoundError, UpstreamFatalError
from record_service import RecordService
from record_store import RecordStore
from schemas import Correction, HealthRecord, TranscriptAnalysis, VerificationCall
from tests.fakes import (
    FakeAnalyzer,
    FakeArchive,
    FakeCallClient,
    fatal_initiation,
    make_config,
    sample_extracted,
    snapshot,
)

S3_URL = "https://records.s3.us-east-1.amazonaws.com/1700000000000-report.pdf"


def _service(tmp_path, call_client=None, analyzer=None, archive=None):
    config = make_config(tmp_path)
    store = RecordStore(config.db_path)
    store.init_db()
    service = RecordService(
        store,
        call_client or FakeCallClient([snapshot("ongoing")]),
        analyzer or FakeAnalyzer(),
        archive or FakeArchive(),
        config,
    )
    return service, store


def _seed(store, record_id="rec-1", user_id="user-1", **kwargs):
    fields = {
        "title": "Annual checkup",
        "description": "Uploaded by patient",
        "patient_name": "John Doe",
        "patient_phone": "+10000000000",
        "file_url": S3_URL,
        "extracted_data": sample_extracted(),
        "structured_data": {"patient": {"name": "John Doe", "phone": "+10000000000"}},
        "processing_status": "processing_complete",
    }
    fields.update(kwargs)
    return store.create(HealthRecord(id=record_id, user_id=user_id, **fields))


def _ongoing_call():
    return VerificationCall(call_id="call-123", status="ongoing", start_time="2026-01-01T00:00:00+00:00")


# ── Reads ─────────────────────────────────────────────────────────────────────

def test_list_records_scoped_to_owner(tmp_path):
    """Only the caller's records are listed, without document payloads."""
    service, store = _service(tmp_path)
    _seed(store, "mine")
    _seed(store, "theirs", user_id="user-2")
    records = service.list_records("user-1")["records"]
    assert [r["id"] for r in records] == ["mine"]
    assert records[0]["hasExtractedData"] is True
    assert "extractedData" not in records[0]


def test_get_record_returns_preview(tmp_path):
    """The single view carries a bounded text preview."""
    service, store = _service(tmp_path)
    _seed(store, extracted_data=sample_extracted("B" * 400))
    view = service.get_record("rec-1", "user-1")["record"]
    assert view["extractedData"]["hasText"] is True
    assert view["extractedData"]["textPreview"] == "B" * 300 + "..."
    assert view["structuredData"]["patient"]["name"] == "John Doe"


def test_get_full_record_has_everything(tmp_path):
    """The full view includes complete extracted text and the call."""
    service, store = _service(tmp_path)
    _seed(store, extracted_data=sample_extracted("C" * 400))
    full = service.get_full_record("rec-1", "user-1")["record"]
    assert full["extractedData"]["text"] == "C" * 400
    assert full["verificationCall"]["status"] == "not_initiated"


def test_unknown_record_raises_not_found(tmp_path):
    """Missing ids raise RecordNotFoundError."""
    service, _ = _service(tmp_path)
    with pytest.raises(RecordNotFoundError, match="Health record not found"):
        service.get_record("missing", "user-1")


def test_other_users_record_is_forbidden(tmp_path):
    """A record owned by someone else raises AuthorizationError."""
    service, store = _service(tmp_path)
    _seed(store, user_id="user-2")
    with pytest.raises(AuthorizationError):
        service.get_full_record("rec-1", "user-1")


# ── Delete ────────────────────────────────────────────────────────────────────

def test_delete_remote_file_calls_archive_once(tmp_path):
    """An archived document gets exactly one archive delete."""
    archive = FakeArchive()
    service, store = _service(tmp_path, archive=archive)
    _seed(store)
    assert service.delete_record("rec-1", "user-1") == {"message": "Health record removed"}
    assert archive.delete_calls == [S3_URL]
    assert store.find_by_id("rec-1") is None


def test_delete_survives_archive_failure(tmp_path):
    """An archive delete failure is logged and the record still goes."""
    archive = FakeArchive(fail_delete=True)
    service, store = _service(tmp_path, archive=archive)
    _seed(store)
    service.delete_record("rec-1", "user-1")
    assert store.find_by_id("rec-1") is None


def test_delete_local_file(tmp_path):
    """A locally served document is removed from the uploads dir."""
    archive = FakeArchive()
    service, store = _service(tmp_path, archive=archive)
    uploads = tmp_path / "uploads"
    uploads.mkdir(parents=True, exist_ok=True)
    local = uploads / "abc123-report.pdf"
    local.write_bytes(b"%PDF")
    _seed(store, file_url="/uploads/abc123-report.pdf")

    service.delete_record("rec-1", "user-1")
    assert not local.exists()
    assert archive.delete_calls == []


def test_delete_requires_ownership(tmp_path):
    """Deleting another user's record is forbidden and removes nothing."""
    service, store = _service(tmp_path)
    _seed(store, user_id="user-2")
    with pytest.raises(AuthorizationError, match="delete"):
        service.delete_record("rec-1", "user-1")
    assert store.find_by_id("rec-1") is not None


# ── initiate_verification ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_initiate_starts_call_with_stored_data(tmp_path):
    """The stored record's data drives the call and the new call is saved."""
    call_client = FakeCallClient([snapshot("ongoing")])
    service, store = _service(tmp_path, call_client=call_client)
    _seed(store)
    result = await service.initiate_verification("rec-1", "user-1")

    assert result["message"] == "Verification call initiated successfully"
    assert result["callId"] == "call-123"
    sent = call_client.initiate_calls[0]
    assert sent["phone"] == "+10000000000"
    assert sent["structured_data"]["patient"]["name"] == "John Doe"
    record = store.find_by_id("rec-1")
    assert record.verification_call.call_id == "call-123"
    assert record.verification_call.status == "registered"


@pytest.mark.asyncio
async def test_initiate_moves_fresh_record_to_verification_initiated(tmp_path):
    """A record not yet finalised advances to verification_initiated."""
    service, store = _service(tmp_path)
    _seed(store, processing_status="document_ai_complete")
    await service.initiate_verification("rec-1", "user-1")
    assert store.find_by_id("rec-1").processing_status.value == "verification_initiated"


@pytest.mark.asyncio
async def test_initiate_uses_and_persists_body_phone(tmp_path):
    """With no stored phone the supplied number is used and saved."""
    call_client = FakeCallClient([snapshot("ongoing")])
    service, store = _service(tmp_path, call_client=call_client)
    _seed(store, patient_phone="")
    await service.initiate_verification("rec-1", "user-1", patient_phone="+15551234567")
    assert call_client.initiate_calls[0]["phone"] == "+15551234567"
    assert store.find_by_id("rec-1").patient_phone == "+15551234567"


@pytest.mark.asyncio
async def test_initiate_without_any_phone_is_rejected(tmp_path):
    """No stored and no supplied phone is invalid input."""
    call_client = FakeCallClient([snapshot("ongoing")])
    service, store = _service(tmp_path, call_client=call_client)
    _seed(store, patient_phone="")
    with pytest.raises(InvalidInputError, match="phone number is required"):
        await service.initiate_verification("rec-1", "user-1")
    assert call_client.initiate_calls == []


@pytest.mark.asyncio
async def test_initiate_rejected_while_call_active(tmp_path):
    """A second call cannot start while one is registered or ongoing."""
    service, store = _service(tmp_path)
    _seed(store, verification_call=_ongoing_call())
    with pytest.raises(InvalidInputError, match="already in progress"):
        await service.initiate_verification("rec-1", "user-1")


@pytest.mark.asyncio
async def test_initiate_after_finished_call_replaces_it(tmp_path):
    """A new call may follow an ended one and fully replaces it."""
    call_client = FakeCallClient([snapshot("ongoing")], call_id="call-456")
    service, store = _service(tmp_path, call_client=call_client)
    _seed(store, verification_call=VerificationCall(
        call_id="call-123", status="ended", summary="old call",
    ))
    await service.initiate_verification("rec-1", "user-1")
    call = store.find_by_id("rec-1").verification_call
    assert call.call_id == "call-456"
    assert call.status == "registered"
    assert call.summary == ""


@pytest.mark.asyncio
async def test_initiate_platform_failure_propagates(tmp_path):
    """A rejected call raises UpstreamFatalError and stores nothing."""
    call_client = FakeCallClient([snapshot("ongoing")], initiate_error=fatal_initiation())
    service, store = _service(tmp_path, call_client=call_client)
    _seed(store)
    with pytest.raises(UpstreamFatalError):
        await service.initiate_verification("rec-1", "user-1")
    assert store.find_by_id("rec-1").verification_call.call_id is None


# ── refresh_verification_status ───────────────────────────────────────────────

@pytest.mark.asyncio
async def test_refresh_without_call_is_not_found(tmp_path):
    """A record that never had a call reports 'No verification call found'."""
    service, store = _service(tmp_path)
    _seed(store)
    with pytest.raises(RecordNotFoundError, match="No verification call found"):
        await service.refresh_verification_status("rec-1", "user-1")


@pytest.mark.asyncio
async def test_refresh_finished_call_does_not_hit_platform(tmp_path):
    """Ended calls are answered from storage."""
    call_client = FakeCallClient([snapshot("ongoing")])
    service, store = _service(tmp_path, call_client=call_client)
    _seed(store, verification_call=VerificationCall(call_id="call-123", status="ended"))
    view = await service.refresh_verification_status("rec-1", "user-1")
    assert view["status"] == "ended"
    assert call_client.status_calls == []


@pytest.mark.asyncio
async def test_refresh_ended_call_applies_analysis(tmp_path):
    """A newly ended call is analysed, corrected and completed once."""
    analyzer = FakeAnalyzer(TranscriptAnalysis(
        corrections=[Correction(field="patientName", incorrect="John Doe", correct="Robert")],
        additional_info="Allergic to latex",
        summary="Name corrected",
        verification_complete=True,
    ))
    call_client = FakeCallClient([snapshot(
        "ended",
        transcript="Agent: Is this John Doe?\nUser: It's Robert.",
        recording_url="https://rec.test/1.wav",
    )])
    service, store = _service(tmp_path, call_client=call_client, analyzer=analyzer)
    _seed(store, verification_call=_ongoing_call())

    view = await service.refresh_verification_status("rec-1", "user-1")
    assert view["status"] == "ended"
    assert view["verificationComplete"] is True
    assert view["hasTranscript"] is True
    assert view["processingStatus"] == "verification_complete"
    assert view["additionalInfo"] == "Allergic to latex"

    record = store.find_by_id("rec-1")
    assert record.patient_name == "Robert"
    assert record.structured_data["patient"]["name"] == "Robert"
    assert record.description == (
        "Uploaded by patient\n\nAdditional info from verification: Allergic to latex"
    )
    assert record.verification_call.end_time

    # A second read neither re-analyses nor appends the info again.
    await service.refresh_verification_status("rec-1", "user-1")
    assert len(analyzer.calls) == 1
    assert len(call_client.status_calls) == 1
    assert store.find_by_id("rec-1").description.count("Additional info") == 1


@pytest.mark.asyncio
async def test_refresh_status_change_without_transcript(tmp_path):
    """registered -> ongoing only updates the stored status."""
    call_client = FakeCallClient([snapshot("ongoing")])
    service, store = _service(tmp_path, call_client=call_client)
    _seed(store, verification_call=VerificationCall(call_id="call-123", status="registered"))
    view = await service.refresh_verification_status("rec-1", "user-1")
    assert view["status"] == "ongoing"
    assert store.find_by_id("rec-1").verification_call.status == "ongoing"


@pytest.mark.asyncio
async def test_refresh_ended_without_transcript_records_end_only(tmp_path):
    """A call that ended unanswered gets an end time but no analysis."""
    analyzer = FakeAnalyzer()
    call_client = FakeCallClient([snapshot("error")])
    service, store = _service(tmp_path, call_client=call_client, analyzer=analyzer)
    _seed(store, verification_call=_ongoing_call())
    view = await service.refresh_verification_status("rec-1", "user-1")

    assert view["status"] == "error"
    assert view["endTime"]
    assert view["processingStatus"] == "processing_complete"
    assert analyzer.calls == []


@pytest.mark.asyncio
async def test_refresh_platform_error_leaves_state_untouched(tmp_path):
    """A failed status lookup returns the stored state."""
    call_client = FakeCallClient([snapshot("ended")], status_errors=1)
    service, store = _service(tmp_path, call_client=call_client)
    _seed(store, verification_call=_ongoing_call())
    view = await service.refresh_verification_status("rec-1", "user-1")
    assert view["status"] == "ongoing"
    assert store.find_by_id("rec-1").verification_call.status == "ongoing"
