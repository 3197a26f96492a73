"""
test_record_store.py
--------------------
RecordVerify - Patient-Verified Health Records - Tests for record_store.py
---------------------------------------------------------------------------
Every test uses a fresh SQLite file under pytest's tmp_path.

Tests cover:
    - create / find / list ordering / delete
    - JSON column round trip (camelCase wire form)
    - Dotted partial updates
    - Monotonic processing_status and verification_call.status guards
    - Rejection of immutable / unknown fields

Run:
    pytest tests/test_record_store.py -v --tb=short

Project: RecordVerify - Patient-Verified Health Records
"""

import json
import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
from errors import RecordNotFoundError
from record_store import RecordStore, get_connection
from schemas import ExtractedData, HealthRecord, PageText, VerificationCall


@pytest.fixture
def store(tmp_path):
    s = RecordStore(tmp_path / "db" / "records.sqlite")
    s.init_db()
    return s


def _record(record_id="rec-1", user_id="user-1", created_at="2026-01-01T00:00:00+00:00", **kwargs):
    return HealthRecord(
        id=record_id,
        user_id=user_id,
        title="Lab work",
        patient_name="John Doe",
        patient_phone="+10000000000",
        extracted_data=ExtractedData(text="HbA1c 6.8%", pages=[PageText(page_number=1, text="HbA1c 6.8%")]),
        structured_data={"patient": {"name": "John Doe"}},
        processing_metadata={"timeline": {"documentAI": {"source": "real"}}},
        processing_status="document_ai_complete",
        created_at=created_at,
        **kwargs,
    )


# ── create / read ─────────────────────────────────────────────────────────────

def test_init_db_is_idempotent(store):
    """Calling init_db twice does not fail."""
    store.init_db()


def test_create_and_find_round_trip(store):
    """Nested documents survive the JSON columns intact."""
    store.create(_record())
    found = store.find_by_id("rec-1")
    assert found.extracted_data.text == "HbA1c 6.8%"
    assert found.extracted_data.pages[0].page_number == 1
    assert found.structured_data == {"patient": {"name": "John Doe"}}
    assert found.processing_metadata["timeline"]["documentAI"]["source"] == "real"
    assert found.verification_call.status == "not_initiated"


def test_nested_json_stored_camel_case(store):
    """extracted_data and verification_call columns use the wire spelling."""
    store.create(_record(verification_call=VerificationCall(call_id="c-1", status="registered")))
    with get_connection(store.db_path) as conn:
        row = conn.execute("SELECT * FROM health_records WHERE id = 'rec-1'").fetchone()
    assert "pageNumber" in json.loads(row["extracted_data"])["pages"][0]
    assert json.loads(row["verification_call"])["callId"] == "c-1"


def test_find_missing_returns_none(store):
    """Unknown ids return None."""
    assert store.find_by_id("nope") is None


def test_list_by_user_newest_first(store):
    """Listing is scoped to the owner and ordered by created_at descending."""
    store.create(_record("old", created_at="2026-01-01T00:00:00+00:00"))
    store.create(_record("new", created_at="2026-02-01T00:00:00+00:00"))
    store.create(_record("other", user_id="user-2"))
    assert [r.id for r in store.list_by_user("user-1")] == ["new", "old"]


def test_delete(store):
    """delete() reports whether a row was removed."""
    store.create(_record())
    assert store.delete("rec-1") is True
    assert store.delete("rec-1") is False
    assert store.find_by_id("rec-1") is None


# ── update_fields ─────────────────────────────────────────────────────────────

def test_dotted_update_patches_nested_documents(store):
    """Dotted keys change one nested value and keep its siblings."""
    store.create(_record())
    updated = store.update_fields("rec-1", {
        "verification_call.call_id": "call-9",
        "verification_call.status": "registered",
        "processing_metadata.timeline.verification": {"status": "registered"},
    })
    assert updated.verification_call.call_id == "call-9"
    assert updated.processing_metadata["timeline"]["documentAI"]["source"] == "real"
    assert updated.processing_metadata["timeline"]["verification"]["status"] == "registered"
    assert store.find_by_id("rec-1").verification_call.status == "registered"


def test_update_bumps_updated_at(store):
    """Every write refreshes updated_at."""
    store.create(_record(updated_at="2000-01-01T00:00:00+00:00"))
    updated = store.update_fields("rec-1", {"title": "Renamed"})
    assert updated.title == "Renamed"
    assert updated.updated_at > "2000-01-01T00:00:00+00:00"


def test_processing_status_never_regresses(store):
    """A backward processing_status is dropped; the rest of the update applies."""
    store.create(_record())
    store.update_fields("rec-1", {"processing_status": "processing_complete"})
    updated = store.update_fields("rec-1", {
        "processing_status": "document_ai_complete",
        "description": "still written",
    })
    assert updated.processing_status.value == "processing_complete"
    assert updated.description == "still written"


def test_processing_complete_can_upgrade_to_verification_complete(store):
    """A later verification may move a processed record forward."""
    store.create(_record())
    store.update_fields("rec-1", {"processing_status": "processing_complete"})
    updated = store.update_fields("rec-1", {"processing_status": "verification_complete"})
    assert updated.processing_status.value == "verification_complete"


def test_call_status_never_regresses(store):
    """ended cannot go back to ongoing, nor sideways to error."""
    store.create(_record(verification_call=VerificationCall(call_id="c-1", status="ended")))
    assert store.update_fields("rec-1", {"verification_call.status": "ongoing"}).verification_call.status == "ended"
    assert store.update_fields("rec-1", {"verification_call.status": "error"}).verification_call.status == "ended"


def test_new_call_replaces_finished_call(store):
    """Replacing verification_call with a new call id restarts its lifecycle."""
    store.create(_record(verification_call=VerificationCall(call_id="c-1", status="ended")))
    updated = store.update_fields("rec-1", {
        "verification_call": {"call_id": "c-2", "status": "registered"},
    })
    assert updated.verification_call.call_id == "c-2"
    assert updated.verification_call.status == "registered"


def test_immutable_and_unknown_fields_rejected(store):
    """id/user_id/created_at and unknown names raise ValueError."""
    store.create(_record())
    with pytest.raises(ValueError):
        store.update_fields("rec-1", {"user_id": "someone-else"})
    with pytest.raises(ValueError):
        store.update_fields("rec-1", {"nonsense": 1})
    with pytest.raises(ValueError):
        store.update_fields("rec-1", {"title.sub": "x"})
    assert store.find_by_id("rec-1").user_id == "user-1"


def test_update_missing_record_raises(store):
    """Updating an unknown id raises RecordNotFoundError."""
    with pytest.raises(RecordNotFoundError):
        store.update_fields("missing", {"title": "x"})
