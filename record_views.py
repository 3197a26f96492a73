"""
record_views.py
---------------
RecordVerify - Patient-Verified Health Records - API read views
----------------------------------------------------------------
The record is large (full extracted text, every page, transcripts), so the
API exposes it at several fidelities:

    upload_view   - returned by the upload pipeline: 300-char text preview,
                    page count, structured data, call summary, pointer to
                    the full accessor.
    list_view     - one entry per record in a user's listing: identity,
                    presence flags and processing metadata.
    single_view   - one record with structured data and a text preview.
    full_view     - everything.
    verification_view - call status for the verification status route.

All views use the camelCase wire names.

Project: RecordVerify - Patient-Verified Health Records
"""

from typing import Any, Dict

from schemas import HealthRecord

FULL_RECORD_MESSAGE = (
    "Full document data saved. Use the /api/health-records/:id/full endpoint "
    "to retrieve complete data."
)


def _text_preview(text: str, limit: int) -> str:
    text = text or ""
    return text[:limit] + "..." if len(text) > limit else text


def _identity(record: HealthRecord) -> Dict[str, Any]:
    return {
        "id": record.id,
        "title": record.title,
        "description": record.description,
        "documentType": record.document_type.value,
        "patientName": record.patient_name,
        "patientPhone": record.patient_phone,
        "fileUrl": record.file_url,
        "createdAt": record.created_at,
    }


def upload_view(record: HealthRecord, preview_chars: int = 300) -> Dict[str, Any]:
    extracted = record.extracted_data
    view = _identity(record)
    view.update({
        "extractedData": {
            "text": _text_preview(extracted.text if extracted else "", preview_chars),
            "pageCount": extracted.page_count if extracted else 0,
        },
        "structuredData": record.structured_data,
        "processingStatus": record.processing_status.value,
        "verificationCall": {
            "callId": record.verification_call.call_id,
            "status": record.verification_call.status,
            "recordingUrl": record.verification_call.recording_url,
        },
        "message": FULL_RECORD_MESSAGE,
    })
    return view


def list_view(record: HealthRecord) -> Dict[str, Any]:
    view = _identity(record)
    view.update({
        "hasExtractedData": record.extracted_data is not None,
        "hasStructuredData": record.structured_data is not None,
        "processingStatus": record.processing_status.value,
        "processingMetadata": record.processing_metadata,
    })
    return view


def single_view(record: HealthRecord, preview_chars: int = 300) -> Dict[str, Any]:
    extracted = record.extracted_data
    text = extracted.text if extracted else ""
    view = _identity(record)
    view.update({
        "structuredData": record.structured_data,
        "extractedData": {
            "hasText": bool(text),
            "textPreview": _text_preview(text, preview_chars),
            "pageCount": extracted.page_count if extracted else 0,
        },
        "processingStatus": record.processing_status.value,
        "processingMetadata": record.processing_metadata,
    })
    return view


def full_view(record: HealthRecord) -> Dict[str, Any]:
    return record.to_api()


def verification_view(record: HealthRecord) -> Dict[str, Any]:
    call = record.verification_call
    return {
        "callId": call.call_id,
        "status": call.status,
        "startTime": call.start_time,
        "endTime": call.end_time,
        "verificationComplete": call.verification_complete,
        "hasTranscript": bool(call.transcript),
        "hasTranscriptObject": bool(call.transcript_object),
        "corrections": call.corrections,
        "additionalInfo": call.additional_info,
        "summary": call.summary,
        "recordingUrl": call.recording_url,
        "processingStatus": record.processing_status.value,
    }
