"""
record_service.py
-----------------
RecordVerify - Patient-Verified Health Records - Record operations
-------------------------------------------------------------------
Everything the API does with an existing record: the three read
fidelities, deletion (releasing the archived file), manual initiation of a
verification call and the lazily refreshed verification status.

Every operation checks ownership first: an unknown id raises
RecordNotFoundError, a record owned by someone else raises
AuthorizationError.

Lazy refresh
  Reading the verification status asks the call platform for fresh state
  only while the stored call is registered/ongoing. A newly ended call with
  a transcript is analysed, its corrections applied, any additional info
  appended to the description and the record moved to
  verification_complete. A call that ended without a transcript only
  records its end time. A failed platform lookup leaves the stored state
  untouched.

Project: RecordVerify - Patient-Verified Health Records
"""

import logging
import os
from typing import Any, Dict, Optional

from call_client import mask_phone
from config import AppConfig
from corrections import apply_corrections, corrections_as_dicts, merge_additional_info
from errors import (
    AuthorizationError,
    InvalidInputError,
    RecordNotFoundError,
    RecordVerifyError,
    StorageError,
)
from intake import remove_local_file
from record_store import RecordStore
from record_views import full_view, list_view, single_view, verification_view
from schemas import (
    ACTIVE_CALL_STATUSES,
    CallStatus,
    HealthRecord,
    ProcessingStatus,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


class RecordService:
    """
    Record operations behind the HTTP routes.

    Args:
        store:       RecordStore.
        call_client: VerificationCallClient (async, connected).
        analyzer:    TranscriptAnalyzer.
        archive:     S3ArchiveStore.
        config:      AppConfig (uploads dir, preview length).
    """

    def __init__(
        self,
        store: RecordStore,
        call_client: Any,
        analyzer: Any,
        archive: Any,
        config: AppConfig,
    ) -> None:
        self.store = store
        self.call_client = call_client
        self.analyzer = analyzer
        self.archive = archive
        self.config = config

    def _get_owned(self, record_id: str, user_id: str, action: str = "access") -> HealthRecord:
        record = self.store.find_by_id(record_id)
        if record is None:
            raise RecordNotFoundError(record_id)
        if record.user_id != user_id:
            logger.warning("User %s denied %s on record %s.", user_id, action, record_id)
            raise AuthorizationError(f"Not authorized to {action} this record")
        return record

    # ── Reads ────────────────────────────────────────────────────────────────

    def list_records(self, user_id: str) -> Dict[str, Any]:
        """A user's records, newest first, without document payloads."""
        return {"records": [list_view(r) for r in self.store.list_by_user(user_id)]}

    def get_record(self, record_id: str, user_id: str) -> Dict[str, Any]:
        """One record with structured data and a text preview."""
        record = self._get_owned(record_id, user_id)
        return {"record": single_view(record, self.config.preview_chars)}

    def get_full_record(self, record_id: str, user_id: str) -> Dict[str, Any]:
        """One record with every stored field."""
        return {"record": full_view(self._get_owned(record_id, user_id))}

    # ── Delete ───────────────────────────────────────────────────────────────

    def delete_record(self, record_id: str, user_id: str) -> Dict[str, Any]:
        """
        Delete a record and release its document.

        A remote file gets exactly one archive delete; a failure there is
        logged and the record is removed anyway. A local file is removed from
        the uploads directory.

        Raises:
            RecordNotFoundError, AuthorizationError.
        """
        record = self._get_owned(record_id, user_id, action="delete")
        url = record.file_url

        if url and self.archive.is_remote_url(url):
            try:
                self.archive.delete(url)
            except StorageError as exc:
                logger.error("Archive delete failed for record %s: %s", record_id, exc)
        elif url:
            remove_local_file(os.path.join(str(self.config.uploads_dir), os.path.basename(url)))

        self.store.delete(record_id)
        logger.info("Record %s deleted by user %s.", record_id, user_id)
        return {"message": "Health record removed"}

    # ── Verification ─────────────────────────────────────────────────────────

    async def initiate_verification(
        self,
        record_id: str,
        user_id: str,
        patient_phone: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Manually start a verification call for an existing record.

        Args:
            record_id:     Record to verify.
            user_id:       Requesting user.
            patient_phone: Used (and persisted) when the record has no phone.

        Returns:
            dict: message, callId, status, startTime.

        Raises:
            RecordNotFoundError, AuthorizationError.
            InvalidInputError:  a call is already registered/ongoing, or no
                                phone is available.
            UpstreamFatalError: the call platform rejected the call.
        """
        record = self._get_owned(record_id, user_id)

        if record.verification_call.status in ACTIVE_CALL_STATUSES:
            raise InvalidInputError("A verification call is already in progress")

        phone = record.patient_phone.strip()
        if not phone:
            phone = (patient_phone or "").strip()
            if not phone:
                raise InvalidInputError("Patient phone number is required for verification")
            record = self.store.update_fields(record_id, {"patient_phone": phone})

        start = await self.call_client.initiate(
            record.patient_name or "Patient",
            phone,
            record.document_type.value,
            record.id,
            record.extracted_data,
            record.structured_data,
        )

        self.store.update_fields(record_id, {
            "verification_call": {
                "call_id": start.call_id,
                "status": start.status,
                "start_time": start.start_time,
                "metadata": start.raw,
            },
            "processing_status": ProcessingStatus.VERIFICATION_INITIATED,
        })
        logger.info(
            "Manual verification call %s started for record %s (%s).",
            start.call_id, record_id, mask_phone(phone),
        )
        return {
            "message": "Verification call initiated successfully",
            "callId": start.call_id,
            "status": start.status,
            "startTime": start.start_time,
        }

    async def refresh_verification_status(self, record_id: str, user_id: str) -> Dict[str, Any]:
        """
        Return the verification status, refreshing it from the platform first
        while the call is still active.

        Raises:
            RecordNotFoundError: unknown record, or no call was ever placed.
            AuthorizationError.
        """
        record = self._get_owned(record_id, user_id)
        call = record.verification_call
        if not call.call_id:
            raise RecordNotFoundError(record_id, "No verification call found for this record")

        if call.status not in ACTIVE_CALL_STATUSES:
            return verification_view(record)

        try:
            snapshot = await self.call_client.get_status(call.call_id)
        except (RecordVerifyError, RuntimeError) as exc:
            logger.warning("Status refresh for call %s failed: %s", call.call_id, exc)
            return verification_view(record)

        if snapshot.status == call.status:
            return verification_view(record)

        updates: Dict[str, Any] = {"verification_call.status": snapshot.status}
        if snapshot.is_terminal:
            updates["verification_call.end_time"] = snapshot.end_time or utc_now_iso()

        if snapshot.status == CallStatus.ENDED.value and snapshot.has_transcript:
            metadata = dict(snapshot.metadata)
            metadata["call_analysis"] = snapshot.call_analysis or {}
            result = await self.analyzer.analyze(
                snapshot.transcript_object or snapshot.transcript, metadata
            )
            analysis = result.value
            top_level, structured = apply_corrections(record.structured_data, analysis.corrections)
            updates.update(top_level)
            if structured is not record.structured_data:
                updates["structured_data"] = structured
            updates.update({
                "verification_call.transcript": snapshot.transcript,
                "verification_call.transcript_object": snapshot.transcript_object,
                "verification_call.recording_url": snapshot.recording_url,
                "verification_call.verification_complete": analysis.verification_complete,
                "verification_call.corrections": corrections_as_dicts(analysis.corrections),
                "verification_call.additional_info": analysis.additional_info,
                "verification_call.summary": analysis.summary,
                "processing_status": ProcessingStatus.VERIFICATION_COMPLETE,
            })
            if analysis.additional_info.strip():
                updates["description"] = merge_additional_info(
                    record.description, analysis.additional_info
                )

        record = self.store.update_fields(record_id, updates)
        logger.info("Call %s refreshed: %s -> %s.", call.call_id, call.status, snapshot.status)
        return verification_view(record)
