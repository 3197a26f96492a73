"""
pipeline.py
-----------
RecordVerify - Patient-Verified Health Records - Upload processing pipeline
----------------------------------------------------------------------------
Sequences the three unreliable external services (text extraction,
verification calling, structuring) plus transcript analysis and archival
into one record's lifecycle.

Sequence per upload:
  1. Extraction          -> create the record (status document_ai_complete).
  2. Call initiation     -> only when a patient phone was given.
  3. Bounded poll        -> until ended/error or the call's max duration.
  4. Structuring         -> always, on the extracted text + upload context.
  5. Transcript analysis -> only when the call produced a transcript;
                            allow-listed corrections are applied.
  6. Archival            -> S3, else keep the local file and serve /uploads/.
  7. Finalize            -> one update with the terminal status.

A failing stage never aborts the pipeline; its fallback is used and
processingMetadata.timeline records which source ("real" / "mock") each
stage's output came from. Only unhandled errors and cancellation escape,
after the local upload is cleaned up.

Project: RecordVerify - Patient-Verified Health Records
"""

import asyncio
import logging
import os
import time
import uuid
from typing import Any, Callable, Dict, Optional

from call_client import mask_phone
from call_polling import ClockFn, PollOutcome, SleepFn, poll_until_terminal
from config import ALLOWED_MIME_TYPES, AppConfig
from corrections import apply_corrections, corrections_as_dicts
from errors import RecordVerifyError
from intake import remove_local_file
from record_store import RecordStore
from record_views import upload_view
from schemas import (
    CallStatus,
    CallStatusSnapshot,
    ExtractedData,
    HealthRecord,
    ProcessingStatus,
    TranscriptAnalysis,
    UploadIntake,
    utc_now_iso,
)

logger = logging.getLogger(__name__)


def new_timeline() -> Dict[str, Dict[str, Any]]:
    """Empty processing timeline, one entry per stage."""
    return {
        "documentAI": {"startTime": None, "endTime": None, "source": None},
        "verification": {"startTime": None, "endTime": None, "status": CallStatus.NOT_INITIATED.value},
        "structuring": {"startTime": None, "endTime": None, "source": None},
        "archival": {"startTime": None, "endTime": None, "status": None},
    }


def _file_info(intake: UploadIntake) -> Dict[str, Any]:
    extension = os.path.splitext(intake.original_file_name)[1].lower()
    return {
        "originalName": intake.original_file_name,
        "size": intake.size_bytes,
        "mimeType": intake.mime_type,
        "extension": extension or ALLOWED_MIME_TYPES.get(intake.mime_type, ""),
    }


class RecordPipeline:
    """
    Upload processing orchestrator.

    Args:
        store:        RecordStore.
        extractor:    DocumentExtractor (sync, run in a worker thread).
        structurer:   RecordStructurer (async).
        call_client:  VerificationCallClient (async, connected).
        analyzer:     TranscriptAnalyzer (async).
        archive:      S3ArchiveStore (sync, run in a worker thread).
        config:       AppConfig; config.call drives polling.
        sleep, clock: Injectable for tests.
        id_factory:   Record id generator.
    """

    def __init__(
        self,
        store: RecordStore,
        extractor: Any,
        structurer: Any,
        call_client: Any,
        analyzer: Any,
        archive: Any,
        config: AppConfig,
        sleep: SleepFn = asyncio.sleep,
        clock: ClockFn = time.monotonic,
        id_factory: Callable[[], str] = lambda: uuid.uuid4().hex,
    ) -> None:
        self.store = store
        self.extractor = extractor
        self.structurer = structurer
        self.call_client = call_client
        self.analyzer = analyzer
        self.archive = archive
        self.config = config
        self._sleep = sleep
        self._clock = clock
        self._id_factory = id_factory

    async def process_upload(self, intake: UploadIntake) -> Dict[str, Any]:
        """
        Run the full pipeline for one validated upload.

        Args:
            intake: Validated upload (file already on local disk).

        Returns:
            dict: Truncated upload view (see record_views.upload_view).

        Raises:
            asyncio.CancelledError: if the task is cancelled; the local file
                is removed first.
            Exception: any unhandled error, after local file cleanup.
        """
        try:
            return await self._run(intake)
        except asyncio.CancelledError:
            logger.warning("Pipeline cancelled for '%s'; cleaning up.", intake.original_file_name)
            remove_local_file(intake.local_file_path)
            raise
        except Exception as exc:
            logger.exception("Pipeline failed for '%s': %s", intake.original_file_name, exc)
            remove_local_file(intake.local_file_path)
            raise

    async def _run(self, intake: UploadIntake) -> Dict[str, Any]:
        timeline = new_timeline()

        # ── 1. Extraction ────────────────────────────────────────────────────
        timeline["documentAI"]["startTime"] = utc_now_iso()
        extraction = await asyncio.to_thread(
            self.extractor.extract, intake.local_file_path, intake.mime_type
        )
        extracted: ExtractedData = extraction.value
        timeline["documentAI"]["endTime"] = utc_now_iso()
        timeline["documentAI"]["source"] = extraction.source
        if extraction.error:
            timeline["documentAI"]["error"] = extraction.error

        record = HealthRecord(
            id=self._id_factory(),
            user_id=intake.user_id,
            title=intake.title,
            description=intake.description,
            document_type=intake.document_type,
            patient_name=intake.patient_name,
            patient_phone=intake.patient_phone,
            extracted_data=extracted,
            processing_metadata={
                "fileInfo": _file_info(intake),
                "timeline": timeline,
                "extractedTextLength": len(extracted.text),
                "pageCount": extracted.page_count,
            },
            processing_status=ProcessingStatus.DOCUMENT_AI_COMPLETE,
        )
        self.store.create(record)
        logger.info(
            "Record %s created from '%s' (%d chars, extraction=%s).",
            record.id, intake.original_file_name, len(extracted.text), extraction.source,
        )

        # ── 2-3. Verification call ───────────────────────────────────────────
        snapshot: Optional[CallStatusSnapshot] = None
        if intake.has_phone:
            call_id = await self._initiate_call(record, intake, extracted, timeline)
            if call_id:
                snapshot = await self._await_call(record.id, call_id, timeline)
            timeline["verification"]["endTime"] = utc_now_iso()
        else:
            logger.info("Record %s has no patient phone; skipping verification call.", record.id)

        # ── 4. Structuring ───────────────────────────────────────────────────
        timeline["structuring"]["startTime"] = utc_now_iso()
        structuring = await self.structurer.structure(extracted.text, {
            "patient_name": intake.patient_name,
            "patient_phone": intake.patient_phone,
            "document_type": intake.document_type.value,
            "description": intake.description,
        })
        structured_data = structuring.value
        timeline["structuring"]["source"] = structuring.source
        if structuring.error:
            timeline["structuring"]["error"] = structuring.error

        # ── 5. Transcript analysis ───────────────────────────────────────────
        analysed = False
        if snapshot is not None and snapshot.is_terminal and snapshot.has_transcript:
            structured_data = await self._analyse_transcript(
                record.id, snapshot, structured_data, timeline
            )
            analysed = True
        timeline["structuring"]["endTime"] = utc_now_iso()

        # ── 6. Archival ──────────────────────────────────────────────────────
        timeline["archival"]["startTime"] = utc_now_iso()
        file_url = await self._archive(intake, timeline)
        timeline["archival"]["endTime"] = utc_now_iso()
        storage_location = "s3" if self.archive.is_remote_url(file_url) else "local"

        # ── 7. Finalize ──────────────────────────────────────────────────────
        terminal = (
            ProcessingStatus.VERIFICATION_COMPLETE if analysed
            else ProcessingStatus.PROCESSING_COMPLETE
        )
        final = self.store.update_fields(record.id, {
            "structured_data": structured_data,
            "file_url": file_url,
            "processing_metadata.timeline": timeline,
            "processing_metadata.storageLocation": storage_location,
            "processing_status": terminal,
        })
        logger.info(
            "Record %s finished: status=%s storage=%s.",
            record.id, final.processing_status.value, storage_location,
        )
        return upload_view(final, self.config.preview_chars)

    async def _initiate_call(
        self,
        record: HealthRecord,
        intake: UploadIntake,
        extracted: ExtractedData,
        timeline: Dict[str, Dict[str, Any]],
    ) -> Optional[str]:
        """Start the verification call; return its id, or None on failure."""
        timeline["verification"]["startTime"] = utc_now_iso()
        try:
            start = await self.call_client.initiate(
                intake.patient_name or "Patient",
                intake.patient_phone,
                intake.document_type.value,
                record.id,
                extracted,
            )
        except (RecordVerifyError, RuntimeError) as exc:
            logger.error(
                "Verification call for record %s to %s could not be started: %s",
                record.id, mask_phone(intake.patient_phone), exc,
            )
            timeline["verification"]["status"] = CallStatus.ERROR.value
            timeline["verification"]["error"] = str(exc)
            return None

        self.store.update_fields(record.id, {
            "verification_call.call_id": start.call_id,
            "verification_call.status": start.status,
            "verification_call.start_time": start.start_time,
            "verification_call.metadata": start.raw,
            "processing_status": ProcessingStatus.VERIFICATION_INITIATED,
        })
        timeline["verification"]["status"] = start.status
        return start.call_id

    async def _await_call(
        self,
        record_id: str,
        call_id: str,
        timeline: Dict[str, Dict[str, Any]],
    ) -> Optional[CallStatusSnapshot]:
        """Poll the call and persist what it produced."""
        call_cfg = self.config.call
        outcome: PollOutcome = await poll_until_terminal(
            self.call_client,
            call_id,
            call_cfg.poll_interval_seconds,
            call_cfg.max_call_duration_seconds,
            sleep=self._sleep,
            clock=self._clock,
        )
        snapshot = outcome.snapshot
        if outcome.timed_out:
            timeline["verification"]["status"] = "timeout"
        elif snapshot is not None:
            timeline["verification"]["status"] = snapshot.status

        if snapshot is None:
            return None

        if snapshot.is_terminal:
            updates: Dict[str, Any] = {
                "verification_call.status": snapshot.status,
                "verification_call.end_time": snapshot.end_time or utc_now_iso(),
            }
            if snapshot.has_transcript:
                updates.update({
                    "verification_call.transcript": snapshot.transcript,
                    "verification_call.transcript_object": snapshot.transcript_object,
                    "verification_call.recording_url": snapshot.recording_url,
                    "processing_status": ProcessingStatus.VERIFICATION_ENDED,
                })
            else:
                logger.info("Call %s ended without a transcript.", call_id)
            self.store.update_fields(record_id, updates)
        else:
            self.store.update_fields(record_id, {"verification_call.status": snapshot.status})
        return snapshot

    async def _analyse_transcript(
        self,
        record_id: str,
        snapshot: CallStatusSnapshot,
        structured_data: Optional[Dict[str, Any]],
        timeline: Dict[str, Dict[str, Any]],
    ) -> Optional[Dict[str, Any]]:
        """Analyse the transcript, apply corrections, return updated structured data."""
        metadata = dict(snapshot.metadata)
        metadata["call_analysis"] = snapshot.call_analysis or {}
        result = await self.analyzer.analyze(
            snapshot.transcript_object or snapshot.transcript, metadata
        )
        analysis: TranscriptAnalysis = result.value
        timeline["verification"]["analysisSource"] = result.source

        top_level, structured_data = apply_corrections(structured_data, analysis.corrections)
        updates: Dict[str, Any] = dict(top_level)
        updates.update({
            "verification_call.verification_complete": analysis.verification_complete,
            "verification_call.corrections": corrections_as_dicts(analysis.corrections),
            "verification_call.additional_info": analysis.additional_info,
            "verification_call.summary": analysis.summary,
        })
        self.store.update_fields(record_id, updates)
        return structured_data

    async def _archive(self, intake: UploadIntake, timeline: Dict[str, Dict[str, Any]]) -> str:
        """Archive the upload; fall back to the local copy on failure."""
        try:
            url = await asyncio.to_thread(
                self.archive.put,
                intake.local_file_path,
                intake.original_file_name,
                intake.mime_type,
            )
        except RecordVerifyError as exc:
            logger.warning(
                "Archival failed for '%s' (%s); serving local copy.",
                intake.original_file_name, exc,
            )
            timeline["archival"]["status"] = "local_fallback"
            timeline["archival"]["error"] = str(exc)
            return f"/uploads/{os.path.basename(intake.local_file_path)}"

        remove_local_file(intake.local_file_path)
        timeline["archival"]["status"] = "archived"
        return url
