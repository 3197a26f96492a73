"""
main.py
-------
RecordVerify - Patient-Verified Health Records - FastAPI server
----------------------------------------------------------------
Exposes health record upload, retrieval and patient verification over REST.
An upload runs the full processing pipeline (extraction, verification call,
structuring, transcript analysis, archival) before the response is returned.

The requesting user arrives in the X-User-Id header (authentication itself
is handled in front of this service); a request without it gets 401.

Endpoints:
    GET    /health                                   - Service health check
    POST   /api/health-records/upload                - Upload + process a document
    GET    /api/health-records                       - The user's records
    GET    /api/health-records/{id}                  - One record (preview)
    GET    /api/health-records/{id}/full             - One record (everything)
    DELETE /api/health-records/{id}                  - Delete a record
    POST   /api/health-records/{id}/verify           - Start a verification call
    GET    /api/health-records/{id}/verify/status    - Verification call status

Project: RecordVerify - Patient-Verified Health Records
"""

import logging
import os
import re
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from archive_store import S3ArchiveStore
from call_client import VerificationCallClient
from config import AppConfig, load_config
from document_extractor import DocumentExtractor
from errors import (
    AuthorizationError,
    InvalidInputError,
    RecordNotFoundError,
    UpstreamFatalError,
)
from intake import validate_upload
from pipeline import RecordPipeline
from record_service import RecordService
from record_store import RecordStore
from record_structurer import RecordStructurer
from transcript_analyzer import TranscriptAnalyzer

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ── Config ─────────────────────────────────────────────────────────────────────

VERSION = "1.0.0"
SERVICE_NAME = "RecordVerify Health Records API"
API_PREFIX = "/api/health-records"


# ── Request models ─────────────────────────────────────────────────────────────

class VerifyRequest(BaseModel):
    """Optional body for POST /{id}/verify."""
    model_config = ConfigDict(populate_by_name=True)

    patient_phone: Optional[str] = Field(None, alias="patientPhone")


# ── Helpers ────────────────────────────────────────────────────────────────────

def require_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    """
    Resolve the requesting user from the X-User-Id header.

    Raises:
        HTTPException 401: header missing or blank.
    """
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Not authorized, no user")
    return x_user_id.strip()


def _safe_upload_name(filename: str) -> str:
    """Unique on-disk name for an upload; strips path and unsafe characters."""
    base = os.path.basename(filename or "document")
    safe = re.sub(r'[^\w.\-]', '_', base)
    return f"{uuid.uuid4().hex[:12]}-{safe}"


def build_services(config: AppConfig) -> tuple:
    """
    Construct the production service graph.

    Returns:
        tuple: (pipeline, record_service, call_client). The call client must be
            connected before use and closed on shutdown.
    """
    store = RecordStore(config.db_path)
    store.init_db()
    call_client = VerificationCallClient(config.call)
    analyzer = TranscriptAnalyzer(config.structuring, agent_name=config.call.agent_name)
    archive = S3ArchiveStore(config.storage)
    pipeline = RecordPipeline(
        store=store,
        extractor=DocumentExtractor(config.extraction),
        structurer=RecordStructurer(config.structuring),
        call_client=call_client,
        analyzer=analyzer,
        archive=archive,
        config=config,
    )
    service = RecordService(store, call_client, analyzer, archive, config)
    return pipeline, service, call_client


# ── FastAPI app ────────────────────────────────────────────────────────────────

def create_app(
    config: Optional[AppConfig] = None,
    pipeline: Optional[Any] = None,
    service: Optional[Any] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config:   AppConfig; loaded from the environment when None.
        pipeline: Pre-built pipeline (tests); built on startup when None.
        service:  Pre-built record service (tests); built on startup when None.

    Returns:
        FastAPI: The configured app.
    """
    config = config or load_config()
    os.makedirs(config.uploads_dir, exist_ok=True)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        call_client = None
        if getattr(app.state, "pipeline", None) is None or getattr(app.state, "records", None) is None:
            built_pipeline, built_service, call_client = build_services(config)
            await call_client.connect()
            app.state.pipeline = app.state.pipeline or built_pipeline
            app.state.records = app.state.records or built_service
            logger.info("Services ready (db=%s, uploads=%s).", config.db_path, config.uploads_dir)
        try:
            yield
        finally:
            if call_client is not None:
                await call_client.close()

    app = FastAPI(
        title=SERVICE_NAME,
        version=VERSION,
        description="Digitises medical documents and verifies them with the patient by phone.",
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.pipeline = pipeline
    app.state.records = service

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Error mapping ──────────────────────────────────────────────────────────

    @app.exception_handler(InvalidInputError)
    async def _invalid_input(request: Request, exc: InvalidInputError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"message": str(exc)})

    @app.exception_handler(AuthorizationError)
    async def _forbidden(request: Request, exc: AuthorizationError) -> JSONResponse:
        return JSONResponse(status_code=403, content={"message": str(exc)})

    @app.exception_handler(RecordNotFoundError)
    async def _not_found(request: Request, exc: RecordNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"message": str(exc)})

    @app.exception_handler(UpstreamFatalError)
    async def _upstream_fatal(request: Request, exc: UpstreamFatalError) -> JSONResponse:
        return JSONResponse(
            status_code=502,
            content={"message": "Verification call could not be started", "error": str(exc)},
        )

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"message": "Server error"})

    # ── Endpoints ──────────────────────────────────────────────────────────────

    @app.get("/health")
    def health_check() -> dict:
        """
        Return service health status.

        Returns:
            dict: service, version, status, timestamp.
        """
        return {
            "service": SERVICE_NAME,
            "version": VERSION,
            "status": "ok",
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post(f"{API_PREFIX}/upload", status_code=201)
    async def upload_health_record(
        request: Request,
        file: Optional[UploadFile] = File(None),
        title: Optional[str] = Form(None),
        description: Optional[str] = Form(None),
        document_type: Optional[str] = Form(None, alias="documentType"),
        patient_name: Optional[str] = Form(None, alias="patientName"),
        patient_phone: Optional[str] = Form(None, alias="patientPhone"),
        user_id: str = Depends(require_user),
    ) -> dict:
        """
        Receive a document and run the processing pipeline on it.

        Returns:
            dict: Truncated record view; see record_views.upload_view.

        Raises:
            InvalidInputError (400): no file, unsupported type, oversize file.
        """
        if file is None or not file.filename:
            raise InvalidInputError("No file uploaded")

        save_path = os.path.join(str(config.uploads_dir), _safe_upload_name(file.filename))
        contents = await file.read()
        with open(save_path, "wb") as f:
            f.write(contents)
        logger.info("Received upload '%s' (%d bytes) from user %s.", file.filename, len(contents), user_id)

        intake = validate_upload(
            save_path,
            file.filename,
            file.content_type or "",
            user_id,
            title=title,
            description=description,
            document_type=document_type,
            patient_name=patient_name,
            patient_phone=patient_phone,
            max_upload_bytes=config.max_upload_bytes,
        )
        return await request.app.state.pipeline.process_upload(intake)

    @app.get(API_PREFIX)
    def list_health_records(request: Request, user_id: str = Depends(require_user)) -> dict:
        """Return the user's records, newest first."""
        return request.app.state.records.list_records(user_id)

    @app.get(f"{API_PREFIX}/{{record_id}}")
    def get_health_record(
        record_id: str, request: Request, user_id: str = Depends(require_user)
    ) -> dict:
        """Return one record with structured data and a text preview."""
        return request.app.state.records.get_record(record_id, user_id)

    @app.get(f"{API_PREFIX}/{{record_id}}/full")
    def get_full_health_record(
        record_id: str, request: Request, user_id: str = Depends(require_user)
    ) -> dict:
        """Return one record with every stored field."""
        return request.app.state.records.get_full_record(record_id, user_id)

    @app.delete(f"{API_PREFIX}/{{record_id}}")
    def delete_health_record(
        record_id: str, request: Request, user_id: str = Depends(require_user)
    ) -> dict:
        """Delete a record and its archived document."""
        return request.app.state.records.delete_record(record_id, user_id)

    @app.post(f"{API_PREFIX}/{{record_id}}/verify")
    async def initiate_call_verification(
        record_id: str,
        request: Request,
        body: Optional[VerifyRequest] = None,
        user_id: str = Depends(require_user),
    ) -> dict:
        """
        Start a verification call for an existing record.

        Raises:
            InvalidInputError (400): call already active, or no phone number.
            UpstreamFatalError (502): the call platform rejected the call.
        """
        phone = body.patient_phone if body is not None else None
        return await request.app.state.records.initiate_verification(record_id, user_id, phone)

    @app.get(f"{API_PREFIX}/{{record_id}}/verify/status")
    async def get_call_verification_status(
        record_id: str, request: Request, user_id: str = Depends(require_user)
    ) -> dict:
        """Return the verification status, refreshed while the call is active."""
        return await request.app.state.records.refresh_verification_status(record_id, user_id)

    return app


app = create_app()
