"""
call_client.py
--------------
RecordVerify - Patient-Verified Health Records - Verification call client
--------------------------------------------------------------------------
Async client for the Retell voice platform that places the outbound
verification call to the patient and reads its status back.

Call initiation (three configuration writes, then the call):
  1. PATCH /update-agent/{agent_id}      voice_id
  2. PATCH /update-retell-llm/{llm_id}   general_prompt (verification script)
  3. PATCH /update-agent/{agent_id}      max_call_duration_ms (forced hangup)
  4. POST  /v2/create-phone-call         from/to/agent_id/metadata
Any failure in 1-4 raises UpstreamFatalError; no call exists in that case.

Status lookup:
  GET /v2/get-call/{call_id}. Transcript fields are only read once the call
  is ended or errored. Platform statuses outside the known set (for example
  "not_connected") are reported as "error".

Usage (async context manager):
    async with VerificationCallClient(config.call) as client:
        start = await client.initiate(...)
        snapshot = await client.get_status(start.call_id)

Project: RecordVerify - Patient-Verified Health Records
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError

from config import CallConfig
from errors import CallPlatformError, InvalidInputError, UpstreamFatalError
from schemas import CallStart, CallStatus, CallStatusSnapshot, utc_now_iso

logger = logging.getLogger(__name__)

_KNOWN_STATUSES = {s.value for s in CallStatus}
_TRANSCRIPT_STATUSES = {CallStatus.ENDED.value, CallStatus.ERROR.value}
_SUMMARY_TEXT_CHARS = 500


def mask_phone(phone: Optional[str]) -> str:
    """Return the phone number with all but the last 4 digits hidden, for logs."""
    digits = "".join(ch for ch in (phone or "") if ch.isdigit())
    if not digits:
        return "<none>"
    return f"***{digits[-4:]}"


def normalize_phone(phone: str) -> str:
    """Prefix '+' when missing; the platform expects E.164 numbers."""
    phone = (phone or "").strip()
    return phone if phone.startswith("+") else f"+{phone}"


def _ms_to_iso(value: Any) -> Optional[str]:
    if value in (None, "", 0):
        return None
    try:
        return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc).isoformat()
    except (TypeError, ValueError, OverflowError):
        return None


def normalize_call_status(raw_status: Any) -> str:
    """Map a platform call_status onto the closed CallStatus set."""
    status = str(raw_status or "").strip().lower()
    if status in _KNOWN_STATUSES:
        return status
    if status:
        logger.warning("Unrecognised call status '%s'; treating as error.", status)
    return CallStatus.ERROR.value


# ── Verification script ──────────────────────────────────────────────────────

def _document_summary(
    extracted_data: Any,
    structured_data: Optional[Dict[str, Any]],
) -> str:
    if structured_data:
        sections = []
        if structured_data.get("summary"):
            sections.append(f"Document summary: {structured_data['summary']}")
        diagnoses = structured_data.get("diagnoses")
        if isinstance(diagnoses, list) and diagnoses:
            sections.append(f"Diagnoses: {', '.join(str(d) for d in diagnoses)}")
        medications = structured_data.get("medications")
        if isinstance(medications, list) and medications:
            meds = []
            for med in medications:
                if isinstance(med, dict):
                    meds.append(", ".join(f"{k}: {v}" for k, v in med.items()))
                else:
                    meds.append(str(med))
            sections.append(f"Medications: {'; '.join(meds)}")
        procedures = structured_data.get("procedures")
        if isinstance(procedures, list) and procedures:
            sections.append(f"Procedures: {', '.join(str(p) for p in procedures)}")
        if sections:
            return "\n".join(sections)

    if isinstance(extracted_data, str):
        text = extracted_data
    elif isinstance(extracted_data, dict):
        text = extracted_data.get("text") or ""
    else:
        text = getattr(extracted_data, "text", "") or ""
    if len(text) > _SUMMARY_TEXT_CHARS:
        return text[:_SUMMARY_TEXT_CHARS] + "..."
    return text


def build_verification_script(
    patient_name: str,
    document_type: str,
    extracted_data: Any,
    structured_data: Optional[Dict[str, Any]] = None,
    agent_name: str = "Luna",
    organization: str = "Digital Health Records",
    max_minutes: int = 3,
) -> str:
    """
    Build the general prompt the voice agent follows during the call.

    Args:
        patient_name:    Name the agent addresses.
        document_type:   Document type being verified.
        extracted_data:  ExtractedData, a dict with "text", or a plain string.
        structured_data: Structured record; its summary/diagnoses/medications/
                         procedures are preferred over raw text when present.
        agent_name:      Persona name.
        organization:    Organisation the agent calls on behalf of.
        max_minutes:     Forced-hangup cap announced to the patient.

    Returns:
        str: The prompt.
    """
    name = patient_name or "the patient"
    doc_type = document_type or "medical document"
    summary = _document_summary(extracted_data, structured_data)
    return f"""You are {agent_name}, a healthcare verification assistant calling on behalf of {organization}.

Your task is to verify patient information and document details with {name} in a brief, professional call.

IMPORTANT: Start by informing the patient that this call will automatically end after {max_minutes} minutes, so the verification needs to be completed quickly.

Call Structure:
1. Greet {name}, identify yourself as {agent_name} from {organization} verification service, and IMMEDIATELY inform them this call will automatically end after {max_minutes} minutes
2. Explain that you're calling to verify the digitization of their {doc_type} and ensure the information is accurate
3. Verify their name and confirm they are the correct patient
4. Briefly summarize the key information extracted from their document and ask if it's accurate
5. Ask if there are any corrections or additional information they would like to add
6. Thank them for their time and explain that their feedback will help ensure their digital medical records are accurate

Information to verify:
- Patient Name: {patient_name or 'Not provided'}
- Document Type: {document_type or 'Medical document'}
- Document Content: {summary}

IMPORTANT GUIDELINES:
- At the beginning of the call, clearly state: "This automated verification call will end after {max_minutes} minutes, so let's complete the verification quickly."
- Be concise and professional
- Focus only on verifying the information
- Do not discuss treatment options or give medical advice
- If the patient says the information is incorrect, ask what the correct information is
- Take note of all corrections mentioned by the patient

If the patient has medical questions, politely explain that you're only calling to verify document information and they should contact their healthcare provider for medical advice."""


class VerificationCallClient:
    """
    Async Retell client.

    Args:
        config:    CallConfig (credentials, agent/LLM ids, caps, timeouts).
        transport: Optional httpx transport, e.g. httpx.MockTransport in tests.
    """

    def __init__(
        self,
        config: CallConfig,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.config = config
        self._transport = transport
        self._http: Optional[httpx.AsyncClient] = None

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def connect(self) -> None:
        """Open the underlying HTTP connection pool."""
        if self._http is None:
            self._http = httpx.AsyncClient(
                base_url=self.config.base_url,
                timeout=self.config.request_timeout,
                transport=self._transport,
                headers={
                    "Authorization": f"Bearer {self.config.api_key}",
                    "Content-Type": "application/json",
                },
            )
            logger.debug("VerificationCallClient: HTTP transport initialised.")

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        if self._http is not None:
            await self._http.aclose()
            self._http = None
            logger.debug("VerificationCallClient: HTTP transport closed.")

    async def __aenter__(self) -> "VerificationCallClient":
        await self.connect()
        return self

    async def __aexit__(self, *_: Any) -> None:
        await self.close()

    # ── Internal request helper ──────────────────────────────────────────────

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Execute a platform request and return the parsed JSON body.

        Raises:
            RuntimeError:      if connect() / __aenter__ was not called.
            CallPlatformError: on transport failure or a non-2xx status.
        """
        if self._http is None:
            raise RuntimeError(
                "VerificationCallClient is not connected. "
                "Use 'async with VerificationCallClient(...) as client:' or call connect() first."
            )
        try:
            resp = await self._http.request(method, path, json=json)
        except httpx.HTTPError as exc:
            raise CallPlatformError(f"Call platform request failed: {exc}") from exc

        if resp.status_code not in range(200, 300):
            raise CallPlatformError(
                f"Call platform error {resp.status_code}: {resp.text}",
                status_code=resp.status_code,
            )
        if not resp.content:
            return {}
        try:
            body = resp.json()
        except ValueError as exc:
            raise CallPlatformError(f"Call platform returned non-JSON body: {exc}") from exc
        return body if isinstance(body, dict) else {}

    # ── Operations ───────────────────────────────────────────────────────────

    async def initiate(
        self,
        patient_name: str,
        phone: str,
        document_type: str,
        record_id: str,
        extracted_data: Any,
        structured_data: Optional[Dict[str, Any]] = None,
    ) -> CallStart:
        """
        Configure the agent and place the verification call.

        Args:
            patient_name:    Patient the agent will address.
            phone:           Destination number; '+' is prefixed when missing.
            document_type:   Document type for the script and call metadata.
            record_id:       Record id, attached to the call metadata.
            extracted_data:  Source for the script's document summary.
            structured_data: Preferred source for the summary when present.

        Returns:
            CallStart: call_id, status (platform value, default "registered"),
                start_time (ISO) and the raw platform response.

        Raises:
            InvalidInputError:  if phone is empty.
            UpstreamFatalError: if any configuration write or the create call
                                fails, or the platform returns no call id.
        """
        if not phone or not phone.strip():
            raise InvalidInputError("Patient phone number is required for verification call.")
        if not self.config.api_key or not self.config.agent_id:
            raise UpstreamFatalError("Call platform is not configured (RETELL_API_KEY / RETELL_AGENT_ID).")

        logger.info(
            "Initiating verification call for record %s to %s.", record_id, mask_phone(phone)
        )
        script = build_verification_script(
            patient_name,
            document_type,
            extracted_data,
            structured_data,
            agent_name=self.config.agent_name,
            organization=self.config.organization,
            max_minutes=max(1, self.config.max_call_duration_seconds // 60),
        )

        try:
            await self._request(
                "PATCH", f"/update-agent/{self.config.agent_id}",
                json={"voice_id": self.config.voice_id},
            )
            await self._request(
                "PATCH", f"/update-retell-llm/{self.config.llm_id}",
                json={"general_prompt": script},
            )
            await self._request(
                "PATCH", f"/update-agent/{self.config.agent_id}",
                json={"max_call_duration_ms": self.config.max_call_duration_ms},
            )
        except CallPlatformError as exc:
            logger.error("Verification agent configuration failed: %s", exc)
            raise UpstreamFatalError(f"Agent configuration failed: {exc}") from exc

        payload = {
            "from_number": self.config.from_number,
            "to_number": normalize_phone(phone),
            "agent_id": self.config.agent_id,
            "metadata": {
                "patientName": patient_name,
                "patientPhone": phone,
                "documentType": document_type,
                "documentId": record_id or "",
                "verificationType": "medical_document",
                "callPurpose": "verification",
                "maxDuration": f"{max(1, self.config.max_call_duration_seconds // 60)} minutes",
            },
        }
        try:
            body = await self._request("POST", "/v2/create-phone-call", json=payload)
        except CallPlatformError as exc:
            logger.error("Verification call creation failed: %s", exc)
            raise UpstreamFatalError(f"Call creation failed: {exc}") from exc

        call_id = body.get("call_id")
        if not call_id:
            raise UpstreamFatalError("Call platform response did not include a call_id.")

        status = body.get("call_status")
        if status not in _KNOWN_STATUSES:
            status = CallStatus.REGISTERED.value

        logger.info("Verification call initiated with call_id: %s", call_id)
        return CallStart(
            call_id=call_id,
            status=status,
            start_time=_ms_to_iso(body.get("start_timestamp")) or utc_now_iso(),
            raw=body,
        )

    async def get_status(self, call_id: str) -> CallStatusSnapshot:
        """
        Fetch the current status of a call.

        Args:
            call_id: Platform call id.

        Returns:
            CallStatusSnapshot: transcript, transcript_object and recording
                fields are populated only for ended/error calls.

        Raises:
            InvalidInputError: if call_id is empty.
            CallPlatformError: on any platform or transport error.
        """
        if not call_id:
            raise InvalidInputError("Call ID is required.")

        body = await self._request("GET", f"/v2/get-call/{call_id}")
        status = normalize_call_status(body.get("call_status"))
        duration_ms = body.get("call_duration_ms")

        try:
            snapshot = CallStatusSnapshot(
                call_id=body.get("call_id") or call_id,
                status=status,
                start_time=_ms_to_iso(body.get("start_timestamp")),
                end_time=_ms_to_iso(body.get("end_timestamp")),
                duration_seconds=(duration_ms / 1000.0) if isinstance(duration_ms, (int, float)) else None,
                call_analysis=body.get("call_analysis") or None,
                metadata=body.get("metadata") or {},
            )
        except ValidationError as exc:
            logger.error("Malformed status response for call %s: %s", call_id, exc)
            raise CallPlatformError(f"Call platform returned a malformed call: {exc}") from exc

        if status in _TRANSCRIPT_STATUSES:
            transcript_object = body.get("transcript_object")
            if isinstance(transcript_object, list) and transcript_object:
                snapshot.transcript_object = transcript_object
            if isinstance(body.get("transcript"), str) and body["transcript"]:
                snapshot.transcript = body["transcript"]
            snapshot.recording_url = body.get("recording_url") or None
            if not snapshot.has_transcript:
                logger.info("No transcript available for call %s despite %s status.", call_id, status)
        else:
            logger.debug("Call %s still in progress (%s).", call_id, status)

        return snapshot
