"""
record_structurer.py
--------------------
RecordVerify - Patient-Verified Health Records - Clinical record structuring
-----------------------------------------------------------------------------
Turns extracted document text plus the uploader's context into a structured
clinical record (patient, provider, diagnosis, medications, treatment plan,
lab results, vital signs, allergies, medical history) using Claude via
langchain_anthropic.

The model is asked for JSON only. Its response goes through
json_payload.extract_json_object so fenced or prose-wrapped answers still
parse. Missing API key, model/transport error or an unparsable response all
produce a context-derived skeleton carrying an ``error`` marker instead of
raising, so the pipeline always has non-null structured data.

Key functions:
    RecordStructurer.structure: async, returns StageResult[dict].
    build_structuring_prompt:   Prompt text for a document + context.
    fallback_structured_data:   Skeleton used on any failure.

Project: RecordVerify - Patient-Verified Health Records
"""

import logging
from typing import Any, Dict, Optional

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langsmith import traceable

from config import StructuringConfig
from errors import PayloadParseError
from json_payload import extract_json_object
from schemas import StageResult

logger = logging.getLogger(__name__)

# Caps the document text sent to the model.
_MAX_DOCUMENT_CHARS = 20000

STRUCTURING_SYSTEM = (
    "You are a medical data extraction expert that outputs only valid JSON. "
    "Never add explanations or markdown around the JSON object."
)

_STRUCTURING_TEMPLATE = """I have a health record document that has been parsed into text.

Additional context:
- Patient Name: {patient_name}
- Patient Phone: {patient_phone}
- Document Type: {document_type}
- Description: {description}

Extract the following information into one JSON object:
- "patient": name, dateOfBirth, medicalRecordNumber, phone
- "provider": name, specialty, clinic
- "diagnosis": primary and secondary
- "medications": list of {{name, dosage, frequency}}
- "treatmentPlan"
- "labResults": list of {{test, value, normalRange, date}}
- "vitalSigns": bloodPressure, heartRate, temperature, etc.
- "allergies": list
- "medicalHistory"

If a field is not present in the document, use the context above or null /
an empty list as appropriate.

Document text:
{document_text}
"""


def build_structuring_prompt(document_text: str, context: Dict[str, Any]) -> str:
    """
    Build the human message for a structuring request.

    Args:
        document_text: Extracted document text (truncated to a safe length).
        context:       patient_name, patient_phone, document_type, description.

    Returns:
        str: Prompt text.
    """
    text = document_text or ""
    if len(text) > _MAX_DOCUMENT_CHARS:
        text = text[:_MAX_DOCUMENT_CHARS] + "\n[... truncated ...]"
    return _STRUCTURING_TEMPLATE.format(
        patient_name=context.get("patient_name") or "Unknown",
        patient_phone=context.get("patient_phone") or "Unknown",
        document_type=context.get("document_type") or "Medical Report",
        description=context.get("description") or "No description provided",
        document_text=text,
    )


def fallback_structured_data(
    document_text: str,
    context: Dict[str, Any],
    error: str,
) -> Dict[str, Any]:
    """
    Skeleton record used whenever structuring fails.

    Returns:
        dict: {patient{name, phone}, documentType, description, extractedText, error}.
    """
    return {
        "patient": {
            "name": context.get("patient_name") or "",
            "phone": context.get("patient_phone") or "",
        },
        "documentType": context.get("document_type") or "Medical Report",
        "description": context.get("description") or "",
        "extractedText": document_text or "",
        "error": error,
    }


class RecordStructurer:
    """
    Structuring service handle.

    Args:
        config: StructuringConfig (API key, model, temperature, max tokens).
        llm:    Optional pre-built chat model; built from config when None.
    """

    def __init__(self, config: StructuringConfig, llm: Optional[Any] = None) -> None:
        self.config = config
        self._llm = llm

    def _get_llm(self) -> Any:
        if self._llm is None:
            self._llm = ChatAnthropic(
                model=self.config.structuring_model,
                anthropic_api_key=self.config.api_key,
                temperature=self.config.temperature,
                max_tokens=self.config.max_tokens,
            )
        return self._llm

    @traceable(name="structure_health_record")
    async def structure(self, document_text: str, context: Dict[str, Any]) -> StageResult:
        """
        Structure extracted text into a clinical record.

        Args:
            document_text: Full extracted text.
            context:       patient_name, patient_phone, document_type, description.

        Returns:
            StageResult: value is a dict. source="mock" and value is the
                fallback skeleton when the model was unavailable or its output
                could not be parsed.

        Raises:
            Never.
        """
        def _degrade(reason: str) -> StageResult:
            logger.warning("Structuring degraded (%s); using skeleton record.", reason)
            return StageResult.degraded(
                fallback_structured_data(document_text, context, reason), reason
            )

        if not self.config.enabled and self._llm is None:
            return _degrade("ANTHROPIC_API_KEY is not set")

        try:
            response = await self._get_llm().ainvoke([
                SystemMessage(content=STRUCTURING_SYSTEM),
                HumanMessage(content=build_structuring_prompt(document_text, context)),
            ])
            content = response.content if hasattr(response, "content") else str(response)
            if isinstance(content, list):
                content = "".join(
                    part.get("text", "") if isinstance(part, dict) else str(part)
                    for part in content
                )
            structured = extract_json_object(content)
        except PayloadParseError as e:
            return _degrade(f"Failed to parse AI response into structured data: {e}")
        except Exception as e:
            logger.exception("Structuring model call failed: %s", e)
            return _degrade(f"Structuring failed: {e}")

        logger.info("Structuring complete: %d top-level field(s).", len(structured))
        return StageResult.ok(structured)
