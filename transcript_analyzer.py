"""
transcript_analyzer.py
----------------------
RecordVerify - Patient-Verified Health Records - Call transcript analysis
--------------------------------------------------------------------------
Reads the verification call transcript with Claude and extracts the
patient's corrections, any additional information they volunteered, a short
summary and whether the verification completed.

Input is either the platform's plain transcript string or its turn list
(``[{role, content|text}]``). Turns are rendered "<Agent>: ..." for role
"agent" and "Patient: ..." for anything else, joined by blank lines.

analyze() never raises. No usable transcript, a model failure or an
unparsable response all produce a not-verified TranscriptAnalysis with
source="mock".

Key functions:
    TranscriptAnalyzer.analyze: async, returns StageResult[TranscriptAnalysis].
    format_transcript:          Turn list / string -> prompt text.
    parse_analysis:             Model payload dict -> TranscriptAnalysis.

Project: RecordVerify - Patient-Verified Health Records
"""

import logging
from typing import Any, Dict, List, Optional, Union

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from langsmith import traceable
from pydantic import ValidationError

from config import StructuringConfig
from errors import PayloadParseError
from json_payload import extract_json_object
from schemas import Correction, StageResult, TranscriptAnalysis

logger = logging.getLogger(__name__)

ANALYSIS_FAILED_SUMMARY = "Verification analysis failed"

ANALYSIS_SYSTEM = "You are a medical data verification assistant that outputs only valid JSON."

_ANALYSIS_TEMPLATE = """Carefully analyze a transcript from a verification call between an AI assistant named {agent_name} and a patient.

The call was made to verify information in a digitized medical document. Extract:
1. Any corrections the patient mentioned (what was incorrect and what is the correct information)
2. Any additional information the patient provided
3. A summary of the verification results

Use "patientName" as the field name for a corrected patient name and "patientPhone" for a corrected phone number.

Transcript:
{transcript}

Respond with a JSON object with this structure:
{{
  "corrections": [
    {{"field": "field_name", "incorrect": "incorrect_value", "correct": "correct_value"}}
  ],
  "additionalInfo": "any additional information provided by the patient",
  "summary": "brief summary of the verification results",
  "verificationComplete": true
}}
"""

TranscriptInput = Union[str, List[Dict[str, Any]], None]


def format_transcript(transcript: TranscriptInput, agent_name: str = "Luna") -> str:
    """
    Render a transcript for the model.

    Args:
        transcript: Plain string, or a list of {role, content|text} turns.
        agent_name: Speaker label for role "agent".

    Returns:
        str: Rendered transcript; "" when nothing usable is present.
    """
    if not transcript:
        return ""
    if isinstance(transcript, str):
        return transcript.strip()

    lines = []
    for turn in transcript:
        if not isinstance(turn, dict):
            continue
        text = turn.get("content") or turn.get("text") or ""
        if not str(text).strip():
            continue
        speaker = agent_name if turn.get("role") == "agent" else "Patient"
        lines.append(f"{speaker}: {str(text).strip()}")
    return "\n\n".join(lines)


def parse_analysis(payload: Dict[str, Any]) -> TranscriptAnalysis:
    """
    Convert the model's JSON payload into a TranscriptAnalysis.

    Corrections without a field name are dropped; the rest are kept verbatim.
    """
    corrections: List[Correction] = []
    raw_corrections = payload.get("corrections") or []
    if not isinstance(raw_corrections, list):
        raw_corrections = []
    for entry in raw_corrections:
        if not isinstance(entry, dict):
            continue
        try:
            corrections.append(Correction.model_validate(entry))
        except ValidationError:
            logger.warning("Dropping correction without a field name: %s", entry)

    additional = payload.get("additionalInfo", payload.get("additional_info")) or ""
    complete = payload.get("verificationComplete", payload.get("verification_complete"))
    return TranscriptAnalysis(
        corrections=corrections,
        additional_info=str(additional),
        summary=str(payload.get("summary") or ""),
        verification_complete=complete is True,
    )


def _failed_analysis(additional_info: str = "") -> TranscriptAnalysis:
    return TranscriptAnalysis(
        corrections=[],
        additional_info=additional_info,
        summary=ANALYSIS_FAILED_SUMMARY,
        verification_complete=False,
    )


class TranscriptAnalyzer:
    """
    Transcript analysis service handle.

    Args:
        config:     StructuringConfig; transcript_model selects the model.
        agent_name: Speaker label used when rendering turns.
        llm:        Optional pre-built chat model; built from config when None.
    """

    def __init__(
        self,
        config: StructuringConfig,
        agent_name: str = "Luna",
        llm: Optional[Any] = None,
    ) -> None:
        self.config = config
        self.agent_name = agent_name
        self._llm = llm

    def _get_llm(self) -> Any:
        if self._llm is None:
            self._llm = ChatAnthropic(
                model=self.config.transcript_model,
                anthropic_api_key=self.config.api_key,
                temperature=0.3,
                max_tokens=self.config.max_tokens,
            )
        return self._llm

    @traceable(name="analyze_verification_transcript")
    async def analyze(
        self,
        transcript: TranscriptInput,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StageResult:
        """
        Analyse a verification call transcript.

        Args:
            transcript: Plain transcript string or turn list.
            metadata:   Call metadata; a ``call_analysis.call_successful`` of
                        True upgrades verification_complete.

        Returns:
            StageResult: value is a TranscriptAnalysis. source="mock" when the
                transcript was unusable, the model failed or its output could
                not be parsed.

        Raises:
            Never.
        """
        metadata = metadata or {}
        rendered = format_transcript(transcript, self.agent_name)
        if not rendered:
            logger.info("No usable transcript; skipping analysis.")
            return StageResult.degraded(
                TranscriptAnalysis(summary="No transcript available"), "No transcript available"
            )
        if not self.config.enabled and self._llm is None:
            logger.warning("Transcript analysis degraded: ANTHROPIC_API_KEY is not set.")
            return StageResult.degraded(_failed_analysis(), "ANTHROPIC_API_KEY is not set")

        try:
            response = await self._get_llm().ainvoke([
                SystemMessage(content=ANALYSIS_SYSTEM),
                HumanMessage(content=_ANALYSIS_TEMPLATE.format(
                    agent_name=self.agent_name, transcript=rendered,
                )),
            ])
            content = response.content if hasattr(response, "content") else str(response)
            if isinstance(content, list):
                content = "".join(
                    part.get("text", "") if isinstance(part, dict) else str(part)
                    for part in content
                )
            analysis = parse_analysis(extract_json_object(content))
        except PayloadParseError as e:
            logger.warning("Transcript analysis response was not valid JSON: %s", e)
            return StageResult.degraded(
                _failed_analysis("Error: Could not parse transcript analysis"), str(e)
            )
        except Exception as e:
            logger.exception("Transcript analysis model call failed: %s", e)
            return StageResult.degraded(_failed_analysis(), f"Transcript analysis failed: {e}")

        call_analysis = metadata.get("call_analysis") or {}
        if not analysis.verification_complete and call_analysis.get("call_successful") is True:
            analysis.verification_complete = True

        logger.info(
            "Transcript analysed: %d correction(s), verification_complete=%s.",
            len(analysis.corrections), analysis.verification_complete,
        )
        return StageResult.ok(analysis)
