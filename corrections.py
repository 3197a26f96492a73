"""
corrections.py
--------------
RecordVerify - Patient-Verified Health Records - Patient correction merge
--------------------------------------------------------------------------
Applies the corrections a patient gave during the verification call.

Only the patient's name and phone are writable through a correction. Each
accepts the camelCase or snake_case spelling from the transcript model:

    patientName  | patient_name   -> patient_name
    patientPhone | patient_phone  -> patient_phone

A bare "name" or "phone" is not applied; it may refer to a provider or a
medication.

An allow-listed correction updates the top-level record field and, when the
structured record has a ``patient`` object, the matching
``structured_data.patient.name`` / ``.phone``. Every other correction (for
example a diagnosis) is stored on the verification call verbatim and changes
nothing else.

Project: RecordVerify - Patient-Verified Health Records
"""

import copy
import logging
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# correction field spelling -> (record attribute, structured_data.patient key)
CORRECTABLE_FIELDS: Dict[str, Tuple[str, str]] = {
    "patientname": ("patient_name", "name"),
    "patient_name": ("patient_name", "name"),
    "patientphone": ("patient_phone", "phone"),
    "patient_phone": ("patient_phone", "phone"),
}


def _as_dict(correction: Any) -> Dict[str, Any]:
    if isinstance(correction, dict):
        return correction
    if hasattr(correction, "model_dump"):
        return correction.model_dump()
    return {}


def resolve_field(field: Optional[str]) -> Optional[Tuple[str, str]]:
    """Return (record attribute, patient key) for an allow-listed field, else None."""
    if not field:
        return None
    return CORRECTABLE_FIELDS.get(str(field).strip().lower())


def apply_corrections(
    structured_data: Optional[Dict[str, Any]],
    corrections: Iterable[Any],
) -> Tuple[Dict[str, Any], Optional[Dict[str, Any]]]:
    """
    Compute the record updates implied by a list of corrections.

    Args:
        structured_data: Current structured record (not mutated).
        corrections:     Correction models or dicts with field/incorrect/correct.

    Returns:
        Tuple of:
            - top-level updates, e.g. {"patient_name": "Robert"};
            - the updated structured data (a copy), or the input unchanged
              when no allow-listed correction applied to it.
    """
    updates: Dict[str, Any] = {}
    updated_structured = structured_data
    copied = False

    for raw in corrections:
        entry = _as_dict(raw)
        target = resolve_field(entry.get("field"))
        correct = entry.get("correct")
        if target is None:
            logger.debug("Correction for '%s' stored only.", entry.get("field"))
            continue
        if correct is None or not str(correct).strip():
            logger.warning("Ignoring correction for '%s' with empty value.", entry.get("field"))
            continue

        attr, patient_key = target
        value = str(correct).strip()
        updates[attr] = value

        patient = (updated_structured or {}).get("patient")
        if isinstance(patient, dict):
            if not copied:
                updated_structured = copy.deepcopy(updated_structured)
                copied = True
            updated_structured["patient"][patient_key] = value

    if updates:
        logger.info("Applying patient corrections to: %s", ", ".join(sorted(updates)))
    return updates, updated_structured


def corrections_as_dicts(corrections: Iterable[Any]) -> List[Dict[str, Any]]:
    """Serialise corrections verbatim for storage on the verification call."""
    return [
        {"field": d.get("field"), "incorrect": d.get("incorrect"), "correct": d.get("correct")}
        for d in (_as_dict(c) for c in corrections)
    ]


def merge_additional_info(description: str, additional_info: str) -> str:
    """Append patient-provided additional information to a record description."""
    info = (additional_info or "").strip()
    if not info:
        return description or ""
    suffix = f"Additional info from verification: {info}"
    if description and description.strip():
        return f"{description}\n\n{suffix}"
    return suffix
