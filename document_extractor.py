"""
document_extractor.py
---------------------
RecordVerify - Patient-Verified Health Records - Document Text Extraction
--------------------------------------------------------------------------
Extracts full text plus per-page text from an uploaded PDF or photographed /
scanned image using the unstructured.io partition API.

Design decisions:
  1. hi_res strategy first so handwritten and image-only documents are OCR'd;
     a rejected hi_res request is retried once with auto.
  2. Every element is kept, including Table elements whose plain text is
     empty (their metadata.text_as_html is flattened instead).
  3. Elements are grouped by metadata.page_number into ordered pages; an
     element without a page number belongs to page 1.
  4. The extractor never raises. Any failure (no API key, missing file, SDK
     or network error, empty result) returns canned fallback content for the
     media kind, tagged source="mock" in the StageResult.

Key objects:
    DocumentExtractor.extract: Entry point, returns StageResult[ExtractedData].
    DocumentExtractor._call_unstructured_api: SDK call, isolated for mocking.
    build_extracted_data: Converts raw API elements to ExtractedData.
    fallback_extracted_data: Canned PDF / image content.

Project: RecordVerify - Patient-Verified Health Records
"""

import logging
import os
import re
from typing import Any, Dict, List

from config import ExtractionConfig
from errors import UpstreamDegradedError
from schemas import ExtractedData, PageText, StageResult

logger = logging.getLogger(__name__)

_TABLE_TYPES = {"Table", "FigureCaption"}
_IMAGE_MIME_TYPES = {"image/jpeg", "image/jpg", "image/png"}
_IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png"}


# ── Fallback content ──────────────────────────────────────────────────────────

_FALLBACK_PDF = {
    "text": (
        "This is mock parsed PDF content. In a real implementation, this would "
        "be the extracted text from the document."
    ),
    "pages": [
        {
            "page_number": 1,
            "text": (
                "Patient Name: John Doe\nDOB: 01/15/1980\nMedical Record #: MRN12345\n"
                "Doctor: Dr. Jane Smith\nDiagnosis: Hypertension\n"
                "Medications: Lisinopril 10mg daily"
            ),
        }
    ],
}

_FALLBACK_IMAGE = {
    "text": (
        "This is mock parsed handwritten content. In a real implementation, this "
        "would be the extracted text from the document."
    ),
    "pages": [
        {
            "page_number": 1,
            "text": (
                "Patient: Sarah Johnson\nDate: 03/10/2023\nChief Complaint: Headache\n"
                "Vital Signs: BP 120/80, HR 72\nAssessment: Migraine\n"
                "Plan: Sumatriptan 50mg as needed"
            ),
        }
    ],
}


def is_image_document(source_file: str, mime_type: str = "") -> bool:
    """Return True for JPEG/PNG uploads (by mime type, else by extension)."""
    if mime_type:
        return mime_type.lower() in _IMAGE_MIME_TYPES
    return os.path.splitext(source_file or "")[1].lower() in _IMAGE_EXTENSIONS


def fallback_extracted_data(is_image: bool) -> ExtractedData:
    """Deterministic substitute used whenever extraction fails."""
    return ExtractedData.model_validate(_FALLBACK_IMAGE if is_image else _FALLBACK_PDF)


# ── Element attribute helpers (dict and object style) ─────────────────────────

def _attr(obj: Any, name: str, default: Any = None) -> Any:
    if isinstance(obj, dict):
        return obj.get(name, default)
    return getattr(obj, name, default)


def _get_element_type(el: Any) -> str:
    return _attr(el, "type", "") or _attr(el, "category", "") or ""


def _get_table_text(el: Any) -> str:
    """Flatten metadata.text_as_html of a Table element into readable rows."""
    meta = _attr(el, "metadata", None) or {}
    html = _attr(meta, "text_as_html", "") or ""
    if not html.strip():
        return ""
    text = re.sub(r"<tr[^>]*>", "\n", html, flags=re.IGNORECASE)
    text = re.sub(r"<td[^>]*>|<th[^>]*>", " | ", text, flags=re.IGNORECASE)
    text = re.sub(r"<[^>]+>", "", text)
    text = re.sub(r"[ \t]+", " ", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _get_element_text(el: Any) -> str:
    text = _attr(el, "text", "") or ""
    if not text.strip() and _get_element_type(el) in _TABLE_TYPES:
        text = _get_table_text(el)
    return text.strip()


def _get_page_number(el: Any) -> int:
    meta = _attr(el, "metadata", None)
    if meta is None:
        return 1
    try:
        page = int(_attr(meta, "page_number", 1) or 1)
    except (TypeError, ValueError):
        return 1
    return page if page >= 1 else 1


def build_extracted_data(raw_elements: List[Any]) -> ExtractedData:
    """
    Convert raw unstructured elements into ExtractedData.

    Args:
        raw_elements: Elements returned by the partition API (dicts or objects).

    Returns:
        ExtractedData: text is every non-empty element joined by blank lines in
            API order; pages are ordered by page number.
    """
    texts: List[str] = []
    by_page: Dict[int, List[str]] = {}

    for el in raw_elements:
        try:
            text = _get_element_text(el)
        except Exception as exc:
            logger.warning("Skipping malformed element during extraction: %s", exc)
            continue
        if not text:
            continue
        texts.append(text)
        by_page.setdefault(_get_page_number(el), []).append(text)

    pages = [
        PageText(page_number=page, text="\n".join(parts))
        for page, parts in sorted(by_page.items())
    ]
    return ExtractedData(text="\n\n".join(texts), pages=pages)


class DocumentExtractor:
    """
    Text extraction service handle.

    Args:
        config: ExtractionConfig with the unstructured.io key and server URL.
    """

    def __init__(self, config: ExtractionConfig) -> None:
        self.config = config

    def _call_unstructured_api(
        self,
        source_file: str,
        strategy: str = "hi_res",
    ) -> List[Any]:
        """
        Partition a document with the unstructured.io API.

        Raises:
            FileNotFoundError: If source_file does not exist.
            Exception: Any SDK or network error, for extract() to handle.
        """
        from unstructured_client import UnstructuredClient
        from unstructured_client.models import operations, shared

        client = UnstructuredClient(
            api_key_auth=self.config.api_key,
            server_url=self.config.server_url,
        )

        with open(source_file, "rb") as f:
            file_content = f.read()

        strategy_enum = shared.Strategy.HI_RES if strategy == "hi_res" else shared.Strategy.AUTO
        req = operations.PartitionRequest(
            partition_parameters=shared.PartitionParameters(
                files=shared.Files(
                    content=file_content,
                    file_name=os.path.basename(source_file),
                ),
                strategy=strategy_enum,
            ),
        )
        res = client.general.partition(request=req)
        return res.elements or []

    def extract(self, source_file: str, mime_type: str = "") -> StageResult:
        """
        Extract text from a PDF or image document.

        Args:
            source_file: Path of the locally received upload.
            mime_type:   Upload mime type; selects the fallback content kind.

        Returns:
            StageResult: value is ExtractedData. source="mock" with an error
                message when fallback content was substituted.

        Raises:
            Never.
        """
        image = is_image_document(source_file, mime_type)

        def _degrade(reason: str) -> StageResult:
            logger.warning(
                "Extraction degraded for '%s' (%s); using fallback %s content.",
                os.path.basename(source_file or ""), reason, "image" if image else "PDF",
            )
            return StageResult.degraded(fallback_extracted_data(image), reason)

        if not source_file or not os.path.isfile(source_file):
            return _degrade(f"File not found: '{source_file}'")
        if not self.config.enabled:
            return _degrade("UNSTRUCTURED_API_KEY is not set")

        try:
            try:
                logger.info("Extraction starting with hi_res strategy: '%s'", source_file)
                raw_elements = self._call_unstructured_api(source_file, strategy="hi_res")
            except Exception as hi_res_exc:
                logger.warning(
                    "hi_res strategy failed for '%s' (%s); retrying with auto strategy.",
                    source_file, hi_res_exc,
                )
                raw_elements = self._call_unstructured_api(source_file, strategy="auto")

            extracted = build_extracted_data(raw_elements)
            if not extracted.text.strip():
                raise UpstreamDegradedError("Extraction returned no text")
        except UpstreamDegradedError as exc:
            return _degrade(str(exc))
        except Exception as exc:
            logger.exception("Extraction failed for '%s': %s", source_file, exc)
            return _degrade(f"Extraction failed: {exc}")

        logger.info(
            "Extraction complete: %d chars, %d page(s) from '%s' (%d raw elements).",
            len(extracted.text), extracted.page_count,
            os.path.basename(source_file), len(raw_elements),
        )
        return StageResult.ok(extracted)
