"""
intake.py
---------
RecordVerify - Patient-Verified Health Records - Upload intake validation
--------------------------------------------------------------------------
Fail-fast checks on a received upload, run before any external service is
touched. A rejected upload has its local file removed and raises
InvalidInputError; an accepted one becomes an UploadIntake.

Project: RecordVerify - Patient-Verified Health Records
"""

import logging
import os
from typing import Any, Optional

from pydantic import ValidationError

from config import ALLOWED_MIME_TYPES, DEFAULT_MAX_UPLOAD_BYTES
from errors import InvalidInputError
from schemas import UploadIntake

logger = logging.getLogger(__name__)


def remove_local_file(path: Optional[str]) -> None:
    """Best-effort delete of a local upload. Never raises."""
    if not path:
        return
    try:
        os.remove(path)
        logger.debug("Removed local upload '%s'.", path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove local upload '%s': %s", path, exc)


def validate_upload(
    local_file_path: Optional[str],
    original_file_name: str,
    mime_type: str,
    user_id: str,
    title: Any = None,
    description: Any = None,
    document_type: Any = None,
    patient_name: Any = None,
    patient_phone: Any = None,
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES,
) -> UploadIntake:
    """
    Validate a received upload.

    Args:
        local_file_path:    Where the transport stored the bytes.
        original_file_name: Client-supplied name.
        mime_type:          Client-declared content type.
        user_id:            Requesting user.
        title, description, document_type, patient_name, patient_phone:
                            Optional form fields; blanks take their defaults.
        max_upload_bytes:   Size ceiling.

    Returns:
        UploadIntake: Validated intake.

    Raises:
        InvalidInputError: missing file, unsupported type, oversize file or an
            unknown document type. The local file is removed first.
    """
    def _reject(message: str) -> InvalidInputError:
        logger.warning("Upload rejected (%s): %s", original_file_name or "<unnamed>", message)
        remove_local_file(local_file_path)
        return InvalidInputError(message)

    if not local_file_path or not os.path.isfile(local_file_path):
        raise _reject("No file uploaded.")

    mime = (mime_type or "").lower()
    if mime not in ALLOWED_MIME_TYPES:
        raise _reject("Invalid file type. Only PDF, JPEG, JPG, and PNG files are allowed.")

    size = os.path.getsize(local_file_path)
    if size > max_upload_bytes:
        raise _reject(f"File too large. Maximum size is {max_upload_bytes // (1024 * 1024)} MB.")

    try:
        return UploadIntake(
            local_file_path=local_file_path,
            original_file_name=original_file_name or os.path.basename(local_file_path),
            mime_type=mime,
            size_bytes=size,
            title=title,
            description=description,
            document_type=document_type,
            patient_name=patient_name,
            patient_phone=patient_phone,
            user_id=user_id,
        )
    except ValidationError as exc:
        raise _reject(f"Invalid upload fields: {exc.errors()[0].get('msg', str(exc))}")
