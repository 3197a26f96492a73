"""
config.py
---------
RecordVerify - Patient-Verified Health Records - Configuration
---------------------------------------------------------------
Explicit configuration structs for every external collaborator. Values are
read from the environment (after loading .env) once, in load_config(), and
handed to each service at construction time so tests can build their own
configs without touching os.environ.

The call duration cap sent to the call platform and the poll ceiling used by
the pipeline both read CallConfig.max_call_duration_seconds. They must never
be configured separately.

Key objects:
    ExtractionConfig   - unstructured.io partition API.
    StructuringConfig  - Anthropic model used for structuring and transcript analysis.
    CallConfig         - Retell voice agent and polling cadence.
    StorageConfig      - S3 archival bucket.
    AppConfig          - Aggregate plus upload/storage paths and limits.
    load_config()      - Build an AppConfig from the environment.

Project: RecordVerify - Patient-Verified Health Records
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).parent

# Upload intake limits
ALLOWED_MIME_TYPES = {
    "application/pdf": ".pdf",
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
}
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024


def _get_int(key: str, default: int) -> int:
    """Read an integer env var, falling back to *default* on absence or garbage."""
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(key: str, default: float) -> float:
    """Read a float env var, falling back to *default* on absence or garbage."""
    value = os.getenv(key)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_str(key: str, default: str = "") -> str:
    return (os.getenv(key) or default).strip()


@dataclass(frozen=True)
class ExtractionConfig:
    api_key: str = ""
    server_url: str = "https://api.unstructuredapp.io"

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class StructuringConfig:
    api_key: str = ""
    structuring_model: str = "claude-sonnet-4-5"
    transcript_model: str = "claude-sonnet-4-5"
    temperature: float = 0.2
    max_tokens: int = 2048

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)


@dataclass(frozen=True)
class CallConfig:
    """
    Retell voice agent settings.

    max_call_duration_seconds is both the forced-hangup cap written to the
    agent and the ceiling of the pipeline's status poll.
    """
    api_key: str = ""
    agent_id: str = ""
    llm_id: str = ""
    voice_id: str = ""
    from_number: str = ""
    base_url: str = "https://api.retellai.com"
    agent_name: str = "Luna"
    organization: str = "Digital Health Records"
    max_call_duration_seconds: int = 180
    poll_interval_seconds: float = 5.0
    request_timeout: float = 30.0

    @property
    def max_call_duration_ms(self) -> int:
        return self.max_call_duration_seconds * 1000


@dataclass(frozen=True)
class StorageConfig:
    bucket_name: str = ""
    region: str = "us-east-1"
    # Optional CDN / custom domain in front of the bucket.
    public_base_url: str = ""

    @property
    def enabled(self) -> bool:
        return bool(self.bucket_name)


@dataclass(frozen=True)
class AppConfig:
    extraction: ExtractionConfig = field(default_factory=ExtractionConfig)
    structuring: StructuringConfig = field(default_factory=StructuringConfig)
    call: CallConfig = field(default_factory=CallConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    db_path: Path = BASE_DIR / "health_records.sqlite"
    uploads_dir: Path = BASE_DIR / "uploads"
    max_upload_bytes: int = DEFAULT_MAX_UPLOAD_BYTES
    preview_chars: int = 300


def load_config() -> AppConfig:
    """
    Build an AppConfig from environment variables (.env is loaded first).

    Returns:
        AppConfig: Fully populated configuration. Missing credentials leave the
            corresponding service disabled, which the service treats as a
            degraded stage rather than a startup failure.
    """
    load_dotenv()
    return AppConfig(
        extraction=ExtractionConfig(
            api_key=_get_str("UNSTRUCTURED_API_KEY"),
            server_url=_get_str("UNSTRUCTURED_SERVER_URL", ExtractionConfig.server_url),
        ),
        structuring=StructuringConfig(
            api_key=_get_str("ANTHROPIC_API_KEY"),
            structuring_model=_get_str("STRUCTURING_MODEL", StructuringConfig.structuring_model),
            transcript_model=_get_str("TRANSCRIPT_MODEL", StructuringConfig.transcript_model),
            temperature=_get_float("STRUCTURING_TEMPERATURE", StructuringConfig.temperature),
            max_tokens=_get_int("STRUCTURING_MAX_TOKENS", StructuringConfig.max_tokens),
        ),
        call=CallConfig(
            api_key=_get_str("RETELL_API_KEY"),
            agent_id=_get_str("RETELL_AGENT_ID"),
            llm_id=_get_str("RETELL_LLM_ID"),
            voice_id=_get_str("RETELL_VOICE_ID"),
            from_number=_get_str("RETELL_FROM_NUMBER"),
            base_url=_get_str("RETELL_BASE_URL", CallConfig.base_url).rstrip("/"),
            agent_name=_get_str("VERIFICATION_AGENT_NAME", CallConfig.agent_name),
            organization=_get_str("VERIFICATION_ORGANIZATION", CallConfig.organization),
            max_call_duration_seconds=_get_int(
                "MAX_CALL_DURATION_SECONDS", CallConfig.max_call_duration_seconds
            ),
            poll_interval_seconds=_get_float(
                "CALL_POLL_INTERVAL_SECONDS", CallConfig.poll_interval_seconds
            ),
            request_timeout=_get_float("RETELL_TIMEOUT_SECONDS", CallConfig.request_timeout),
        ),
        storage=StorageConfig(
            bucket_name=_get_str("AWS_BUCKET_NAME"),
            region=_get_str("AWS_REGION", StorageConfig.region),
            public_base_url=_get_str("ARCHIVE_PUBLIC_BASE_URL").rstrip("/"),
        ),
        db_path=Path(_get_str("RECORDS_DB_PATH", str(BASE_DIR / "health_records.sqlite"))),
        uploads_dir=Path(_get_str("UPLOADS_DIR", str(BASE_DIR / "uploads"))),
        max_upload_bytes=_get_int("MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES),
        preview_chars=_get_int("PREVIEW_CHARS", 300),
    )
