# -*- coding: utf-8 -*-
"""
Configuration module for Sora Studio
Centralizes all settings with validation and defaults
"""

import os
import logging
from pathlib import Path
from typing import List, Optional, Dict, Tuple
from dataclasses import dataclass, field
from enum import Enum
from dotenv import load_dotenv

# Load .env file
load_dotenv()

logger = logging.getLogger(__name__)


def _get_numbered_env_values(prefixes: Tuple[str, ...], placeholder: str = "your-") -> List[str]:
    """Collect values of every env var starting with one of the prefixes, sorted by name"""
    values = []
    for var_name in sorted(os.environ):
        if not var_name.startswith(prefixes):
            continue
        value = os.environ[var_name].strip()
        if value and not value.startswith(placeholder) and value not in values:
            values.append(value)
    return values


def get_sora_curls_from_env() -> List[str]:
    """Load Sora cURL credentials (SORA_CURL, SORA_CURL_2, ...) from environment"""
    curls = _get_numbered_env_values(("SORA_CURL",))
    logger.info(f"[Config] Loaded {len(curls)} Sora credentials from environment")
    return curls


def get_youtube_tokens_from_env() -> List[str]:
    """Load YouTube OAuth access tokens (YOUTUBE_TOKEN, YOUTUBE_TOKEN_2, ...) from environment"""
    tokens = _get_numbered_env_values(("YOUTUBE_TOKEN", "YOUTUBE_ACCESS_TOKEN"))
    logger.info(f"[Config] Loaded {len(tokens)} YouTube tokens from environment")
    return tokens


def get_gemini_keys_from_env() -> List[str]:
    """Load all Gemini API keys from environment variables"""
    keys = _get_numbered_env_values(("GEMINI_API_KEY", "GEMINI_KEY", "GOOGLE_API_KEY"))
    logger.info(f"[Config] Loaded {len(keys)} Gemini API keys from environment")
    return keys


def get_openai_key_from_env() -> Optional[str]:
    """Load OpenAI API key from environment"""
    key = os.environ.get("OPENAI_API_KEY")
    if key and key.strip() and not key.startswith("sk-your"):
        return key.strip()
    return None


def _env_flag(name: str, default: str = "false") -> bool:
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


class ItemStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    MONITORING = "monitoring"
    COMPLETED = "completed"
    ERROR = "error"


class PublishStatus(str, Enum):
    NONE = "none"
    UPLOADING = "uploading"
    SUCCESS = "success"
    FAILED = "failed"


class DurationBucket(str, Enum):
    SHORT = "10s"
    LONG = "15s"

    @property
    def n_frames(self) -> int:
        return DURATION_FRAMES[self]


DURATION_FRAMES: Dict[DurationBucket, int] = {
    DurationBucket.SHORT: 300,
    DurationBucket.LONG: 450,
}


class ScriptEngine(str, Enum):
    GEMINI = "gemini"
    OPENAI = "openai"


class CredentialKind(str, Enum):
    SORA = "sora"        # raw cURL text copied from the browser
    YOUTUBE = "youtube"  # OAuth access token
    GEMINI = "gemini"    # Gemini API key for script writing


class ErrorCode(str, Enum):
    # Pre-flight
    INVALID_SELECTION = "INVALID_SELECTION"
    MISSING_PUBLISH_TIME = "MISSING_PUBLISH_TIME"
    INVALID_CREDENTIAL = "INVALID_CREDENTIAL"
    INVALID_CONFIG = "INVALID_CONFIG"

    # Generation backend
    SUBMISSION_REJECTED = "SUBMISSION_REJECTED"
    API_NETWORK_ERROR = "API_NETWORK_ERROR"
    PRODUCTION_TIMEOUT = "PRODUCTION_TIMEOUT"
    TASK_FAILED = "TASK_FAILED"
    FETCH_FAILED = "FETCH_FAILED"

    # Publishing backend
    PUBLISH_REJECTED = "PUBLISH_REJECTED"
    CREDENTIALS_EXHAUSTED = "CREDENTIALS_EXHAUSTED"

    # Content provider
    SCRIPT_GENERATION_FAILED = "SCRIPT_GENERATION_FAILED"

    # State machine
    INVALID_TRANSITION = "INVALID_TRANSITION"
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"

    # System
    FILE_WRITE_ERROR = "FILE_WRITE_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    CANCELLED = "CANCELLED"

    # Unknown
    UNKNOWN = "UNKNOWN_ERROR"


@dataclass
class AppConfig:
    """Application-wide configuration"""

    # Paths - Can be overridden by environment variables
    base_dir: Path = field(default_factory=lambda: Path(__file__).parent)
    outputs_dir: Path = field(default=None)
    data_dir: Path = field(default=None)

    # Database
    database_url: str = field(default=None)

    # Server
    host: str = "0.0.0.0"
    port: int = field(default_factory=lambda: int(os.environ.get("PORT", "8000")))
    debug: bool = field(default_factory=lambda: _env_flag("DEBUG"))
    log_level: str = field(default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO").upper())

    # Default for the persisted simulation flag (first run only)
    use_simulation: bool = field(default_factory=lambda: _env_flag("USE_SIMULATION"))

    def __post_init__(self):
        # Priority: DATA_DIR env var > ./data (local)
        data_root = os.environ.get("DATA_DIR")
        data_root = Path(data_root) if data_root else self.base_dir / "data"

        if self.data_dir is None:
            self.data_dir = data_root

        if self.outputs_dir is None:
            outputs_env = os.environ.get("OUTPUTS_DIR")
            self.outputs_dir = Path(outputs_env) if outputs_env else self.data_dir / "outputs"

        if self.database_url is None:
            db_env = os.environ.get("DATABASE_URL")
            self.database_url = db_env if db_env else f"sqlite:///{self.data_dir / 'studio.db'}"

        for dir_path in [self.data_dir, self.outputs_dir]:
            try:
                dir_path.mkdir(parents=True, exist_ok=True)
            except PermissionError:
                logger.warning(f"[Config] Cannot create {dir_path} - using temp directory")
                import tempfile
                temp_base = Path(tempfile.gettempdir()) / "sora-studio"
                if dir_path == self.outputs_dir:
                    self.outputs_dir = temp_base / "outputs"
                    self.outputs_dir.mkdir(parents=True, exist_ok=True)
                else:
                    self.data_dir = temp_base / "data"
                    self.data_dir.mkdir(parents=True, exist_ok=True)
                    self.database_url = f"sqlite:///{self.data_dir / 'studio.db'}"


@dataclass
class ProductionConfig:
    """Generation backend (Sora) configuration"""

    base_url: str = field(default_factory=lambda: os.environ.get("SORA_BASE_URL", "https://sora.chatgpt.com"))
    create_path: str = "/backend/nf/create"
    drafts_path: str = "/backend/project_y/profile/drafts"
    drafts_limit: int = 15

    # Create-job body
    model: str = "sy_8"
    orientation: str = "landscape"
    size: str = "small"
    variants: int = 1

    # Polling
    poll_interval_sec: float = field(default_factory=lambda: float(os.environ.get("SORA_POLL_INTERVAL_SEC", "12")))
    production_timeout_sec: float = field(default_factory=lambda: float(os.environ.get("SORA_TIMEOUT_SEC", "1200")))
    request_timeout_sec: float = 60.0
    download_timeout_sec: float = 300.0

    # Fallback matcher for draft listings that omit the task id
    strict_task_match: bool = field(default_factory=lambda: _env_flag("SORA_STRICT_TASK_MATCH"))
    prompt_match_chars: int = 10
    created_at_slack_sec: int = 10

    # Error bodies are truncated in diagnostics
    error_body_chars: int = 50

    # Simulation mode delays (min, max) in seconds
    sim_submit_delay: Tuple[float, float] = (2.0, 4.0)
    sim_monitor_delay: Tuple[float, float] = (5.0, 8.0)

    def validate(self) -> List[str]:
        """Validate configuration and return list of errors"""
        errors = []

        if self.poll_interval_sec <= 0:
            errors.append("Poll interval must be positive")

        if self.production_timeout_sec < self.poll_interval_sec:
            errors.append("Production timeout must be at least one poll interval")

        if self.prompt_match_chars < 1:
            errors.append("Prompt match length must be at least 1 character")

        for name, (low, high) in (("submit", self.sim_submit_delay), ("monitor", self.sim_monitor_delay)):
            if low < 0 or high < low:
                errors.append(f"Invalid simulated {name} delay range ({low}, {high})")

        return errors


@dataclass
class PublishConfig:
    """Publishing backend (YouTube) configuration"""

    upload_url: str = "https://www.googleapis.com/upload/youtube/v3/videos"
    category_id: str = field(default_factory=lambda: os.environ.get("YOUTUBE_CATEGORY_ID", "24"))
    privacy_status: str = "private"  # Required for scheduled publishAt
    contains_synthetic_media: bool = True
    request_timeout_sec: float = 60.0
    upload_timeout_sec: float = 600.0

    sim_upload_delay: float = 2.0

    # Smart schedule window
    schedule_window_hours: int = 24
    schedule_lead_hours: int = 1


@dataclass
class StorageConfig:
    """Optional S3/R2 mirror for produced videos"""

    endpoint_url: Optional[str] = field(default_factory=lambda: os.environ.get("S3_ENDPOINT"))
    bucket_name: str = field(default_factory=lambda: os.environ.get("S3_BUCKET", "sora-studio"))
    access_key: Optional[str] = field(default_factory=lambda: os.environ.get("S3_ACCESS_KEY"))
    secret_key: Optional[str] = field(default_factory=lambda: os.environ.get("S3_SECRET_KEY"))
    region: str = field(default_factory=lambda: os.environ.get("S3_REGION", "auto"))
    key_prefix: str = "artifacts"
    max_attempts: int = 3

    def missing(self) -> List[str]:
        """Names of the env vars that still need a value"""
        return [
            name for name, value in (
                ("S3_ENDPOINT", self.endpoint_url),
                ("S3_ACCESS_KEY", self.access_key),
                ("S3_SECRET_KEY", self.secret_key),
                ("S3_BUCKET", self.bucket_name),
            ) if not value
        ]


# Script writing models
GEMINI_MODEL = "gemini-3-pro-preview"
OPENAI_MODEL = "gpt-4o"


# Singleton configs
app_config = AppConfig()
production_config = ProductionConfig()
publish_config = PublishConfig()
storage_config = StorageConfig()
