"""Configuration management for the Newscast digest pipeline.

This module provides centralized configuration for all pipeline components.
All settings are loaded from environment variables with sensible defaults.

Environment Variables:
    Required:
        GOOGLE_API_KEY: Google Gemini API key for curation, scripts, translation

    Models (PydanticAI format - provider:model):
        CURATOR_MODEL: Model that selects and summarizes headlines
        SCRIPT_MODEL: Model that writes the narration script
        TRANSLATOR_MODEL: Model that translates digest items

    Collection:
        DEFAULT_LANGUAGE: Digest language when a request omits one
        MAX_RAW_ITEMS: Maximum raw feed items handed to the curator
        MAX_DIGEST_ITEMS: Maximum curated items per digest
        FEED_TIMEOUT: Per-feed request timeout in seconds
        MAX_WORKERS: Maximum concurrent feed fetches / API calls

    Sentiment:
        HF_API_KEY: Hugging Face inference API key (optional)

    Speech Synthesis:
        TTS_CHUNK_CHARS: Maximum characters per synthesis request
        TTS_TIMEOUT_SECONDS: Hard timeout per synthesis attempt
        TTS_MAX_ATTEMPTS: Attempts per backend on 429/503/timeout
        TTS_BACKOFF_BASE: Base delay for exponential backoff (seconds)
        TTS_MIN_PAYLOAD_BYTES: Smallest payload accepted as real audio

    Scheduling:
        DUE_WINDOW_MINUTES: Tolerance around a task's scheduled time
        POLL_INTERVAL_SECONDS: Delay between due-checks in loop mode
        TASK_TIMEOUT_SECONDS: Wall-clock budget for one scheduled run

    Delivery:
        SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD, EMAIL_FROM

    Storage:
        DB_PATH: SQLite database file path
        ARTIFACTS_DIR: Directory for audio and document artifacts
        INTEREST_CACHE_TTL_SECONDS: Lifetime of cached interest profiles
        INTEREST_CACHE_MAX_ENTRIES: Cached profiles kept before eviction

    Optional Features:
        ENABLE_LOGFIRE: Enable Logfire/OpenTelemetry tracing

    Logging:
        LOG_LEVEL: Logging verbosity (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        LOG_BACKUP_COUNT: Number of rotated log files to keep
        LOG_MAX_BYTES: Max log file size in bytes (0 = time-based rotation)
        LOG_FORMAT: Log format ('text' or 'json' for structured logging)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env(key: str, default: str = "") -> str:
    """Get string environment variable with optional default.

    Args:
        key: Environment variable name
        default: Value to return if not set

    Returns:
        Environment variable value or default
    """
    return os.environ.get(key, default)


def _env_int(key: str, default: int) -> int:
    """Get integer environment variable with default.

    Args:
        key: Environment variable name
        default: Value to return if not set or invalid

    Returns:
        Parsed integer or default value

    Raises:
        ValueError: If value is set but cannot be parsed as integer
    """
    val = os.environ.get(key)
    if not val:
        return default
    try:
        return int(val)
    except ValueError:
        raise ValueError(f"Invalid integer value for {key}: '{val}'")


def _env_float(key: str, default: float) -> float:
    """Get float environment variable with default.

    Raises:
        ValueError: If value is set but cannot be parsed as float
    """
    val = os.environ.get(key)
    if not val:
        return default
    try:
        return float(val)
    except ValueError:
        raise ValueError(f"Invalid float value for {key}: '{val}'")


def _env_bool(key: str, default: bool = False) -> bool:
    """Get boolean environment variable with default.

    Recognizes truthy values: '1', 'true', 'yes', 'on'
    Recognizes falsy values: '0', 'false', 'no', 'off'
    """
    val = os.environ.get(key, "").lower()
    if val in ("1", "true", "yes", "on"):
        return True
    if val in ("0", "false", "no", "off"):
        return False
    return default


# RSS feeds grouped by digest topic.
# "all" doubles as the fallback for unknown topics.
TOPIC_FEEDS: dict[str, list[str]] = {
    "all": [
        "https://rss.nytimes.com/services/xml/rss/nyt/World.xml",
        "https://feeds.bbci.co.uk/news/world/rss.xml",
        "https://www.thehindu.com/news/national/feeder/default.rss",
        "https://www.thehindu.com/news/international/feeder/default.rss",
        "https://indianexpress.com/section/india/feed/",
        "https://www.ndtv.com/world-news/rss",
        "https://timesofindia.indiatimes.com/rssfeedstopstories.cms",
        "https://www.hindustantimes.com/feeds/rss/india-news/index.xml",
    ],
    "national": [
        "https://www.thehindu.com/news/national/feeder/default.rss",
        "https://indianexpress.com/section/india/feed/",
        "https://timesofindia.indiatimes.com/rssfeedstopstories.cms",
        "https://www.hindustantimes.com/feeds/rss/india-news/index.xml",
    ],
    "international": [
        "https://rss.nytimes.com/services/xml/rss/nyt/World.xml",
        "https://feeds.bbci.co.uk/news/world/rss.xml",
        "https://www.reuters.com/tools/rss",
    ],
    "sports": [
        "https://www.espncricinfo.com/rss/content/story/feeds/0.xml",
        "https://www.espn.com/espn/rss/news",
        "https://timesofindia.indiatimes.com/rssfeeds/4719148.cms",
    ],
    "technology": [
        "https://rss.nytimes.com/services/xml/rss/nyt/Technology.xml",
        "https://feeds.feedburner.com/TechCrunch/",
        "https://www.wired.com/feed/rss",
    ],
    "state": [
        "https://www.thehindu.com/news/national/feeder/default.rss",
        "https://indianexpress.com/section/india/feed/",
        "https://timesofindia.indiatimes.com/rssfeedstopstories.cms",
        "https://www.hindustantimes.com/feeds/rss/india-news/index.xml",
    ],
}

DEFAULT_MODEL = "google-gla:gemini-2.0-flash"


@dataclass
class Config:
    """Application configuration loaded from environment variables.

    All settings can be overridden via environment variables. Use Config.load()
    to create an instance with values from the environment.

    Example:
        >>> config = Config.load()
        >>> if error := config.validate():
        ...     print(f"Config error: {error}")
    """

    # === Required ===
    google_api_key: str = ""  # GOOGLE_API_KEY - Gemini API key

    # === Feed Sources ===
    topic_feeds: dict[str, list[str]] = field(
        default_factory=lambda: {k: v.copy() for k, v in TOPIC_FEEDS.items()}
    )

    # === AI Models ===
    curator_model: str = DEFAULT_MODEL  # CURATOR_MODEL - Headline curation
    script_model: str = DEFAULT_MODEL  # SCRIPT_MODEL - Narration script
    translator_model: str = DEFAULT_MODEL  # TRANSLATOR_MODEL - Item translation

    # === Collection ===
    default_language: str = "en"  # DEFAULT_LANGUAGE
    max_raw_items: int = 50  # MAX_RAW_ITEMS - Raw items sent to the curator
    max_digest_items: int = 15  # MAX_DIGEST_ITEMS - Curated items kept
    feed_timeout: int = 30  # FEED_TIMEOUT - Per-feed timeout (seconds)
    max_workers: int = 8  # MAX_WORKERS - Concurrent fetches / API calls

    # === Sentiment ===
    hf_api_key: str = ""  # HF_API_KEY - Optional; neutral defaults without it

    # === Speech Synthesis ===
    tts_chunk_chars: int = 150  # TTS_CHUNK_CHARS
    tts_timeout_seconds: float = 20.0  # TTS_TIMEOUT_SECONDS
    tts_max_attempts: int = 2  # TTS_MAX_ATTEMPTS - Per backend
    tts_backoff_base: float = 2.0  # TTS_BACKOFF_BASE - Seconds
    tts_min_payload_bytes: int = 1000  # TTS_MIN_PAYLOAD_BYTES

    # === Scheduling ===
    due_window_minutes: int = 15  # DUE_WINDOW_MINUTES
    poll_interval_seconds: int = 300  # POLL_INTERVAL_SECONDS
    task_timeout_seconds: int = 900  # TASK_TIMEOUT_SECONDS

    # === Delivery ===
    smtp_host: str = "smtp.gmail.com"  # SMTP_HOST
    smtp_port: int = 587  # SMTP_PORT
    smtp_user: str = ""  # SMTP_USER
    smtp_password: str = ""  # SMTP_PASSWORD
    email_from: str = ""  # EMAIL_FROM - Defaults to SMTP_USER

    # === Storage ===
    db_path: Path = field(default_factory=lambda: Path("newscast.db"))  # DB_PATH
    artifacts_dir: Path = field(default_factory=lambda: Path("artifacts"))  # ARTIFACTS_DIR
    interest_cache_ttl_seconds: int = 3600  # INTEREST_CACHE_TTL_SECONDS
    interest_cache_max_entries: int = 1024  # INTEREST_CACHE_MAX_ENTRIES

    # === Output Directories ===
    log_dir: Path = field(default_factory=lambda: Path("log"))  # LOG_DIR

    # === Logging Configuration ===
    log_level: str = "INFO"  # LOG_LEVEL - DEBUG, INFO, WARNING, ERROR
    log_backup_count: int = 30  # LOG_BACKUP_COUNT - Number of rotated logs to keep
    log_max_bytes: int = 0  # LOG_MAX_BYTES - Max file size (0 = time-based rotation)
    log_format: str = "text"  # LOG_FORMAT - 'text' or 'json' for structured logging

    # === Optional: Observability ===
    # Requires: pip install logfire
    enable_logfire: bool = False  # ENABLE_LOGFIRE - Enable distributed tracing
    logfire_token: str = ""  # LOGFIRE_TOKEN - Authentication token

    @classmethod
    def load(cls) -> "Config":
        """Load configuration from environment variables."""
        smtp_user = _env("SMTP_USER")
        return cls(
            google_api_key=_env("GOOGLE_API_KEY"),
            curator_model=_env("CURATOR_MODEL", DEFAULT_MODEL),
            script_model=_env("SCRIPT_MODEL", DEFAULT_MODEL),
            translator_model=_env("TRANSLATOR_MODEL", DEFAULT_MODEL),
            default_language=_env("DEFAULT_LANGUAGE", "en").lower(),
            max_raw_items=_env_int("MAX_RAW_ITEMS", 50),
            max_digest_items=_env_int("MAX_DIGEST_ITEMS", 15),
            feed_timeout=_env_int("FEED_TIMEOUT", 30),
            max_workers=_env_int("MAX_WORKERS", 8),
            hf_api_key=_env("HF_API_KEY"),
            tts_chunk_chars=_env_int("TTS_CHUNK_CHARS", 150),
            tts_timeout_seconds=_env_float("TTS_TIMEOUT_SECONDS", 20.0),
            tts_max_attempts=_env_int("TTS_MAX_ATTEMPTS", 2),
            tts_backoff_base=_env_float("TTS_BACKOFF_BASE", 2.0),
            tts_min_payload_bytes=_env_int("TTS_MIN_PAYLOAD_BYTES", 1000),
            due_window_minutes=_env_int("DUE_WINDOW_MINUTES", 15),
            poll_interval_seconds=_env_int("POLL_INTERVAL_SECONDS", 300),
            task_timeout_seconds=_env_int("TASK_TIMEOUT_SECONDS", 900),
            smtp_host=_env("SMTP_HOST", "smtp.gmail.com"),
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_user=smtp_user,
            smtp_password=_env("SMTP_PASSWORD"),
            email_from=_env("EMAIL_FROM", smtp_user),
            db_path=Path(_env("DB_PATH", "newscast.db")),
            artifacts_dir=Path(_env("ARTIFACTS_DIR", "artifacts")),
            interest_cache_ttl_seconds=_env_int("INTEREST_CACHE_TTL_SECONDS", 3600),
            interest_cache_max_entries=_env_int("INTEREST_CACHE_MAX_ENTRIES", 1024),
            log_dir=Path(_env("LOG_DIR", "log")),
            enable_logfire=_env_bool("ENABLE_LOGFIRE", False),
            logfire_token=_env("LOGFIRE_TOKEN"),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            log_backup_count=_env_int("LOG_BACKUP_COUNT", 30),
            log_max_bytes=_env_int("LOG_MAX_BYTES", 0),
            log_format=_env("LOG_FORMAT", "text").lower(),
        )

    def feeds_for(self, topic: str) -> list[str]:
        """Return the feed URLs for a topic, falling back to 'all'."""
        return self.topic_feeds.get(topic) or self.topic_feeds.get("all", [])

    def validate(self) -> str | None:
        """Validate configuration for required fields and valid values.

        Checks:
            - GOOGLE_API_KEY is set
            - At least one feed is configured
            - Numeric values are positive
            - The poll interval fits inside the due window, otherwise
              scheduled tasks can be skipped for the day

        Returns:
            Error message string if invalid, None if valid.
        """
        if not self.google_api_key:
            return "GOOGLE_API_KEY environment variable is required"
        if not any(self.topic_feeds.values()):
            return "No feed URLs configured"
        if self.max_raw_items <= 0 or self.max_digest_items <= 0:
            return "MAX_RAW_ITEMS and MAX_DIGEST_ITEMS must be positive"
        if self.max_workers <= 0:
            return "MAX_WORKERS must be positive"
        if self.tts_chunk_chars <= 0:
            return "TTS_CHUNK_CHARS must be positive"
        if self.tts_max_attempts <= 0:
            return "TTS_MAX_ATTEMPTS must be positive"
        if self.tts_timeout_seconds <= 0:
            return "TTS_TIMEOUT_SECONDS must be positive"
        if self.tts_backoff_base < 0:
            return "TTS_BACKOFF_BASE must be non-negative"
        if self.due_window_minutes <= 0:
            return "DUE_WINDOW_MINUTES must be positive"
        if self.poll_interval_seconds <= 0:
            return "POLL_INTERVAL_SECONDS must be positive"
        if self.poll_interval_seconds > self.due_window_minutes * 60:
            return "POLL_INTERVAL_SECONDS must not exceed DUE_WINDOW_MINUTES"
        if self.task_timeout_seconds <= 0:
            return "TASK_TIMEOUT_SECONDS must be positive"
        if self.interest_cache_ttl_seconds <= 0 or self.interest_cache_max_entries <= 0:
            return "Interest cache TTL and size must be positive"
        if self.log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            return f"Invalid LOG_LEVEL '{self.log_level}' - must be DEBUG, INFO, WARNING, ERROR, or CRITICAL"
        if self.log_format not in ("text", "json"):
            return f"Invalid LOG_FORMAT '{self.log_format}' - must be 'text' or 'json'"
        if self.log_backup_count < 0:
            return "LOG_BACKUP_COUNT must be non-negative"
        if self.log_max_bytes < 0:
            return "LOG_MAX_BYTES must be non-negative"
        return None

    def validate_delivery(self) -> str | None:
        """Validate SMTP settings needed to send digests."""
        if not self.smtp_host:
            return "SMTP_HOST is required for email delivery"
        if not self.email_from:
            return "EMAIL_FROM (or SMTP_USER) is required for email delivery"
        return None
