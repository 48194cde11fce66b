"""
Configuration Management for Statement Import

Uses pydantic-settings for type-safe configuration from environment variables.

DESIGN DECISION: All configuration is centralized here.
Thresholds that decide whether a row is trusted without review live
next to the external service settings, so a deployment can see at a
glance what it is tuning.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class GoogleSheetsSettings(BaseSettings):
    """Google Sheets ledger/audit storage configuration."""

    model_config = SettingsConfigDict(
        env_prefix="GOOGLE_SHEETS_",
        extra="ignore"
    )

    credentials_path: str = Field(
        ...,
        description="Path to Google service account credentials JSON"
    )
    spreadsheet_id: str = Field(
        ...,
        description="ID of the Google Sheets spreadsheet to use"
    )

    # Sheet names within the spreadsheet
    ledger_sheet_name: str = Field(
        default="Expenses",
        description="Name of the sheet that receives confirmed ledger entries"
    )
    audit_sheet_name: str = Field(
        default="AuditLog",
        description="Name of the sheet for audit logs"
    )

    @field_validator('credentials_path')
    @classmethod
    def validate_credentials_path(cls, v: str) -> str:
        """Warn if credentials file doesn't exist (but don't fail - might be mounted later)."""
        if not Path(v).exists():
            import warnings
            warnings.warn(
                f"Google credentials file not found at {v}. "
                "Make sure it exists before running the application."
            )
        return v


class GeminiSettings(BaseSettings):
    """Gemini LLM configuration (AI classification fallback)."""

    model_config = SettingsConfigDict(
        env_prefix="GEMINI_",
        extra="ignore"
    )

    api_key: str = Field(
        ...,
        description="Gemini API key"
    )
    model_name: str = Field(
        default="gemini-1.5-flash",
        description="Gemini model to use"
    )
    max_tokens: int = Field(
        default=2048,
        ge=100,
        le=8192,
        description="Maximum tokens in response"
    )
    temperature: float = Field(
        default=0.0,
        ge=0.0,
        le=1.0,
        description="Model temperature (lower = more deterministic)"
    )


class ImportSettings(BaseSettings):
    """
    Statement import pipeline settings.

    The auto-accept threshold is tunable per deployment. Rule bucket
    confidences are not - they live with the rules themselves.
    """

    model_config = SettingsConfigDict(
        env_prefix="IMPORT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Routing
    auto_accept_threshold: float = Field(
        default=0.80,
        ge=0.0,
        le=1.0,
        description="Every field confidence must reach this to skip AI fallback"
    )

    # Upload limits
    max_upload_size_mb: int = Field(
        default=10,
        ge=1,
        le=50,
        description="Maximum upload file size in MB"
    )
    supported_file_types: str = Field(
        default="csv,xlsx,xls,pdf",
        description="Comma-separated list of accepted statement extensions"
    )

    # AI fallback queue
    ai_batch_size: int = Field(default=25, ge=1, le=200)
    ai_concurrency: int = Field(default=2, ge=1, le=16)
    ai_retries: int = Field(default=2, ge=0, le=10)
    ai_backoff_seconds: float = Field(default=1.0, ge=0.0)
    ai_timeout_seconds: float = Field(default=20.0, gt=0.0)
    ai_confidence_ceiling: float = Field(
        default=0.75,
        ge=0.0,
        le=1.0,
        description="Upper bound for any AI-assigned field confidence"
    )
    ai_mock: bool = Field(
        default=False,
        description="Use canned AI answers instead of calling Gemini (demos, e2e)"
    )

    # Background processing
    worker_count: int = Field(default=2, ge=1, le=32)
    queue_size: int = Field(default=32, ge=1)
    parsing_timeout_minutes: int = Field(
        default=30,
        ge=1,
        description="Sessions still PARSING after this long are marked FAILED"
    )
    watchdog_interval_seconds: float = Field(default=60.0, gt=0.0)

    @property
    def supported_types_list(self) -> list[str]:
        """Get supported extensions as a list."""
        return [
            ext.strip().lower().lstrip(".")
            for ext in self.supported_file_types.split(",")
            if ext.strip()
        ]

    @property
    def max_upload_size_bytes(self) -> int:
        """Get max upload size in bytes."""
        return self.max_upload_size_mb * 1024 * 1024


class AppSettings(BaseSettings):
    """
    Main application settings.

    Loads configuration from environment variables and .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    app_environment: str = Field(
        default="development",
        description="Application environment"
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable debug mode"
    )
    log_level: str = Field(
        default="INFO",
        description="Python log level name"
    )
    json_logs: bool = Field(
        default=True,
        description="Render logs as JSON (False = console renderer)"
    )


class Settings(BaseSettings):
    """
    Root settings container.

    Aggregates all sub-settings for easy access.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    # Sub-settings are loaded lazily to allow partial configuration

    @property
    def google_sheets(self) -> GoogleSheetsSettings:
        return GoogleSheetsSettings()

    @property
    def gemini(self) -> GeminiSettings:
        return GeminiSettings()

    @property
    def imports(self) -> ImportSettings:
        return ImportSettings()

    @property
    def app(self) -> AppSettings:
        return AppSettings()


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    Call get_settings.cache_clear() to reload if needed.
    """
    return Settings()


def validate_all_settings() -> dict[str, bool]:
    """
    Validate all settings are properly configured.

    Returns a dict of {setting_name: is_valid}.
    Useful for startup checks.
    """
    results = {}

    settings = get_settings()

    for name in ("google_sheets", "gemini", "imports", "app"):
        try:
            getattr(settings, name)
            results[name] = True
        except Exception as e:
            results[name] = False
            results[f"{name}_error"] = str(e)

    return results
