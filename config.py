"""
Configuration management for the Lead Enrichment Service
"""
from typing import Optional

from dotenv import load_dotenv
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Load environment variables from .env file
load_dotenv()


class Settings(BaseSettings):
    """Application settings with environment variable support"""

    # Supabase Configuration (in-memory storage is used when unset)
    supabase_url: Optional[str] = Field(default=None, alias="SUPABASE_URL")
    supabase_service_role_key: Optional[str] = Field(default=None, alias="SUPABASE_SERVICE_ROLE_KEY")
    storage_backend: str = "auto"  # auto, supabase, memory

    # Service Configuration
    log_level: str = "INFO"
    service_name: str = "lead-enrichment-service"

    # Job Processing
    max_retries: int = 3
    retry_delay_ms: int = 1000
    progress_checkpoint_interval: int = 10
    stale_job_threshold_ms: int = 5 * 60 * 1000
    job_polling_interval: int = 30  # seconds

    # Website Scraper
    scraper_timeout_ms: int = 10000
    scraper_max_retries: int = 2
    scraper_max_redirects: int = 5
    scraper_max_content_bytes: int = 5 * 1024 * 1024
    scraper_user_agent: str = "Mozilla/5.0 (compatible; LeadEnrichmentBot/1.0)"
    scraper_concurrency: int = 3
    scraper_circuit_breaker_enabled: bool = True

    # Domain Discovery
    domain_discovery_enabled: bool = False
    discovery_timeout_ms: int = 5000
    discovery_max_guesses: int = 3

    # Circuit Breakers
    circuit_failure_threshold: int = 5
    circuit_reset_timeout_ms: int = 30000
    circuit_half_open_successes: int = 2

    # Identity Resolution
    merge_company_city_match: bool = True
    merge_email_conflict_guard: bool = True  # skip domain/phone matches between different emails

    # Import Limits
    import_max_records: int = 10000
    import_max_file_size_mb: int = 10
    import_max_field_length: int = 500
    import_max_errors: int = 100

    # Exports
    exports_dir: str = "exports"
    exports_list_limit: int = 50

    # Self-Healing Monitor
    health_check_interval: int = 60  # seconds
    stale_recovery_interval: int = 300  # seconds

    # Background Service Configuration
    health_check_port: int = 8000
    health_check_host: str = "0.0.0.0"

    # Logging Configuration
    log_file_enabled: bool = True
    log_file_path: str = "logs"
    log_rotation: str = "10 MB"
    log_retention: str = "30 days"

    # Development
    debug_mode: bool = False

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Allow extra fields in env file for compatibility
        populate_by_name=True,
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard Python logging levels"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("storage_backend")
    @classmethod
    def validate_storage_backend(cls, v):
        valid_backends = ["auto", "supabase", "memory"]
        if v.lower() not in valid_backends:
            raise ValueError(f"Storage backend must be one of {valid_backends}")
        return v.lower()

    @field_validator("max_retries", "scraper_max_retries")
    @classmethod
    def validate_retries(cls, v):
        """Ensure retry counts are reasonable"""
        if v < 1 or v > 10:
            raise ValueError("Retry counts must be between 1 and 10")
        return v

    @field_validator("progress_checkpoint_interval", "circuit_failure_threshold", "circuit_half_open_successes")
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError("Value must be at least 1")
        return v

    @field_validator("retry_delay_ms", "stale_job_threshold_ms", "circuit_reset_timeout_ms")
    @classmethod
    def validate_non_negative_ms(cls, v):
        if v < 0:
            raise ValueError("Durations must not be negative")
        return v

    @property
    def use_supabase(self) -> bool:
        """Whether the Supabase storage backend should be used"""
        if self.storage_backend == "memory":
            return False
        if self.storage_backend == "supabase":
            return True
        return bool(self.supabase_url and self.supabase_service_role_key)


# Global settings instance - lazy loaded
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment"""
    global _settings
    _settings = Settings()
    return _settings
