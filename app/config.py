# app/config.py
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal
from urllib.parse import quote


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    app_env: Literal["dev", "staging", "prod"] = "dev"
    log_level: str = "INFO"

    # Database
    expected_schema_version: str = "002_job_ownership_guards.sql"
    database_url: str | None = None
    pghost: str = "localhost"
    pgport: int = 5432
    pguser: str = "postgres"
    pgpassword: str = ""
    pgdatabase: str = "postgres"
    pg_pool_min: int = 2
    pg_pool_max: int = 20
    pg_connect_timeout: int = 5
    pg_command_timeout: int = 60
    pg_statement_timeout_ms: int = 30000
    pg_idle_in_tx_timeout_ms: int = 30000

    # Store retry policy (applies to all store-mutating dispatch operations)
    store_retry_max_attempts: int = 3
    store_retry_base_delay: float = 0.1  # seconds, doubles on each retry
    store_retry_max_delay: float = 2.0

    # Security
    allowed_origins: list[str] = ["*"]
    metrics_token: str | None = None
    internal_networks: str = "10.0.0.0/8,172.16.0.0/12,192.168.0.0/16,127.0.0.0/8,::1/128"
    trust_proxy_headers: bool = False

    # Matching
    default_service_radius_miles: float = 50.0
    default_max_jobs_per_day: int = 5

    # Availability / capacity
    fallback_capacity_per_slot: int = 3
    availability_days_ahead: int = 30
    availability_min_advance_hours: int = 24
    business_timezone: str = "America/New_York"

    # Payout policy
    payout_pct_of_subtotal: float = 0.60
    payout_min_floor: float = 35.0
    payout_max_cap_pct: float = 0.80

    # Collaborators (fire-and-forget HTTP)
    notify_pro_url: str | None = None  # e.g. https://notify.example.com/api/notify-pro
    notify_management_url: str | None = None
    collaborator_timeout_seconds: float = 3.0

    # Geocoding (Nominatim forward search)
    geocoding_enabled: bool = True
    geocoding_url: str = "https://nominatim.openstreetmap.org/search"
    geocoding_timeout_seconds: float = 3.0

    # Service catalog (category lookup for default payouts)
    catalog_url: str | None = None
    catalog_cache_ttl_seconds: int = 300

    # Feature Flags
    enable_request_logging: bool = True

    @property
    def is_production(self) -> bool:
        return self.app_env == "prod"

    @property
    def is_staging(self) -> bool:
        return self.app_env == "staging"

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url

        # asyncpg accepts URI-form DSNs only
        return (
            f"postgresql://{quote(self.pguser)}:{quote(self.pgpassword)}"
            f"@{self.pghost}:{self.pgport}/{self.pgdatabase}"
        )

    def validate_required_for_production(self) -> list[str]:
        """Validate that required settings exist for production"""
        if not self.is_production:
            return []

        missing = []

        required_fields = [
            ("database_url", self.database_url),
            ("notify_pro_url", self.notify_pro_url),
        ]

        for field_name, value in required_fields:
            if not value:
                missing.append(field_name)

        return missing


def warn_on_risky_config(s: "Settings") -> list[str]:
    warnings: list[str] = []

    if s.is_production and s.allowed_origins == ["*"]:
        warnings.append("prod: allowed_origins=['*'] (CORS is wide open).")

    # --- Retry budget ---
    if s.store_retry_max_attempts < 1:
        warnings.append("store_retry_max_attempts < 1: store operations will never run.")
    if s.store_retry_max_attempts > 5:
        warnings.append(
            f"store_retry_max_attempts={s.store_retry_max_attempts}: requests may block well past the retry budget."
        )

    # --- Payout policy ---
    if s.payout_max_cap_pct >= 1.0:
        warnings.append("payout_max_cap_pct >= 1.0: pro payouts can exceed the order subtotal.")
    if s.payout_pct_of_subtotal > s.payout_max_cap_pct:
        warnings.append("payout_pct_of_subtotal exceeds payout_max_cap_pct: the cap will always bind.")

    # --- Collaborators ---
    if not s.notify_pro_url:
        warnings.append("notify_pro_url is not set (pros will not be notified of offers).")
    if s.collaborator_timeout_seconds > 10:
        warnings.append("collaborator_timeout_seconds > 10: notification calls may stall requests.")

    return warnings


def validate_or_warn(s: "Settings") -> None:
    """
    In prod: enforce required settings (hard fail).
    In non-prod: warn only.
    """
    missing = s.validate_required_for_production()

    if missing:
        raise RuntimeError(f"Missing required settings for production: {', '.join(missing)}")

    for msg in warn_on_risky_config(s):
        print(f"[WARN][config] {msg}")

settings = Settings()
validate_or_warn(settings)
