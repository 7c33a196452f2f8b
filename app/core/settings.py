from typing import Literal

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True, case_sensitive=False)

    # App
    app_name: str = "SequenceHUB API"
    debug: bool = False
    log_level: str = "INFO"
    log_json: bool = False
    public_base_url: str = Field(
        default="http://localhost:3000",
        validation_alias=AliasChoices("public_base_url", "next_public_base_url"),
    )

    # Database
    database_url: str = "sqlite:///./app.db"

    # Security
    access_token_secret: str = "dev-access-secret-change-me"
    refresh_token_secret: str = "dev-refresh-secret-change-me"
    jwt_algorithm: str = "HS256"
    access_token_expires_minutes: int = 15
    refresh_token_expires_days: int = 7

    # Cookies
    refresh_cookie_name: str = "refresh_token"
    refresh_cookie_path: str = "/api/auth"
    refresh_cookie_secure: bool = False
    refresh_cookie_samesite: str = "lax"

    # Downloads
    download_secret: str = "dev-download-secret-change-me"
    download_token_ttl_seconds: int = 300
    download_daily_limit: int = 10

    # Storage
    storage_backend: Literal["local", "supabase"] = "local"
    local_storage_dir: str = "./storage"
    supabase_url: str = ""
    supabase_service_key: str = ""
    storage_bucket: str = "product-files"

    # Uploads
    upload_chunk_size: int = 5 * 1024 * 1024
    upload_session_ttl_hours: int = 24
    upload_staging_dir: str = "./storage/.staging"

    # Payments
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    platform_fee_percent: float = 10.0
    checkout_session_ttl_hours: int = 24


settings = Settings()
