from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "Competency Validator API"
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True
    log_level: str = "INFO"
    request_id_header: str = "X-Request-ID"

    aws_region: str = "ap-southeast-2"
    storage_backend: str = "local"  # local|s3
    s3_bucket: str = "validator-dev"
    s3_prefix: str = "validator"
    storage_root: str = "data/uploads"
    max_upload_files: int = 20
    max_upload_file_bytes: int = 25 * 1024 * 1024
    # Unit requirement reference tables live in the same sqlite database.
    database_url: str = "sqlite:///./validator.db"

    gemini_api_base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    gemini_upload_base_url: str = "https://generativelanguage.googleapis.com/upload/v1beta"
    gemini_api_key: str = ""
    gemini_model: str = "gemini-2.5-flash"
    gemini_temperature: float = 0.2
    gemini_request_timeout_seconds: float = 60.0

    retrieval_max_attempts: int = 3
    retrieval_backoff_base_seconds: float = 1.0
    retrieval_backoff_max_seconds: float = 30.0
    validation_max_concurrency: int = 3
    validation_dispatch_workers: int = 2

    indexing_poll_max_attempts: int = 60
    indexing_poll_interval_seconds: float = 5.0

    # Quality flag thresholds; coverage values are percentages, confidence values are 0..1.
    quality_low_coverage_pct: float = 50.0
    quality_low_confidence: float = 0.6
    quality_good_coverage_pct: float = 80.0
    quality_good_confidence: float = 0.8

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()
