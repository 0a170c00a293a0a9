from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "GrantDesk API"
    app_env: str = "development"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: str = "http://localhost:3000"
    cors_allow_credentials: bool = True
    log_level: str = "INFO"
    request_id_header: str = "X-Request-ID"

    llm_provider: str = "openai"  # openai|bedrock
    openai_api_key: str = ""
    # Any OpenAI-compatible chat completion endpoint works; Groq is the default host.
    openai_base_url: str = "https://api.groq.com/openai/v1"
    completion_model: str = "llama-3.1-70b-versatile"
    completion_temperature: float = 0.2
    completion_max_tokens: int = 2000
    completion_timeout_seconds: float = 60.0
    completion_max_input_chars: int = 120_000
    aws_region: str = "us-east-1"
    bedrock_model_id: str = "amazon.nova-pro-v1:0"
    strict_enum_validation: bool = True

    kv_backend: str = "local"  # memory|local|redis|s3|none
    kv_prefix: str = "grant:analysis:"
    kv_scan_count: int = 100
    redis_url: str = "redis://localhost:6379/0"
    s3_bucket: str = "grantdesk-dev"
    s3_prefix: str = "grantdesk"
    storage_root: str = "data/analyses"
    max_upload_file_bytes: int = 10 * 1024 * 1024

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.cors_origins.split(",") if origin.strip()]


settings = Settings()
