from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


def _split_csv(raw_value: str) -> list[str]:
    return [part.strip() for part in raw_value.split(",") if part.strip()]


def _normalize_env(raw_value: str) -> str:
    normalized = raw_value.strip().lower()
    return "production" if normalized == "production" else "development"


def is_permissive_origin(value: str) -> bool:
    normalized = value.strip().lower()
    if not normalized:
        return False
    if normalized == "*":
        return True
    return "://*" in normalized


class Settings(BaseSettings):
    APP_ENV: str = "development"
    APP_HOST: str = "0.0.0.0"
    APP_PORT: int = 8000
    LOG_LEVEL: str = "info"

    # CORS
    CORS_ALLOW_ORIGINS: str = "*"
    CORS_ALLOW_ORIGIN_REGEX: str = ""

    # Auth (Supabase-issued access tokens)
    SUPABASE_JWT_SECRET: str = ""
    SUPABASE_JWT_AUDIENCE: str = "authenticated"
    AUTH_CONNECT_TIMEOUT_SEC: float = 5.0
    AUTH_READ_TIMEOUT_SEC: float = 10.0

    # AI (OpenRouter)
    OPENROUTER_API_KEY: str = ""
    OPENROUTER_BASE_URL: str = "https://openrouter.ai/api/v1"
    OPENROUTER_MODEL: str = "google/gemini-2.5-flash"
    OPENROUTER_CONNECT_TIMEOUT_SEC: float = 5.0
    OPENROUTER_READ_TIMEOUT_SEC: float = 60.0
    OPENROUTER_MAX_RETRIES: int = 1

    # Supabase
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""
    SUPABASE_DATABASE_URL: str = ""
    SUPABASE_STORAGE_BUCKET: str = "food-photos"
    STORAGE_CONNECT_TIMEOUT_SEC: float = 5.0
    STORAGE_WRITE_TIMEOUT_SEC: float = 30.0
    DB_STATEMENT_TIMEOUT_MS: int = 5000
    DB_SLOW_QUERY_MS: int = 300

    # Entries
    ANALYZE_MAX_IMAGE_BYTES: int = 10485760
    ENTRY_PLACEHOLDER_NAME: str = "Продукт"
    ENTRY_UNIT: str = "г"

    # Detached analysis tasks
    BACKGROUND_DRAIN_TIMEOUT_SEC: float = 90.0

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    def env_mode(self) -> str:
        return _normalize_env(self.APP_ENV)

    def is_production(self) -> bool:
        return self.env_mode() == "production"

    def get_cors_allow_origins(self) -> list[str]:
        return _split_csv(self.CORS_ALLOW_ORIGINS)

    def get_cors_allow_origin_regex(self) -> Optional[str]:
        configured = self.CORS_ALLOW_ORIGIN_REGEX.strip()
        return configured or None

    def cors_allows_credentials(self) -> bool:
        # Browsers reject credentialed responses with a wildcard origin.
        return not any(is_permissive_origin(origin) for origin in self.get_cors_allow_origins())

    def uses_local_jwt_verification(self) -> bool:
        return bool(self.SUPABASE_JWT_SECRET.strip())

    def storage_api_key(self) -> str:
        return self.SUPABASE_SERVICE_ROLE_KEY.strip() or self.SUPABASE_ANON_KEY.strip()


settings = Settings()
