
from typing import Annotated, List
from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

DEFAULT_CORS_ORIGINS = [
    "https://astral-ai.online",
    "https://www.astral-ai.online",
    "http://localhost:3000",
    "http://localhost:1420",   # Tauri dev server
    "http://localhost:5174",   # launcher (Vite)
    "tauri://localhost",
    "http://tauri.localhost",
]

class Settings(BaseSettings):
    ENV: str = "dev"
    LOG_DIR: str = "logs"

    DATABASE_URL: str = ""  # empty => sqlite file under ./data

    SUPABASE_URL: str = "http://localhost:54321"
    SUPABASE_ANON_KEY: str = ""
    SUPABASE_SERVICE_ROLE_KEY: str = ""
    SUPABASE_TIMEOUT_SECONDS: float = 10.0

    ENCRYPTION_KEY: str = ""

    OAUTH_CODE_TTL_SECONDS: int = 600
    ACCESS_TOKEN_TTL_SECONDS: int = 3600
    REFRESH_TOKEN_TTL_SECONDS: int = 7 * 24 * 60 * 60

    RATE_LIMIT_WINDOW_SECONDS: int = 60
    RATE_LIMIT_MAX_PER_IP: int = 120
    RATE_LIMIT_MAX_OTP_PER_EMAIL: int = 5

    CORS_ORIGINS: Annotated[List[str], NoDecode] = DEFAULT_CORS_ORIGINS
    # peers allowed to set X-Forwarded-For (reverse proxy / load balancer addresses)
    TRUSTED_PROXY_IPS: Annotated[List[str], NoDecode] = []

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    @field_validator("CORS_ORIGINS", "TRUSTED_PROXY_IPS", mode="before")
    @classmethod
    def split_csv(cls, v):
        if isinstance(v, str):
            return [s.strip() for s in v.split(",") if s.strip()]
        return v

    @property
    def is_dev(self) -> bool:
        return self.ENV.lower() in ("dev", "development")

    @property
    def supabase_api_key(self) -> str:
        # service role bypasses RLS; fall back to anon when it's not configured
        return self.SUPABASE_SERVICE_ROLE_KEY or self.SUPABASE_ANON_KEY

settings = Settings()
