from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

ENV_PATH = Path(__file__).resolve().parent.parent / ".env.local"


class Settings(BaseSettings):
    # Environment settings
    environment: str = "development"
    debug: bool = False
    LOG_LEVEL: str = "INFO"

    # Auth settings (JWT issued by the dashboard's identity provider)
    AUTH_JWKS_URL: str = "http://localhost:9000/.well-known/jwks.json"
    AUTH_AUDIENCE: str = "authenticated"
    AUTH_ALGORITHMS: list[str] = ["RS256", "ES256"]

    # Record store settings
    RECORD_STORE_URL: str = "http://localhost:8080"
    RECORD_STORE_API_KEY: str | None = None
    RECORD_STORE_TIMEOUT: float = 10.0
    RECORD_STORE_MAX_RETRIES: int = 3
    RECORD_STORE_BACKOFF_FACTOR: float = 0.5

    # Record store layout
    THREADS_TABLE: str = "Threads"
    MESSAGES_TABLE: str = "Conversations"
    USERS_TABLE: str = "Users"

    # Redis settings
    REDIS_URL: str = "redis://localhost:6379/0"
    REDIS_MAX_CONNECTIONS: int = 20

    # =================================================================
    # CONVERSATION CORE SETTINGS
    # =================================================================
    MUTATION_TIMEOUT_SECONDS: float = 15.0
    REFRESH_AFTER_COMMIT: bool = False
    CONVERSATION_CACHE_TTL_SECONDS: int = 600  # 10 minutes

    # Request context
    TRUST_X_FORWARDED_FOR: bool = False
    TRUSTED_PROXY_IPS: list[str] = []

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def get_record_store_config(self) -> dict:
        """
        Get record store client configuration.
        Adjust environment-specific settings based on self.environment.
        """
        config = {
            "base_url": self.RECORD_STORE_URL.rstrip("/"),
            "timeout": self.RECORD_STORE_TIMEOUT,
            "max_retries": self.RECORD_STORE_MAX_RETRIES,
            "backoff_factor": self.RECORD_STORE_BACKOFF_FACTOR,
        }

        if self.environment == "development":
            # Fail fast locally
            config.update({"timeout": min(self.RECORD_STORE_TIMEOUT, 5.0), "max_retries": 1})

        return config

    def record_store_headers(self) -> dict:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.RECORD_STORE_API_KEY:
            headers["Authorization"] = f"Bearer {self.RECORD_STORE_API_KEY}"
        return headers


settings = Settings()
