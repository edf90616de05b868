from pydantic_settings import BaseSettings
from pydantic import field_validator
from typing import List, Optional


class Settings(BaseSettings):
    """HealLoop runtime settings, loaded from the environment and .env"""

    # Application
    APP_NAME: str = "HealLoop"
    APP_VERSION: str = "1.0.0"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    API_V1_PREFIX: str = "/api/v1"

    # Server
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 8000
    CORS_ORIGINS_STR: str = "http://localhost:3000,http://localhost:5173"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = ""

    # Sandbox (Docker)
    SANDBOX_IMAGE: str = "node:20-alpine"
    SANDBOX_WORKDIR: str = "/app"
    SANDBOX_DOCKER_HOST: Optional[str] = None
    SANDBOX_PUBLIC_URL: str = ""
    SANDBOX_NETWORK: Optional[str] = None
    SANDBOX_MEMORY_LIMIT: str = "1g"
    SANDBOX_CPU_LIMIT: float = 1.0
    SANDBOX_LABEL: str = "healloop.sandbox"

    # Install / start timeouts
    INSTALL_TIMEOUT_SECONDS: float = 90.0
    RECOVERY_INSTALL_TIMEOUT_SECONDS: float = 120.0
    DEV_SERVER_EARLY_EXIT_SECONDS: float = 7.0
    RUNTIME_STARTUP_TIMEOUT_SECONDS: float = 45.0

    # Post-readiness page check
    RUNTIME_VALIDATION_ENABLED: bool = True
    RUNTIME_VALIDATION_ATTEMPTS: int = 3
    RUNTIME_VALIDATION_RETRY_DELAY_SECONDS: float = 1.0
    RUNTIME_VALIDATION_COMMAND_TIMEOUT_SECONDS: float = 20.0
    RUNTIME_VALIDATION_FETCH_TIMEOUT_MS: int = 8000

    # Pain detector
    PAIN_DEBOUNCE_SECONDS: float = 3.0
    PAIN_CACHE_MAX_ENTRIES: int = 100

    # Auto-heal
    AUTO_HEAL_ENABLED: bool = True
    AUTO_HEAL_COOLDOWN_SECONDS: float = 30.0

    # Execution retry
    EXECUTION_MAX_RETRIES: int = 3
    RATE_LIMIT_RETRY_DELAY_MS: int = 5000
    TIMEOUT_RETRY_DELAY_MS: int = 1000
    TOOL_ERROR_RETRY_DELAY_MS: int = 1000

    # Claude API
    ANTHROPIC_API_KEY: str = ""
    CLAUDE_MODEL: str = "claude-sonnet-4-5"
    CLAUDE_MAX_TOKENS: int = 8192
    CLAUDE_TEMPERATURE: float = 0.2
    CLAUDE_REQUEST_TIMEOUT: float = 300.0
    CLAUDE_CONNECT_TIMEOUT: float = 30.0
    CLAUDE_MAX_TOOL_STEPS: int = 15

    @field_validator("ENVIRONMENT", mode="before")
    @classmethod
    def normalize_environment(cls, v):
        return str(v).strip().lower() if v else "development"

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        return str(v).strip().upper() if v else "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env that aren't defined in Settings

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """CORS origins parsed from the comma separated CORS_ORIGINS_STR"""
        return [origin.strip() for origin in self.CORS_ORIGINS_STR.split(",") if origin.strip()]


# Create settings instance
settings = Settings()
