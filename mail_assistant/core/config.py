"""Application configuration with environment variables."""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"

    # App Version
    VERSION: str = "1.0.0"

    # Database
    DATABASE_URL: str = "sqlite:///./mail_assistant.db"

    # Session Token (supports key rotation)
    JWT_SECRET: str = "dev-secret-change-in-production"
    JWT_SECRET_PREVIOUS: str = ""  # Set during rotation, clear after
    JWT_EXPIRES_HOURS: int = 24 * 7

    # Google OAuth (used to refresh expired Gmail access tokens)
    GOOGLE_CLIENT_ID: str = ""
    GOOGLE_CLIENT_SECRET: str = ""

    # Gmail push notifications
    # Format: projects/PROJECT_ID/topics/TOPIC_NAME
    GMAIL_PUSH_TOPIC: str = ""
    GMAIL_WATCH_LABEL_IDS: str = "INBOX"
    WATCH_RENEW_MARGIN_MINUTES: int = 60
    PUSH_MAX_MESSAGES_PER_SYNC: int = 5
    GMAIL_REQUEST_TIMEOUT_SECONDS: float = 30.0

    # Server-sent events
    SSE_HEARTBEAT_SECONDS: float = 30.0

    # Token Encryption (for storing Google OAuth tokens)
    FERNET_KEY: str = ""  # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

    # CORS
    CORS_ORIGINS: str = "http://localhost:5173"

    # Frontend (for CORS defaults and links)
    FRONTEND_URL: str = "http://localhost:5173"

    # Error Tracking (optional, set in production)
    SENTRY_DSN: str = ""

    # Rate Limiting (requests per minute)
    RATE_LIMIT_WEBHOOK: int = 600  # Pub/Sub pushes
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    # OpenTelemetry
    OTEL_ENABLED: bool = False
    OTEL_SERVICE_NAME: str = "mail-assistant-api"
    OTEL_EXPORTER_OTLP_ENDPOINT: str = ""
    OTEL_EXPORTER_OTLP_HEADERS: str = ""
    OTEL_SAMPLE_RATE: float = 0.1

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS_ORIGINS into a list, always including the frontend."""
        origins = [o.strip() for o in self.CORS_ORIGINS.split(",") if o.strip()]
        if self.FRONTEND_URL and self.FRONTEND_URL not in origins:
            origins.append(self.FRONTEND_URL)
        return origins

    @property
    def jwt_secrets(self) -> list[str]:
        """Returns list of valid secrets (current first, then previous if set)."""
        secrets = [self.JWT_SECRET]
        if self.JWT_SECRET_PREVIOUS:
            secrets.append(self.JWT_SECRET_PREVIOUS)
        return secrets

    @property
    def watch_label_ids(self) -> list[str]:
        """Parse GMAIL_WATCH_LABEL_IDS into a de-duplicated list."""
        out: list[str] = []
        for item in self.GMAIL_WATCH_LABEL_IDS.split(","):
            token = item.strip()
            if token and token not in out:
                out.append(token)
        return out

    @property
    def push_configured(self) -> bool:
        return bool(self.GMAIL_PUSH_TOPIC.strip())


settings = Settings()
