from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./dynacrud.db"
    SQL_ECHO: bool = False

    SECRET_KEY: str = "change-me"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30
    CSRF_TOKEN_EXPIRE_MINUTES: int = 60
    # Submissions through the HTTP API must carry a csrf_token when enabled
    CSRF_ENABLED: bool = False

    # Seconds a table schema stays in the cache before it is re-read
    SCHEMA_CACHE_TTL: int = 3600

    # Upper bound for per_page on list requests
    MAX_PER_PAGE: int = 100

    AUDIT_ENABLED: bool = False
    AUDIT_TABLE: str = "audit_log"
    WORKFLOW_HISTORY_TABLE: str = "workflow_history"

    # Tables without a "permissions" block allow everything unless this is set
    PERMISSIONS_FAIL_CLOSED: bool = False

    # This tells Pydantic to read from the .env file
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


# Create a single instance of the settings to use everywhere
settings = Settings()
