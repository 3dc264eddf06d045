from typing import Optional
from urllib.parse import urlsplit

from pydantic import Field, AliasChoices, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


# Known insecure default values that must be changed in production
_INSECURE_SECRET_KEYS = {
    "your-secret-key-change-this-in-production-min-32-chars",
    "changeme",
    "secret",
    "development-secret",
}
_INSECURE_DB_PASSWORDS = {
    "postgres",
    "password",
    "changeme",
}

# Providers whose OAuth app and webhook secret are read from the environment.
# Each entry maps a provider name to its webhook-secret setting.
PROVIDER_WEBHOOK_SECRET_FIELDS = {
    "GITHUB": "GITHUB_WEBHOOK_SECRET",
    "GITLAB": "GITLAB_WEBHOOK_TOKEN",
    "JIRA": "JIRA_WEBHOOK_SECRET",
    "SLACK": "SLACK_SIGNING_SECRET",
}


def _extract_password_from_database_url(database_url: str | None) -> str | None:
    if not database_url:
        return None
    try:
        return urlsplit(database_url).password
    except ValueError:
        return None


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_parse_delimiter=",", extra="ignore")
    PROJECT_NAME: str = "SkillSync"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True

    # Database settings
    POSTGRES_USER: str = "postgres"
    POSTGRES_PASSWORD: str = "postgres"
    POSTGRES_SERVER: str = Field(
        default="db",
        validation_alias=AliasChoices("POSTGRES_SERVER", "POSTGRES_HOST", "POSTGRES_HOSTNAME"),
    )
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = "skillsync"

    DB_POOL_SIZE: int = Field(default=10, description="Number of persistent DB connections")
    DB_MAX_OVERFLOW: int = Field(default=20, description="Max additional connections under load")

    # Full DB URL (preferred in CI/containers). If not provided, we build it from POSTGRES_*.
    DATABASE_URL: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL", "SQLALCHEMY_DATABASE_URI"),
    )
    SQLALCHEMY_ECHO: bool = False

    # Security settings
    SECRET_KEY: str = "your-secret-key-change-this-in-production-min-32-chars"
    # Comma-separated Fernet keys; the first one encrypts, all of them decrypt
    ENCRYPTION_KEY: Optional[str] = None
    # Shared token for the admin endpoints (manual sync, disconnect, health)
    INTERNAL_API_TOKEN: Optional[str] = None
    OAUTH_STATE_TTL_SECONDS: int = 600

    # GitHub (source hosting)
    GITHUB_API_BASE_URL: str = "https://api.github.com"
    GITHUB_OAUTH_AUTHORIZE_URL: str = "https://github.com/login/oauth/authorize"
    GITHUB_OAUTH_TOKEN_URL: str = "https://github.com/login/oauth/access_token"
    GITHUB_CLIENT_ID: Optional[str] = None
    GITHUB_CLIENT_SECRET: Optional[str] = None
    GITHUB_REDIRECT_URI: Optional[str] = None
    GITHUB_WEBHOOK_SECRET: Optional[str] = None
    MAX_COMMITS_PER_REPOSITORY: int = 30

    # GitLab (generic OAuth provider)
    GITLAB_API_BASE_URL: str = "https://gitlab.com/api/v4"
    GITLAB_OAUTH_AUTHORIZE_URL: str = "https://gitlab.com/oauth/authorize"
    GITLAB_OAUTH_TOKEN_URL: str = "https://gitlab.com/oauth/token"
    GITLAB_CLIENT_ID: Optional[str] = None
    GITLAB_CLIENT_SECRET: Optional[str] = None
    GITLAB_REDIRECT_URI: Optional[str] = None
    GITLAB_WEBHOOK_TOKEN: Optional[str] = None

    # Jira Cloud (issue tracker)
    JIRA_API_BASE_URL: str = "https://api.atlassian.com/ex/jira"
    JIRA_OAUTH_AUTHORIZE_URL: str = "https://auth.atlassian.com/authorize"
    JIRA_OAUTH_TOKEN_URL: str = "https://auth.atlassian.com/oauth/token"
    JIRA_RESOURCES_URL: str = "https://api.atlassian.com/oauth/token/accessible-resources"
    JIRA_CLIENT_ID: Optional[str] = None
    JIRA_CLIENT_SECRET: Optional[str] = None
    JIRA_REDIRECT_URI: Optional[str] = None
    JIRA_WEBHOOK_SECRET: Optional[str] = None

    # Slack (team messaging)
    SLACK_API_BASE_URL: str = "https://slack.com/api"
    SLACK_OAUTH_AUTHORIZE_URL: str = "https://slack.com/oauth/v2/authorize"
    SLACK_OAUTH_TOKEN_URL: str = "https://slack.com/api/oauth.v2.access"
    SLACK_CLIENT_ID: Optional[str] = None
    SLACK_CLIENT_SECRET: Optional[str] = None
    SLACK_REDIRECT_URI: Optional[str] = None
    SLACK_SIGNING_SECRET: Optional[str] = None
    SLACK_SIGNATURE_MAX_AGE_SECONDS: int = 300

    # Provider rate limiting / retries
    RATE_LIMIT_BACKOFF_BASE_SECONDS: float = 1.0
    RATE_LIMIT_BACKOFF_MAX_SECONDS: float = 60.0
    # Longest provider-requested wait we honour before giving up on the pass
    RATE_LIMIT_MAX_WAIT_SECONDS: float = 900.0
    ADAPTER_MAX_RETRIES: int = 5
    HTTP_TIMEOUT_SECONDS: float = 30.0

    # Sync behaviour
    SYNC_PAGE_SIZE: int = 50
    SYNC_LEASE_TTL_SECONDS: int = 1800
    TOKEN_REFRESH_MARGIN_SECONDS: int = 300
    AUTH_FAILURE_THRESHOLD: int = 3

    # Webhook ingestion
    WEBHOOK_DISPATCH_TIMEOUT_SECONDS: float = 5.0
    WEBHOOK_MAX_ATTEMPTS: int = 5
    WEBHOOK_QUEUE_MAXSIZE: int = 1000
    WEBHOOK_MAX_CONCURRENCY: int = 8
    # Seconds between background retry sweeps; 0 disables the loop
    WEBHOOK_RETRY_INTERVAL_SECONDS: float = 60.0

    @computed_field
    @property
    def IS_PRODUCTION(self) -> bool:
        return self.ENVIRONMENT.lower() == "production"

    def model_post_init(self, __context):
        """
        Validate configuration on startup. In production, fail hard if insecure defaults are detected.
        """
        if not self.DATABASE_URL:
            self.DATABASE_URL = (
                f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
                f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
            )

        if not self.IS_PRODUCTION:
            return

        errors = []

        if self.SECRET_KEY in _INSECURE_SECRET_KEYS or len(self.SECRET_KEY) < 32:
            errors.append(
                "SECRET_KEY is insecure. Generate a new key with: "
                "python -c \"import secrets; print(secrets.token_urlsafe(32))\""
            )

        db_url_password = _extract_password_from_database_url(self.DATABASE_URL)
        if db_url_password and db_url_password in _INSECURE_DB_PASSWORDS:
            errors.append("DATABASE_URL contains an insecure password.")

        if not self.ENCRYPTION_KEY:
            errors.append(
                "ENCRYPTION_KEY is required in production. "
                "Generate with: python -c \"from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())\""
            )

        if not self.INTERNAL_API_TOKEN:
            errors.append("INTERNAL_API_TOKEN is required in production.")

        # An enabled provider without a webhook secret would accept forged events
        for provider, secret_field in PROVIDER_WEBHOOK_SECRET_FIELDS.items():
            if getattr(self, f"{provider}_CLIENT_ID") and not getattr(self, secret_field):
                errors.append(f"{secret_field} is required when {provider}_CLIENT_ID is set.")

        if self.DEBUG:
            errors.append("DEBUG must be False in production.")

        if errors:
            error_msg = "Production configuration errors:\n" + "\n".join(f"  - {e}" for e in errors)
            raise ValueError(error_msg)


settings = Settings()
