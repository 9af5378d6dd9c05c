from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


LOCAL_ENVIRONMENTS = {"development", "local", "test"}
DEFAULT_JWT_SECRET = "secret"
DEFAULT_ADMIN_PASSWORD = "admin"


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: str = Field("sqlite:///opsdash.db")
    api_title: str = Field("Ops Dashboard API")
    api_version: str = Field("1.0.0")
    environment: str = Field("development")
    log_level: str = Field("INFO")

    password_pepper: str = Field("")
    bcrypt_rounds: int = Field(12, ge=10)
    admin_password: str = Field(DEFAULT_ADMIN_PASSWORD)
    min_password_length: int = Field(6)

    jwt_secret: str = Field(DEFAULT_JWT_SECRET)
    jwt_algorithm: str = Field("HS256")
    access_token_expire_minutes: int = Field(60 * 8)

    invitation_ttl_days: int = Field(7)

    rate_limit_enabled: bool = Field(True)
    login_rate_limit: str = Field("5/minute")

    audit_log_default_limit: int = Field(100)
    audit_log_max_limit: int = Field(1000)

    @property
    def is_local(self) -> bool:
        return self.environment.lower() in LOCAL_ENVIRONMENTS

    @model_validator(mode="after")
    def _require_secrets_when_deployed(self) -> "Settings":
        # A deployed process must never hash without the pepper.
        if self.is_local:
            return self
        missing = []
        if not self.password_pepper:
            missing.append("PASSWORD_PEPPER")
        if self.jwt_secret == DEFAULT_JWT_SECRET:
            missing.append("JWT_SECRET")
        if self.admin_password == DEFAULT_ADMIN_PASSWORD:
            missing.append("ADMIN_PASSWORD")
        if missing:
            raise ValueError(
                f"{', '.join(missing)} must be set when ENVIRONMENT={self.environment}"
            )
        return self


settings = Settings()
