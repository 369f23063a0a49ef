from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    # Application settings
    app_name: str = "Tenant Manager"
    app_version: str = "1.0.0"
    debug: bool = False
    environment: str = "development"
    log_level: str = "INFO"
    log_json: bool = True

    # Control-plane database
    database_url: str

    # Security settings
    secret_key: str
    access_token_expire_minutes: int = 60 * 24
    bcrypt_rounds: int = 12
    credentials_encryption_key: str | None = None
    admin_api_token: str | None = None
    api_key_rate_limit: int = 1000

    # Tenant defaults
    subdomain_suffix: str = ".app.example.com"
    tenant_db_prefix: str = "tenant_"
    default_storage_limit: int = 5 * 1024 * 1024 * 1024
    default_user_limit: int = 10
    grace_period_days: int = 7
    auto_provision: bool = True

    # Tenant database provisioning
    provisioner_admin_url: str | None = None
    tenant_schema_file: str | None = None
    backup_dir: str = "backups"
    backup_timeout_seconds: int = 300

    # Provisioning queue
    provisioning_max_retries: int = 3
    provisioning_batch_size: int = 5
    provisioning_lease_seconds: int = 30 * 60
    provisioning_interval_seconds: int = 60
    expiry_check_interval_minutes: int = 60
    scheduler_enabled: bool = True

    # Email notifications
    email_enabled: bool = False
    smtp_host: str = "localhost"
    smtp_port: int = 587
    smtp_user: str | None = None
    smtp_password: str | None = None
    smtp_from: str = "noreply@example.com"

    # Commerce platform
    commerce_api_url: str | None = None
    commerce_consumer_key: str | None = None
    commerce_consumer_secret: str | None = None
    commerce_timeout_seconds: float = 10.0
    commerce_webhook_secret: str | None = None

    # CORS settings
    allowed_origins: list[str] = ["http://localhost:3000", "http://localhost:8000"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def admin_database_url(self) -> str:
        return self.provisioner_admin_url or self.database_url


settings = Settings()
