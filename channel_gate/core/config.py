"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from pydantic import field_validator
from pydantic_settings import BaseSettings


# Published YooKassa notification source networks.
YOOKASSA_NETWORKS_DEFAULT = (
    "185.71.76.0/27,"
    "185.71.77.0/27,"
    "77.75.153.0/25,"
    "77.75.156.11/32,"
    "77.75.156.35/32,"
    "77.75.154.128/25,"
    "2a02:5180::/32"
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    # Trusted proxy IPs (comma-separated). Used for X-Forwarded-For in production.
    trusted_proxy_ips: str = ""

    # ===========================================
    # DATABASE (PostgreSQL)
    # ===========================================
    database_url: str  # Required, no default

    # ===========================================
    # REDIS & CELERY
    # ===========================================
    redis_url: str  # Required, no default
    celery_broker_url: str  # Required, no default
    celery_result_backend: str  # Required, no default

    # ===========================================
    # TELEGRAM BOT
    # ===========================================
    telegram_bot_token: str  # Required, no default
    # Закрытый канал, в который выдаются одноразовые ссылки. Пример: -1001234567890
    channel_id: str  # Required, no default
    # Группа операторов для платёжных документов. Пример: -1009876543210
    payment_group_id: str  # Required, no default
    # Telegram id операторов через запятую (уведомления об оплатах и ошибках)
    admin_chat_ids: str = ""

    # ===========================================
    # YOOKASSA
    # ===========================================
    yookassa_shop_id: str  # Required, no default
    yookassa_secret_key: str  # Required, no default
    yookassa_api_url: str = "https://api.yookassa.ru/v3"
    yookassa_timeout_seconds: float = 15.0
    yookassa_currency: str = "RUB"
    # Куда YooKassa вернёт браузер после оплаты; к URL добавляется ?paymentId=<correlation id>
    return_url: str  # Required, no default
    # Источники уведомлений YooKassa (CIDR через запятую). Проверка обязательна и не отключается.
    yookassa_webhook_networks: str = YOOKASSA_NETWORKS_DEFAULT

    # ===========================================
    # CREDENTIALS (invite links)
    # ===========================================
    credential_ttl_hours: int = 24  # 0 = ссылка без срока действия
    credential_issue_max_retries: int = 3
    credential_retry_base_delay_seconds: float = 1.0

    # ===========================================
    # CHECKOUT
    # ===========================================
    purchase_rate_limit: int = 3
    purchase_rate_window_seconds: int = 60

    # ===========================================
    # SWEEPER (fallback trigger for lost webhooks)
    # ===========================================
    sweeper_lookback_hours: int = 24
    sweeper_batch_size: int = 100

    # Claim without link and without recorded error older than this counts as failed (redrive)
    stale_claim_minutes: int = 15

    # ===========================================
    # ADMIN API
    # ===========================================
    admin_api_key: str | None = None  # Optional; admin routes are closed without it

    # ===========================================
    # LOGGING
    # ===========================================
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    # ===========================================
    # STATE MANAGEMENT
    # ===========================================
    idempotency_ttl: int = 300  # 5 minutes
    club_settings_ttl_seconds: int = 60

    @field_validator("admin_chat_ids", "trusted_proxy_ips", "yookassa_webhook_networks")
    @classmethod
    def strip_csv(cls, v: str) -> str:
        """Normalize comma-separated values."""
        return ",".join(part.strip() for part in v.split(",") if part.strip())

    @field_validator("credential_issue_max_retries")
    @classmethod
    def validate_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("credential_issue_max_retries must be >= 0")
        return v

    @property
    def admin_chat_ids_list(self) -> list[str]:
        """Operator chat ids, de-duplicated, in configured order."""
        return list(dict.fromkeys(x for x in self.admin_chat_ids.split(",") if x))

    @property
    def trusted_proxy_ips_set(self) -> set[str]:
        """Get trusted proxy IPs as a set."""
        return {ip for ip in self.trusted_proxy_ips.split(",") if ip}

    @property
    def yookassa_webhook_networks_list(self) -> list[str]:
        return [n for n in self.yookassa_webhook_networks.split(",") if n]

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Игнорировать неизвестные поля из .env


settings = Settings()
