"""
Application configuration.
All settings are loaded from environment variables.
Use env.example as a reference for required variables.
"""
from cryptography.fernet import Fernet
from pydantic import field_validator
from pydantic_settings import BaseSettings


DEFAULT_CREDIT_PACKAGES = (
    '[{"id": "package1", "name": "Package 1", "price": "10.00", "credits": 100},'
    ' {"id": "package2", "name": "Package 2", "price": "30.00", "credits": 400},'
    ' {"id": "package3", "name": "Package 3", "price": "100.00", "credits": 1200}]'
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.

    IMPORTANT: Credentials have no defaults - they MUST be set in .env file.
    """

    # ===========================================
    # APPLICATION
    # ===========================================
    # Comma-separated, e.g. http://localhost:3000,https://travel.example.com. Empty = built-in list.
    cors_origins: str = ""

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
    # AUTH (access tokens issued by the identity backend)
    # ===========================================
    jwt_secret_key: str  # Required, no default
    jwt_algorithm: str = "HS256"
    # Empty string disables the audience check.
    jwt_audience: str = "authenticated"

    # ===========================================
    # SESSION HANDOFF
    # ===========================================
    # Fernet key used to encrypt tokens parked in session_handoffs.
    handoff_encryption_key: str  # Required, no default
    handoff_ttl_seconds: int = 600  # 10 minutes
    handoff_retention_hours: int = 24

    # ===========================================
    # ORDERS & RECONCILIATION
    # ===========================================
    order_expiry_grace_seconds: int = 60
    sweep_batch_size: int = 200
    # JSON list of {id, name, price, credits}; price in yuan.
    credit_packages: str = DEFAULT_CREDIT_PACKAGES
    purchase_rate_limit: int = 3  # purchases per window
    purchase_rate_window_seconds: int = 60

    # ===========================================
    # PAYMENT GATEWAY - PROVIDER SELECTION
    # ===========================================
    payment_provider: str = "alipay"
    payment_subject: str = "Travel credits top-up"
    # Browser lands here after the gateway; hid and out_trade_no are appended.
    payment_return_url: str = "http://localhost:8000/payments/return"
    payment_gateway_timeout: float = 5.0
    payment_gateway_retry_max_attempts: int = 3
    payment_gateway_retry_backoff_seconds: float = 0.5

    # ===========================================
    # ALIPAY (Provider: alipay)
    # ===========================================
    alipay_gateway_url: str = "https://openapi.alipay.com/gateway.do"
    alipay_app_id: str = ""
    alipay_private_key: str = ""  # PEM, literal \n accepted
    alipay_public_key: str = ""  # PEM, used to verify notifications and query responses
    alipay_notify_url: str = ""

    # ===========================================
    # CIRCUIT BREAKER
    # ===========================================
    cb_failure_threshold: int = 5
    cb_open_seconds: int = 30

    # ===========================================
    # LOGGING
    # ===========================================
    request_id_header: str = "X-Request-Id"
    log_file: str | None = None
    log_max_bytes: int = 10_000_000
    log_backup_count: int = 5

    @field_validator("handoff_encryption_key")
    @classmethod
    def validate_handoff_key(cls, v: str) -> str:
        """Fail at startup rather than on the first purchase."""
        try:
            Fernet(v.encode())
        except (ValueError, TypeError) as exc:
            raise ValueError("handoff_encryption_key must be a urlsafe base64 Fernet key") from exc
        return v

    @field_validator("handoff_ttl_seconds")
    @classmethod
    def validate_handoff_ttl(cls, v: int) -> int:
        """Handoff records carry live credentials: minutes, not hours."""
        if not 60 <= v <= 3600:
            raise ValueError("handoff_ttl_seconds must be between 60 and 3600")
        return v

    @field_validator("jwt_secret_key")
    @classmethod
    def validate_jwt_secret(cls, v: str) -> str:
        if len(v) < 16:
            raise ValueError("jwt_secret_key must be at least 16 characters")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


settings = Settings()
