"""Configuration management using environment variables"""
import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

# Development placeholder for secrets (not secure - for local testing only)
DEV_SECRET_PLACEHOLDER = "test_secret_dev"


class Settings:
    """Application settings loaded once at import time"""

    def __init__(self):
        # Environment
        self.environment = os.getenv("ENVIRONMENT", "development")

        # JWT signing + Fernet key derivation share SESSION_SECRET
        if self.environment == "production":
            self.session_secret = self._get_required("SESSION_SECRET")
            if self.session_secret == DEV_SECRET_PLACEHOLDER:
                raise ValueError(
                    f"Cannot use test secret '{DEV_SECRET_PLACEHOLDER}' in production mode. "
                    "Set a real SESSION_SECRET."
                )
        else:
            session_secret_env = os.getenv("SESSION_SECRET", "")
            if session_secret_env:
                self.session_secret = session_secret_env
            else:
                # Generate a random secret on startup for development
                import secrets
                self.session_secret = secrets.token_urlsafe(32)
                self._using_ephemeral_secret = True
                import logging
                logging.getLogger(__name__).warning(
                    "⚠️  No SESSION_SECRET provided - generated random secret for this session. "
                    "JWT tokens and encrypted bank accounts will not survive a restart. "
                    "Set SESSION_SECRET in .env."
                )

        self.jwt_algorithm = os.getenv("JWT_ALGORITHM", "HS256")
        self.jwt_expiration_hours = int(os.getenv("JWT_EXPIRATION_HOURS", "24"))
        self.refresh_token_expiration_days = int(os.getenv("REFRESH_TOKEN_EXPIRATION_DAYS", "7"))

        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", "8000"))

        # Database configuration (SQLite by default - any async SQLAlchemy URL works)
        self.database_url = os.getenv(
            "DATABASE_URL",
            "sqlite+aiosqlite:///./sol_numerique.db"
        )

        # Frontend URL for Stripe success/cancel redirects
        self.frontend_url = os.getenv("FRONTEND_URL", "http://localhost:3000")

        # CORS origins (comma-separated list)
        cors_origins_env = os.getenv("CORS_ORIGINS", "")
        if cors_origins_env:
            self.cors_origins = cors_origins_env
        elif self.frontend_url and self.frontend_url != "http://localhost:3000":
            self.cors_origins = self.frontend_url
        else:
            self.cors_origins = ""

        # Receipt uploads
        self.upload_dir = os.getenv("UPLOAD_DIR", "uploads/receipts")
        self.max_receipt_size = int(os.getenv("MAX_RECEIPT_SIZE", str(5 * 1024 * 1024)))  # 5MB

        # Stripe
        self.stripe_secret_key = os.getenv("STRIPE_SECRET_KEY", "")
        self.stripe_webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        self.stripe_currency = os.getenv("STRIPE_CURRENCY", "eur")
        if self.environment == "production" and not self.stripe_webhook_secret:
            import logging
            logging.getLogger(__name__).warning(
                "⚠️  STRIPE_WEBHOOK_SECRET not set - Stripe webhooks will be rejected"
            )

        # SMTP (email disabled when SMTP_HOST is empty)
        self.smtp_host = os.getenv("SMTP_HOST", "")
        self.smtp_port = int(os.getenv("SMTP_PORT", "587"))
        self.smtp_user = os.getenv("SMTP_USER", "")
        self.smtp_password = os.getenv("SMTP_PASSWORD", "")
        self.smtp_use_tls = os.getenv("SMTP_USE_TLS", "true").lower() == "true"
        self.email_from = os.getenv("EMAIL_FROM", "Sol Numérique <noreply@solnumerique.local>")

        # Display currency for receipts and exports
        self.currency_label = os.getenv("CURRENCY_LABEL", "HTG")

        # Bootstrap admin account (created at startup when both are set)
        self.admin_email = os.getenv("ADMIN_EMAIL", "").strip().lower()
        self.admin_password = os.getenv("ADMIN_PASSWORD", "")

        # Periodic sweep of active sols (0 = disabled)
        self.tour_check_interval_seconds = int(os.getenv("TOUR_CHECK_INTERVAL_SECONDS", "0"))

        # Logging
        self.log_level = os.getenv("LOG_LEVEL", "INFO")

    def _get_required(self, key: str) -> str:
        """Get required environment variable or raise error."""
        value = os.getenv(key, "").strip()
        if not value:
            raise ValueError(
                f"Missing required environment variable: {key}. "
                f"Required in production mode."
            )
        return value

    @property
    def stripe_enabled(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def email_enabled(self) -> bool:
        return bool(self.smtp_host)


# Global settings instance
settings = Settings()
