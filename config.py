import os


class Config:
    def __init__(self) -> None:
        self.APP_ENV = os.getenv("APP_ENV", "development")
        self.APP_VERSION = os.getenv("APP_VERSION", "dev")
        self.HOST = os.getenv("HOST", "0.0.0.0")
        self.PORT = int(os.getenv("PORT", "5002"))

        self.DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./labour.db")

        self.GOOGLE_CLIENT_ID = os.getenv("GOOGLE_CLIENT_ID", "")
        self.SESSION_TTL_MINUTES = int(os.getenv("SESSION_TTL_MINUTES", "720"))
        self.APP_TIMEZONE = os.getenv("APP_TIMEZONE", "Asia/Kolkata")

        self.ALLOWED_ORIGINS = [
            s.strip() for s in (os.getenv("ALLOWED_ORIGINS", "*") or "*").split(",") if s.strip()
        ]

        self.RATE_LIMIT_DEFAULT = os.getenv("RATE_LIMIT_DEFAULT", "300 per minute")
        self.RATE_LIMIT_GLOBAL = os.getenv("RATE_LIMIT_GLOBAL", "2000 per minute")
        self.RATE_LIMIT_LOGIN = os.getenv("RATE_LIMIT_LOGIN", "30 per minute")

        self.LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

        # Tests/dev only: accept `TEST:<email>` instead of a Google ID token.
        self.AUTH_ALLOW_TEST_TOKENS = os.getenv("AUTH_ALLOW_TEST_TOKENS", "0") == "1"

        # Cron callers present this in X-Internal-Token and run as SYSTEM.
        self.INTERNAL_CRON_TOKEN = os.getenv("INTERNAL_CRON_TOKEN", "").strip()

        # Outbound email (labourer visa notice). Empty URL: emails are logged and skipped.
        self.MAIL_WEBHOOK_URL = os.getenv("MAIL_WEBHOOK_URL", "").strip()
        self.MAIL_API_KEY = os.getenv("MAIL_API_KEY", "").strip()
        self.MAIL_FROM = os.getenv("MAIL_FROM", "no-reply@labour.local").strip()
        self.MAIL_TIMEOUT_SECONDS = float(os.getenv("MAIL_TIMEOUT_SECONDS", "10"))

        self.OVERDUE_REMINDER_DAYS = int(os.getenv("OVERDUE_REMINDER_DAYS", "7"))

        # In-process daily reminder run. Multi-instance deployments should call
        # POST /api/cron/overdue-labour-reminders from one external cron instead.
        self.ENABLE_SCHEDULER = os.getenv("ENABLE_SCHEDULER", "0") == "1"
        self.SCHEDULER_REMINDER_HOUR = max(0, min(23, int(os.getenv("SCHEDULER_REMINDER_HOUR", "9"))))
        self.SCHEDULER_REMINDER_MINUTE = max(0, min(59, int(os.getenv("SCHEDULER_REMINDER_MINUTE", "0"))))

    @property
    def IS_PRODUCTION(self) -> bool:
        return str(self.APP_ENV or "").strip().lower() in {"prod", "production"}

    def validate(self) -> None:
        if self.IS_PRODUCTION and str(self.DATABASE_URL or "").startswith("sqlite"):
            raise RuntimeError("DATABASE_URL must be Postgres in production")

        if self.IS_PRODUCTION and not str(self.GOOGLE_CLIENT_ID or "").strip():
            raise RuntimeError("GOOGLE_CLIENT_ID must be set in production")

        if self.IS_PRODUCTION and any(str(o or "").strip() == "*" for o in (self.ALLOWED_ORIGINS or [])):
            raise RuntimeError("ALLOWED_ORIGINS must not contain '*' in production")

        if self.IS_PRODUCTION and self.AUTH_ALLOW_TEST_TOKENS:
            raise RuntimeError("AUTH_ALLOW_TEST_TOKENS must be disabled in production")

        if self.SESSION_TTL_MINUTES <= 0:
            raise RuntimeError("SESSION_TTL_MINUTES must be positive")

        if self.OVERDUE_REMINDER_DAYS <= 0:
            raise RuntimeError("OVERDUE_REMINDER_DAYS must be positive")
