"""
config.py

Centralized configuration management using pydantic-settings.
All modules must import settings from this file.
Direct os.getenv() calls are prohibited elsewhere.
"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application-wide settings loaded from .env file."""

    # Database
    mysql_host: str = "127.0.0.1"
    mysql_port: int = 3306
    mysql_user: str = "sentinel"
    mysql_password: str = ""
    mysql_db: str = "glucose_sentinel"

    # Overrides the MySQL fields above when set (e.g. sqlite+aiosqlite:///dev.db)
    database_url: str = ""
    create_schema: bool = False

    # Redis (Celery broker and result backend)
    redis_url: str = "redis://127.0.0.1:6379/0"
    worker_timezone: str = "UTC"

    # Email delivery (SendGrid v3 API)
    sendgrid_api_key: str = ""
    sendgrid_sender_email: str = ""
    sendgrid_base_url: str = "https://api.sendgrid.com"
    email_timeout_s: float = 10.0

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }

    @property
    def sqlalchemy_url(self) -> str:
        """Async SQLAlchemy URL for the configured database."""
        if self.database_url:
            return self.database_url
        return (
            f"mysql+aiomysql://{self.mysql_user}:{self.mysql_password}"
            f"@{self.mysql_host}:{self.mysql_port}/{self.mysql_db}"
        )


settings = Settings()
