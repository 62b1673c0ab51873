"""Shared configuration."""
from typing import Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Base settings for the payment result service."""

    # Service info
    service_name: str = "payment-result-service"
    service_port: int = 8010

    # Platform API
    platform_api_url: str = "http://localhost:3003/api"
    platform_api_timeout: float = 30.0
    platform_api_token: Optional[str] = None

    # Database (pending-check watchlist)
    postgres_user: str = "postgres"
    postgres_password: str = "postgres"
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "payment_result_db"
    database_url_override: Optional[str] = None

    # RabbitMQ
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    publish_events: bool = False

    # Pending-status poller
    poll_interval: float = 10.0
    poll_check_timeout: float = 5.0

    # Presenter hints
    checkout_redirect_delay: int = 3
    success_redirect_seconds: int = 10

    # Logging
    log_level: str = "INFO"

    @property
    def database_url(self) -> str:
        """Get async database connection URL."""
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def rabbitmq_url(self) -> str:
        """Get RabbitMQ connection URL."""
        return (
            f"amqp://{self.rabbitmq_user}:{self.rabbitmq_password}"
            f"@{self.rabbitmq_host}:{self.rabbitmq_port}/"
        )

    class Config:
        env_file = ".env"
        case_sensitive = False
