"""
Runtime configuration and logging setup.

Settings come from the environment (``PARKING_`` prefix) or a local ``.env``
file. ``get_settings()`` is cached, so every component sees the same values;
tests build their own ``Settings(...)`` instead of touching the environment.
"""

import logging
from functools import lru_cache
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_FORMAT = "%(asctime)s | %(name)-24s | %(levelname)-5s | %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"


class Settings(BaseSettings):
    """Settings for the bus, the consumers and their collaborators."""

    model_config = SettingsConfigDict(
        env_prefix="PARKING_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = "parking-events"
    log_level: str = "INFO"

    # Event bus
    bus_backend: Literal["memory", "rabbitmq"] = "memory"
    rabbitmq_host: str = "localhost"
    rabbitmq_port: int = 5672
    rabbitmq_user: str = "guest"
    rabbitmq_password: str = "guest"
    rabbitmq_vhost: str = "/"
    exchange_name: str = "estacionamento_eventos"
    connect_timeout: float = Field(default=5.0, gt=0)
    publish_timeout: float = Field(default=5.0, gt=0)
    prefetch_count: int = Field(default=10, ge=1)
    handler_workers: int = Field(default=8, ge=1)
    max_delivery_attempts: int = Field(default=5, ge=1)

    # SMTP relay (no host means e-mails are only logged)
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_username: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_start_tls: bool = True
    smtp_timeout: float = Field(default=10.0, gt=0)
    smtp_sender_name: str = "Sistema de Estacionamento"
    smtp_sender_address: str = "noreply@estacionamento.local"

    # Billing
    invoice_due_days: int = Field(default=30, ge=0)
    payment_approval_rate: float = Field(default=0.9, ge=0, le=1)


@lru_cache
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    """
    Install one console handler on the root logger.

    Safe to call more than once; later calls only change the level.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())
    if any(getattr(h, "_parking_handler", False) for h in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
    handler._parking_handler = True  # type: ignore[attr-defined]
    root.addHandler(handler)
