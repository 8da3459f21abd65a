"""Service-layer configuration loaded from environment variables."""

from __future__ import annotations

from typing import Self

from pydantic import SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServiceSettings(BaseSettings):
    """Settings for the webhook workers, schedulers and processor client.

    All values can be overridden via environment variables prefixed with
    ``PAYSYNC_SERVICE_`` (e.g. ``PAYSYNC_SERVICE_WORKER_COUNT=8``) or
    through a ``.env`` file in the working directory.
    """

    model_config = SettingsConfigDict(
        env_prefix="PAYSYNC_SERVICE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Processor credentials.
    stripe_secret_key: SecretStr | None = None
    stripe_webhook_secret: SecretStr | None = None
    stripe_max_network_retries: int = 2

    # Deferred event processing.
    worker_count: int = 4
    queue_max_size: int = 1000

    # Periodic workers.
    retry_sweep_interval_seconds: float = 30.0
    mirror_sweep_interval_seconds: float = 60.0
    mirror_batch_size: int = 25

    # Metadata marker the platform's own invoice-creation path stamps on
    # invoices and payment intents.
    platform_marker_key: str = "platform"
    platform_marker_value: str = "PAYSYNC"

    # Internal billing notifications (mirrored payments, retry exhaustion).
    billing_notify_url: str | None = None
    billing_notify_secret: SecretStr | None = None
    billing_notify_timeout: float = 5.0

    # Logging.
    log_level: str = "INFO"
    structured_logging: bool = False

    @model_validator(mode="after")
    def _validate_pool(self) -> Self:
        if self.worker_count < 1:
            raise ValueError("worker_count must be at least 1")
        if self.queue_max_size < 1:
            raise ValueError("queue_max_size must be at least 1")
        return self

    @property
    def platform_metadata(self) -> dict[str, str]:
        """Metadata stamped on every invoice and charge the platform creates."""
        return {self.platform_marker_key: self.platform_marker_value}

    def is_platform_marked(self, metadata: dict | None) -> bool:
        """True when *metadata* carries the platform-origin marker."""
        if not metadata:
            return False
        return metadata.get(self.platform_marker_key) == self.platform_marker_value
