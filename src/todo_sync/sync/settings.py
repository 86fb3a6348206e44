"""Validated tuning knobs for the sync engine."""

from pydantic import BaseModel, field_validator

from .models import ConflictStrategy


class SyncSettings(BaseModel):
    """Sync engine settings, stored in the ``sync`` section of ``config.yaml``."""

    conflict_strategy: ConflictStrategy = ConflictStrategy.LAST_WRITE_WINS
    sync_interval: float = 300.0  # seconds between timer-triggered passes
    retry_base_delay: float = 2.0
    retry_max_delay: float = 300.0
    max_retries: int = 8
    request_timeout: float = 30.0
    sync_on_mutation: bool = True
    subscribe_realtime: bool = False

    @field_validator("sync_interval", "retry_base_delay", "request_timeout")
    @classmethod
    def validate_positive(cls, v):
        if v <= 0:
            raise ValueError("must be greater than zero")
        return v

    @field_validator("retry_max_delay")
    @classmethod
    def validate_max_delay(cls, v, info):
        base = info.data.get("retry_base_delay")
        if base is not None and v < base:
            raise ValueError("retry_max_delay must not be smaller than retry_base_delay")
        return v

    @field_validator("max_retries")
    @classmethod
    def validate_max_retries(cls, v):
        if v < 0 or v > 100:
            raise ValueError("max_retries must be between 0 and 100")
        return v
