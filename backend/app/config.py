from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PROTECTED_OPERATIONS = [
    "restart",
    "reboot",
    "shutdown",
    "heal",
    "backup",
    "sentinel",
    "whitelist",
    "purge",
    "self-destruct",
]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    biolock_enabled: bool = True
    command_prefix: str = "!"
    protected_operations: list[str] = list(DEFAULT_PROTECTED_OPERATIONS)

    # Session and challenge policy
    session_timeout_minutes: int = 60
    session_sweep_interval_seconds: int = 300
    max_failed_attempts: int = 5
    challenge_timeout_seconds: float = 60.0

    # Registration sub-flow (confirm -> passphrase -> repeat passphrase)
    registration_prompt_timeout_seconds: float = 30.0
    registration_timeout_seconds: float = 120.0
    registration_confirm_timeout_seconds: float = 60.0
    min_passphrase_length: int = 8

    # Emergency override
    override_enabled: bool = False
    override_secret: str = ""  # NEVER log this value

    # Audit forwarding (Discord-style webhook)
    audit_webhook_url: str = ""
    audit_webhook_timeout_seconds: float = 10.0

    # Argon2id cost parameters for passphrase digests (OWASP defaults)
    argon2_time_cost: int = 3
    argon2_memory_cost: int = 65536
    argon2_parallelism: int = 1

    data_dir: Path = Path("/app/data")
    db_url: str = "sqlite:////app/data/biolock.db"

    @model_validator(mode="after")
    def _check_override_secret(self) -> Settings:
        self.override_secret = self.override_secret.strip()
        if self.override_enabled and not self.override_secret:
            raise ValueError(
                "OVERRIDE_SECRET is not set but OVERRIDE_ENABLED is true. An "
                "empty override secret would let anyone bypass BioLock. Set "
                "OVERRIDE_SECRET in .env or disable the override."
            )
        return self

    @model_validator(mode="after")
    def _check_limits(self) -> Settings:
        for name in (
            "session_timeout_minutes",
            "session_sweep_interval_seconds",
            "max_failed_attempts",
            "challenge_timeout_seconds",
            "registration_prompt_timeout_seconds",
            "registration_timeout_seconds",
            "registration_confirm_timeout_seconds",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name.upper()} must be > 0, got {value}")
        return self


@lru_cache
def get_settings() -> Settings:
    return Settings()
