import logging
import os

from pydantic_settings import BaseSettings
from pydantic import ConfigDict
from typing import List, Optional

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    CONFIG_STRICT: bool = False

    # Database (unset = in-memory stores)
    DATABASE_URL: Optional[str] = None
    TEST_DATABASE_URL: Optional[str] = None

    # Catalog sources (unset = built-in defaults)
    TIER_CATALOG_PATH: Optional[str] = None
    PROMPT_CATALOG_PATH: Optional[str] = None

    # Usage classification thresholds (percent of monthly limit)
    USAGE_WARNING_THRESHOLD: float = 75.0
    USAGE_CRITICAL_THRESHOLD: float = 90.0

    # Upgrade prompts
    PROMPTS_ENABLED: bool = True
    PROMPT_DISMISS_COOLDOWN_HOURS: float = 24.0
    PROMPT_DEFAULT_SNOOZE_HOURS: float = 24.0
    PROMPT_PENDING_TTL_MINUTES: float = 30.0

    # HTTP
    CORS_ALLOWED_ORIGINS: str = "*"  # comma-separated

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def cors_origins(self) -> List[str]:
        return [origin.strip() for origin in self.CORS_ALLOWED_ORIGINS.split(",") if origin.strip()]


settings = Settings()


def validate_config(strict: Optional[bool] = None, settings_obj: Optional[Settings] = None, logger: Optional[logging.Logger] = None) -> bool:
    """Validate gating configuration.

    In strict mode raise RuntimeError; otherwise emit warnings only.
    """
    cfg = settings_obj or settings
    log = logger or logging.getLogger("tiergate")
    strict_mode = strict if strict is not None else getattr(cfg, "CONFIG_STRICT", False)

    problems = []

    warning = cfg.USAGE_WARNING_THRESHOLD
    critical = cfg.USAGE_CRITICAL_THRESHOLD
    if not (0 <= warning <= critical <= 100):
        problems.append(
            f"usage thresholds must satisfy 0 <= warning ({warning}) <= critical ({critical}) <= 100"
        )

    for key in ("TIER_CATALOG_PATH", "PROMPT_CATALOG_PATH"):
        path = getattr(cfg, key, None)
        if path and not os.path.isfile(path):
            problems.append(f"{key} points to a missing file: {path}")

    for key in ("PROMPT_DISMISS_COOLDOWN_HOURS", "PROMPT_DEFAULT_SNOOZE_HOURS", "PROMPT_PENDING_TTL_MINUTES"):
        if getattr(cfg, key) < 0:
            problems.append(f"{key} must not be negative")

    if problems:
        message = "Invalid configuration: " + "; ".join(problems)
        if strict_mode:
            raise RuntimeError(message)
        log.warning(message)
        return False

    return True
