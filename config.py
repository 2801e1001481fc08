import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        data_dir: Path,
        timezone: str,
        undo_limit: int,
        scheduler_enabled: bool,
    ) -> None:
        self.data_dir = data_dir
        self.timezone = timezone
        self.undo_limit = undo_limit
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() not in {"0", "false", "no", "off"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    timezone = os.getenv("BUDGET_TIMEZONE", "Europe/Berlin")
    undo_limit = int(os.getenv("BUDGET_UNDO_LIMIT", "5"))
    if undo_limit < 1:
        raise ValueError("BUDGET_UNDO_LIMIT must be at least 1")
    scheduler_enabled = _env_flag("BUDGET_SCHEDULER_ENABLED", "1")
    return Settings(
        data_dir=data_dir,
        timezone=timezone,
        undo_limit=undo_limit,
        scheduler_enabled=scheduler_enabled,
    )
