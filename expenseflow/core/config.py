"""
Workflow Configuration

Environment-driven settings for the approval service:
- Database location
- Default budget alert threshold
- Default currency

Read once per process; tests reset the cache with ``reset_settings()``.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_bool(name: str, default: str) -> bool:
    return str(os.getenv(name, default)).strip().lower() not in {"0", "false", "no", "off"}


@dataclass
class WorkflowSettings:
    db_path: str = "expenseflow.db"
    database_url: Optional[str] = None
    allow_sqlite_fallback: bool = True
    default_alert_threshold: int = 80
    default_currency: str = "INR"
    api_key: Optional[str] = None

    def __post_init__(self):
        if not (0 <= self.default_alert_threshold <= 100):
            raise ValueError("Alert threshold must be between 0 and 100")

    @classmethod
    def from_env(cls) -> "WorkflowSettings":
        return cls(
            db_path=os.getenv("EXPENSEFLOW_DB_PATH", "expenseflow.db"),
            database_url=os.getenv("DATABASE_URL") or None,
            allow_sqlite_fallback=_env_bool("EXPENSEFLOW_DB_FALLBACK_SQLITE", "true"),
            default_alert_threshold=int(os.getenv("EXPENSEFLOW_ALERT_THRESHOLD", "80")),
            default_currency=os.getenv("EXPENSEFLOW_CURRENCY", "INR"),
            api_key=os.getenv("API_KEY") or None,
        )


_SETTINGS: Optional[WorkflowSettings] = None


def get_settings() -> WorkflowSettings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = WorkflowSettings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    global _SETTINGS
    _SETTINGS = None
