"""Static configuration for duewatch.

All user-editable settings (database, job timing, default rules,
notifications, logging) live in a single JSON file for quick edits without
touching Python. Secrets stay in the environment (.env).
"""

import json
import os

from dotenv import load_dotenv

from core.config import (
    DEFAULT_EXPENSE_WINDOW_DAYS,
    DEFAULT_JOB_NAME,
    JOB_LEASE_DURATION_MS,
    LEASE_LOST_CONTINUE,
    JobConfig,
    NotificationConfig,
)
from core.clock import DEFAULT_UTC_OFFSET_MINUTES
from core.errors import ConfigError

load_dotenv()

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

# DUEWATCH_CONFIG lets deployments point at a config outside the checkout.
CONFIG_PATH = os.getenv("DUEWATCH_CONFIG") or os.path.join(PROJECT_ROOT, "config.json")


def _load_json_config() -> dict:
    """Load config.json with a flat, user-friendly schema."""

    if not os.path.exists(CONFIG_PATH):
        raise ConfigError(f"Config file not found: {CONFIG_PATH}")

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        try:
            return json.load(handle)
        except json.JSONDecodeError as exc:
            raise ConfigError(f"Config file is not valid JSON: {CONFIG_PATH}: {exc}") from exc


def _resolve_path(path: str) -> str:
    if os.path.isabs(path):
        return path
    return os.path.join(PROJECT_ROOT, path)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Where to store the SQLite database (relative paths are under the project root).
_database = _CONFIG.get("database", {})
DB_PATH = _resolve_path(_database.get("path", "duewatch.db"))

# Daily alert job settings.
# - lease_duration_ms: lease length, renewed every third of it while running
# - expense_window_days: +/- days of due dates loaded; must cover every rule offset
# - utc_offset_minutes: fixed local offset used to decide "today"
# - run_at: daily HH:MM in UTC
# - on_lease_lost: "continue" (log and finish) or "cancel" (stop the run)
_alerts = _CONFIG.get("alerts", {})
JOB = JobConfig(
    job_name=_alerts.get("job_name", DEFAULT_JOB_NAME),
    lease_duration_ms=int(_alerts.get("lease_duration_ms", JOB_LEASE_DURATION_MS)),
    expense_window_days=int(_alerts.get("expense_window_days", DEFAULT_EXPENSE_WINDOW_DAYS)),
    utc_offset_minutes=int(_alerts.get("utc_offset_minutes", DEFAULT_UTC_OFFSET_MINUTES)),
    run_at=str(_alerts.get("run_at", "06:00")),
    on_lease_lost=_alerts.get("on_lease_lost", LEASE_LOST_CONTINUE),
)

# Default rules seeded by `duewatch init-db`; admins may edit them in the DB later.
RULES_CONFIG = _CONFIG.get("rules", [])

# Notification method switches adapters without changing core logic.
_notifications = _CONFIG.get("notifications", {})
NOTIFICATIONS = NotificationConfig(
    method=_notifications.get("method", "log"),
    from_address=_notifications.get("from_address", "alerts@localhost"),
    smtp_host=_notifications.get("smtp_host"),
    smtp_port=int(_notifications.get("smtp_port", 587)),
    use_tls=bool(_notifications.get("use_tls", True)),
    timeout_seconds=float(_notifications.get("timeout_seconds", 10)),
)
SMTP_USERNAME = os.getenv("SMTP_USERNAME")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")

# Logging configuration (optional).
LOGGING = _CONFIG.get("logging", {})
