"""Application settings resolved once from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    app_name: str = "Fleet Timeline Scheduler"
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    log_format: str = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
    database_path: Path = PROJECT_ROOT / "data" / "fleet_scheduler.db"
    seed_demo_fleet: bool = True

    # Time grid scale. Day/week views use one cell per hour, month view one cell per day.
    timeline_hour_cell_width: int = 80
    timeline_month_cell_width: int = 60
    timeline_min_visible_minutes: int = 15
    timeline_default_view: str = "day"

    # Gesture handling.
    gesture_drag_threshold_px: int = 5
    gesture_snap_minutes: int = 30
    maintenance_block_minutes: int = 1440

    notification_history_size: int = 50


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Build settings from the environment; cached for the process lifetime."""
    defaults = Settings()
    database_path = os.getenv("FLEET_DB_PATH")
    return Settings(
        app_name=os.getenv("FLEET_APP_NAME", defaults.app_name),
        app_version=os.getenv("FLEET_APP_VERSION", defaults.app_version),
        log_level=os.getenv("LOG_LEVEL", defaults.log_level),
        log_format=os.getenv("FLEET_LOG_FORMAT", defaults.log_format),
        database_path=Path(database_path) if database_path else defaults.database_path,
        seed_demo_fleet=_env_bool("FLEET_SEED_DEMO", defaults.seed_demo_fleet),
        timeline_hour_cell_width=_env_int(
            "FLEET_HOUR_CELL_WIDTH", defaults.timeline_hour_cell_width
        ),
        timeline_month_cell_width=_env_int(
            "FLEET_MONTH_CELL_WIDTH", defaults.timeline_month_cell_width
        ),
        timeline_min_visible_minutes=_env_int(
            "FLEET_MIN_VISIBLE_MINUTES", defaults.timeline_min_visible_minutes
        ),
        timeline_default_view=os.getenv("FLEET_DEFAULT_VIEW", defaults.timeline_default_view),
        gesture_drag_threshold_px=_env_int(
            "FLEET_DRAG_THRESHOLD_PX", defaults.gesture_drag_threshold_px
        ),
        gesture_snap_minutes=_env_int("FLEET_SNAP_MINUTES", defaults.gesture_snap_minutes),
        maintenance_block_minutes=_env_int(
            "FLEET_MAINTENANCE_BLOCK_MINUTES", defaults.maintenance_block_minutes
        ),
        notification_history_size=_env_int(
            "FLEET_NOTIFICATION_HISTORY", defaults.notification_history_size
        ),
    )
