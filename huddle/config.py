"""Global configuration for Huddle."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

DEFAULTS: dict[str, Any] = {
    "database_url": "",
    "public_base_url": "",
    "events_per_page": 20,
    "completed_after_hours": 4,
    "status_refresh_minutes": 15,
    "sqlite_vacuum_hours": 12,
    "enable_scheduler": True,
    "default_timezone": "UTC",
    "profile_picture_max_bytes": 5 * 1024 * 1024,
    "image_max_bytes": 10 * 1024 * 1024,
    "seed_profiles": 12,
    "seed_sections": 3,
    "seed_events_per_section": 4,
    "seed_rsvps_per_event": 6,
    "seed_private_percent": 10,
    "app_host": "0.0.0.0",
    "app_port": 8000,
}

TYPE_CASTERS: dict[str, Callable[[Any], Any]] = {
    "database_url": str,
    "public_base_url": str,
    "events_per_page": int,
    "completed_after_hours": int,
    "status_refresh_minutes": int,
    "sqlite_vacuum_hours": int,
    "enable_scheduler": bool,
    "default_timezone": str,
    "profile_picture_max_bytes": int,
    "image_max_bytes": int,
    "seed_profiles": int,
    "seed_sections": int,
    "seed_events_per_section": int,
    "seed_rsvps_per_event": int,
    "seed_private_percent": int,
    "app_host": str,
    "app_port": int,
}


@dataclass(frozen=True)
class Settings:
    base_dir: Path
    data_dir: Path
    database_path: Path
    storage_dir: Path
    database_url: str
    public_base_url: str
    events_per_page: int
    completed_after_hours: int
    status_refresh_minutes: int
    sqlite_vacuum_hours: int
    enable_scheduler: bool
    default_timezone: str
    profile_picture_max_bytes: int
    image_max_bytes: int
    seed_profiles: int
    seed_sections: int
    seed_events_per_section: int
    seed_rsvps_per_event: int
    seed_private_percent: int
    root_token_key: str
    app_host: str
    app_port: int
    config_path: Path

    @property
    def status_refresh_interval(self) -> timedelta:
        return timedelta(minutes=self.status_refresh_minutes)

    @property
    def vacuum_interval(self) -> timedelta:
        return timedelta(hours=self.sqlite_vacuum_hours)

    @property
    def completed_after(self) -> timedelta:
        return timedelta(hours=self.completed_after_hours)

    @property
    def resolved_database_url(self) -> str:
        return self.database_url or f"sqlite:///{self.database_path}"


def _boolify(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Cannot parse boolean value from {value!r}")


def _cast_value(key: str, value: Any) -> Any:
    if key not in TYPE_CASTERS:
        return value
    caster = TYPE_CASTERS[key]
    if caster is bool:
        return _boolify(value)
    return caster(value)


def _load_toml_config(config_path: Path) -> dict[str, Any]:
    if not config_path.exists():
        return {}
    with config_path.open("rb") as handle:
        return tomllib.load(handle)


def _config_layered_value(key: str, *, toml_config: dict[str, Any]) -> Any:
    env_key = f"HUDDLE_{key.upper()}"
    if env_key in os.environ:
        return _cast_value(key, os.environ[env_key])
    if key in toml_config:
        return _cast_value(key, toml_config[key])
    return DEFAULTS[key]


def _resolve_dir(base_dir: Path, raw: str | Path | None, fallback: Path) -> Path:
    resolved = Path(raw) if raw else fallback
    if not resolved.is_absolute():
        resolved = base_dir / resolved
    return resolved


def _resolve_paths(
    *,
    base_dir: Path,
    data_dir: str | Path | None,
    database_path: str | Path | None,
    storage_dir: str | Path | None,
):
    resolved_base = Path(base_dir)
    resolved_data = _resolve_dir(resolved_base, data_dir, resolved_base / "data")
    resolved_db = _resolve_dir(
        resolved_base, database_path, resolved_data / "huddle.db"
    )
    resolved_storage = _resolve_dir(
        resolved_base, storage_dir, resolved_data / "storage"
    )
    return resolved_base, resolved_data, resolved_db, resolved_storage


def load_settings(config_override: Path | None = None) -> Settings:
    base_dir = Path(os.getenv("HUDDLE_BASE_DIR", Path.cwd()))
    env_config = os.getenv("HUDDLE_CONFIG")
    config_path = Path(config_override or env_config or base_dir / "huddle.toml")
    toml_config = _load_toml_config(config_path)

    base_dir_value, data_dir_value, database_path_value, storage_dir_value = (
        _resolve_paths(
            base_dir=base_dir,
            data_dir=os.getenv("HUDDLE_DATA_DIR", toml_config.get("data_dir")),
            database_path=os.getenv("HUDDLE_DB", toml_config.get("database_path")),
            storage_dir=os.getenv(
                "HUDDLE_STORAGE_DIR", toml_config.get("storage_dir")
            ),
        )
    )
    layered = {
        key: _config_layered_value(key, toml_config=toml_config) for key in DEFAULTS
    }

    settings = Settings(
        base_dir=base_dir_value,
        data_dir=data_dir_value,
        database_path=database_path_value,
        storage_dir=storage_dir_value,
        root_token_key="root_admin_token",
        config_path=config_path,
        **layered,
    )
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    return settings


def settings_as_dict(settings: Settings) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "base_dir": str(settings.base_dir),
        "data_dir": str(settings.data_dir),
        "database_path": str(settings.database_path),
        "storage_dir": str(settings.storage_dir),
    }
    for key in DEFAULTS:
        payload[key] = getattr(settings, key)
    return payload


def _toml_literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    escaped = str(value).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def write_config_file(config: dict[str, Any], *, path: Path) -> None:
    lines = ["# Huddle configuration\n"]
    for key in sorted(config.keys()):
        lines.append(f"{key} = {_toml_literal(config[key])}\n")
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")


def update_config_file(updates: dict[str, Any], *, path: Path | None = None) -> Settings:
    """Merge known keys into the TOML config and reload the global settings."""
    current_settings = settings if "settings" in globals() else load_settings()
    target_path = path or current_settings.config_path
    existing = _load_toml_config(target_path)
    merged = {**existing}
    for key, value in updates.items():
        if key not in DEFAULTS:
            raise KeyError(key)
        merged[key] = _cast_value(key, value)
    write_config_file(merged, path=target_path)
    new_settings = load_settings(target_path)
    globals()["settings"] = new_settings
    return new_settings


settings = load_settings()
