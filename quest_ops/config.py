"""Configuration loading utilities for the Quest Ops console."""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict

import yaml


DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    signup_fetch_limit: int
    squad_fetch_limit: int
    completion_fetch_limit: int
    instance_fetch_limit: int
    active_squads_refresh_seconds: float
    ops_sweep_seconds: float
    support_sweep_seconds: float
    warmup_required_percentage: float
    warmup_stall_hours: float
    warmup_notify_dedupe_hours: float
    default_target_squad_size: int
    squad_ready_ratio: float
    review_warning_hours: int
    review_error_hours: int
    low_signup_warning_ratio: float
    low_signup_error_ratio: float
    revoked_window_days: int
    cancelled_window_days: int
    stale_instance_days: int
    sla_first_response_hours: float
    sla_resolution_hours: float

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        limits = data.get("query_limits", {})
        polling = data.get("polling", {})
        warmup = data.get("warm_up", {})
        squads = data.get("squads", {})
        alerts = data.get("ops_alerts", {})
        low_signups = alerts.get("low_signups", {})
        sla = data.get("support_sla", {})
        return Settings(
            signup_fetch_limit=int(limits.get("signups", 100)),
            squad_fetch_limit=int(limits.get("squads", 100)),
            completion_fetch_limit=int(limits.get("completions", 100)),
            instance_fetch_limit=int(limits.get("instances", 200)),
            active_squads_refresh_seconds=float(polling.get("active_squads_seconds", 30)),
            ops_sweep_seconds=float(polling.get("ops_sweep_seconds", 60)),
            support_sweep_seconds=float(polling.get("support_sweep_seconds", 300)),
            warmup_required_percentage=float(warmup.get("required_percentage", 100)),
            warmup_stall_hours=float(warmup.get("stall_hours", 24)),
            warmup_notify_dedupe_hours=float(warmup.get("notify_dedupe_hours", 24)),
            default_target_squad_size=int(squads.get("default_target_size", 6)),
            squad_ready_ratio=float(squads.get("ready_ratio", 0.8)),
            review_warning_hours=int(alerts.get("review_warning_hours", 48)),
            review_error_hours=int(alerts.get("review_error_hours", 72)),
            low_signup_warning_ratio=float(low_signups.get("warning_ratio", 0.25)),
            low_signup_error_ratio=float(low_signups.get("error_ratio", 0.10)),
            revoked_window_days=int(alerts.get("revoked_window_days", 7)),
            cancelled_window_days=int(alerts.get("cancelled_window_days", 3)),
            stale_instance_days=int(alerts.get("stale_instance_days", 14)),
            sla_first_response_hours=float(sla.get("first_response_hours", 4)),
            sla_resolution_hours=float(sla.get("resolution_hours", 24)),
        )


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        env_path = os.getenv("QUEST_OPS_SETTINGS_PATH")
        self._path = path or (Path(env_path) if env_path else DEFAULT_SETTINGS_PATH)
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        self._cache = Settings.from_dict(data)
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


__all__ = ["Settings", "SettingsLoader", "get_settings"]
