"""Feature flag helpers for admin flows."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from ..models import FeatureFlag


def flag_update_payload(
    *, is_enabled: Optional[bool] = None, rollout_percentage: Optional[int] = None
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {}
    if is_enabled is not None:
        payload["is_enabled"] = bool(is_enabled)
    if rollout_percentage is not None:
        if not 0 <= int(rollout_percentage) <= 100:
            raise ValueError("rollout_percentage must be between 0 and 100")
        payload["rollout_percentage"] = int(rollout_percentage)
    if not payload:
        raise ValueError("Nothing to update: pass is_enabled and/or rollout_percentage")
    return payload


def summarize_flags(flags: List[FeatureFlag]) -> List[Dict[str, object]]:
    """Compact rows for CLI and dashboard listings."""

    return [
        {
            "id": flag.id,
            "key": flag.key,
            "name": flag.name,
            "enabled": flag.is_enabled,
            "rollout": flag.rollout_percentage,
            "targeted": flag.has_targeting,
        }
        for flag in sorted(flags, key=lambda item: item.key)
    ]
