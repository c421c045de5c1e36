"""Operational policy: the configurable side of the pen-pal workflow.

Loaded from ``penpal_policy.json`` in a config directory. Only
operational knobs live here: who the admins are, how many reward points
a finished mission is worth, how long reminders stay visible. The
domain rules themselves (10 steps, 3/7/10-day escalation, reputation
deltas, two-party matches) are module constants and are not
configurable.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


POLICY_FILENAME = "penpal_policy.json"


@dataclass(frozen=True)
class PenpalPolicy:
    """Resolved operational settings."""
    admin_ids: frozenset[str] = field(default_factory=frozenset)
    reward_points: int = 4800
    address_reminder_ttl_hours: int = 24
    cancel_request_alert_days: int = 7
    penalize_auto_verify: bool = True
    store_max_retries: int = 5

    @classmethod
    def from_config_dir(cls, config_dir: Path) -> PenpalPolicy:
        """Load the policy file from a config directory."""
        path = Path(config_dir) / POLICY_FILENAME
        with path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        return cls.from_dict(data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PenpalPolicy:
        """Build a policy from a raw mapping. Unknown keys are ignored.

        Raises ValueError on malformed values.
        """
        defaults = cls()
        admin_ids = data.get("admin_ids", [])
        if not isinstance(admin_ids, list) or not all(isinstance(a, str) for a in admin_ids):
            raise ValueError("admin_ids must be a list of strings")

        def _positive_int(key: str, default: int) -> int:
            value = data.get(key, default)
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise ValueError(f"{key} must be a positive integer, got {value!r}")
            return value

        penalize = data.get("penalize_auto_verify", defaults.penalize_auto_verify)
        if not isinstance(penalize, bool):
            raise ValueError("penalize_auto_verify must be a boolean")

        return cls(
            admin_ids=frozenset(a.strip() for a in admin_ids if a.strip()),
            reward_points=_positive_int("reward_points", defaults.reward_points),
            address_reminder_ttl_hours=_positive_int(
                "address_reminder_ttl_hours", defaults.address_reminder_ttl_hours,
            ),
            cancel_request_alert_days=_positive_int(
                "cancel_request_alert_days", defaults.cancel_request_alert_days,
            ),
            penalize_auto_verify=penalize,
            store_max_retries=_positive_int("store_max_retries", defaults.store_max_retries),
        )

    def is_admin(self, user_id: str) -> bool:
        return user_id in self.admin_ids
