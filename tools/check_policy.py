#!/usr/bin/env python3
"""Pen-pal policy checks against the config file and the fixed domain rules."""

import json
import sys
from pathlib import Path
from typing import Optional


ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT / "src"))

from penpal.escalation.sweep import (  # noqa: E402
    ADMIN_ALERT_AFTER_DAYS,
    AUTO_VERIFY_AFTER_DAYS,
    REMINDER_AFTER_DAYS,
)
from penpal.models.letter import TOTAL_STEPS  # noqa: E402
from penpal.models.reputation import INITIAL_SCORE, SCORE_MAX, SCORE_MIN  # noqa: E402
from penpal.policy import POLICY_FILENAME, PenpalPolicy  # noqa: E402
from penpal.reputation.ledger import (  # noqa: E402
    COMPLETION_BONUS,
    DEFAULT_CANCEL_PENALTY,
    LATE_RESPONSE_PENALTY,
    NO_ADDRESS_PENALTY,
)

CONFIG_DIR = ROOT / "config"


def load_json(path: Path) -> dict:
    with path.open("r", encoding="utf-8") as handle:
        return json.load(handle)


def check_domain_constants(errors: list[str]) -> None:
    """The hard-coded rules must stay mutually consistent."""
    if TOTAL_STEPS <= 0:
        errors.append(f"TOTAL_STEPS must be > 0, got {TOTAL_STEPS}")
    if not (0 < REMINDER_AFTER_DAYS < ADMIN_ALERT_AFTER_DAYS < AUTO_VERIFY_AFTER_DAYS):
        errors.append(
            "Escalation thresholds must be strictly increasing: "
            f"{REMINDER_AFTER_DAYS} < {ADMIN_ALERT_AFTER_DAYS} < {AUTO_VERIFY_AFTER_DAYS}"
        )
    if not (SCORE_MIN <= INITIAL_SCORE <= SCORE_MAX):
        errors.append(f"INITIAL_SCORE must be in [{SCORE_MIN}, {SCORE_MAX}]")
    for name, value in (
        ("COMPLETION_BONUS", COMPLETION_BONUS),
        ("DEFAULT_CANCEL_PENALTY", DEFAULT_CANCEL_PENALTY),
        ("LATE_RESPONSE_PENALTY", LATE_RESPONSE_PENALTY),
        ("NO_ADDRESS_PENALTY", NO_ADDRESS_PENALTY),
    ):
        if value <= 0:
            errors.append(f"{name} must be > 0, got {value}")


def check(config_dir: Optional[Path] = None) -> int:
    config_dir = Path(config_dir) if config_dir is not None else CONFIG_DIR
    errors: list[str] = []

    path = config_dir / POLICY_FILENAME
    if not path.exists():
        print(f"Policy check failed:\n- Policy file not found: {path}")
        return 1

    raw = load_json(path)
    try:
        policy = PenpalPolicy.from_dict(raw)
    except ValueError as e:
        errors.append(str(e))
        policy = None

    # --- Admin invariants ---
    admin_ids = raw.get("admin_ids", [])
    if policy is not None and not policy.admin_ids:
        errors.append("admin_ids must name at least one administrator")
    if isinstance(admin_ids, list) and len(set(admin_ids)) != len(admin_ids):
        errors.append("admin_ids must not contain duplicates")

    # --- Operational bounds ---
    if policy is not None:
        if policy.address_reminder_ttl_hours > 24 * 7:
            errors.append(
                f"address_reminder_ttl_hours must be <= 168, got {policy.address_reminder_ttl_hours}"
            )
        if policy.cancel_request_alert_days > 30:
            errors.append(
                f"cancel_request_alert_days must be <= 30, got {policy.cancel_request_alert_days}"
            )

    known = set(PenpalPolicy.__dataclass_fields__)
    for key in sorted(set(raw) - known):
        errors.append(f"Unknown policy key: {key}")

    check_domain_constants(errors)

    if errors:
        print("Policy check failed:")
        for err in errors:
            print(f"- {err}")
        return 1

    print("Policy check passed.")
    return 0


if __name__ == "__main__":
    raise SystemExit(check())
