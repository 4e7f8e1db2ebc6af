"""lifter_etl.resolution_policy

YAML-based policy knobs for the identity resolver.

Responsibilities:
  - Load and validate config/resolution_policy.yml
  - Hash YAML content for traceability (echoed in run reports)
  - Provide defaults when no file is given: ResolutionPolicy()

Usage:
    from pathlib import Path
    from lifter_etl.resolution_policy import load_policy

    policy = load_policy(Path("config/resolution_policy.yml"))
    if policy.verification_enabled:
        ...
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DISPLAY_NAME_FLAG = "flag"
DISPLAY_NAME_OVERWRITE = "overwrite"
VALID_DISPLAY_NAME_MODES = (DISPLAY_NAME_FLAG, DISPLAY_NAME_OVERWRITE)

REQUIRED_YAML_KEYS = frozenset({"version"})

KNOWN_TOP_LEVEL_KEYS = frozenset({
    "version",
    "display_name_on_external_id_mismatch",
    "fill_demographics",
    "verification",
    "participation_signal",
})

KNOWN_VERIFICATION_KEYS = frozenset({
    "enabled",
    "timeout_seconds",
    "date_window_before_days",
    "date_window_after_days",
})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PolicyValidationError(ValueError):
    """Raised when a YAML policy file fails schema validation."""


# ---------------------------------------------------------------------------
# ResolutionPolicy dataclass
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ResolutionPolicy:
    """Parsed, validated resolver policy."""

    version: str = "default"
    display_name_on_external_id_mismatch: str = DISPLAY_NAME_FLAG
    fill_demographics: bool = True
    verification_enabled: bool = True
    verification_timeout_seconds: float = 30.0
    date_window_before_days: int = 3
    date_window_after_days: int = 10
    participation_signal: bool = True
    yaml_hash: str | None = None
    raw_yaml: str = field(repr=False, default="")

    @property
    def overwrite_display_name(self) -> bool:
        return self.display_name_on_external_id_mismatch == DISPLAY_NAME_OVERWRITE

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "yaml_hash": self.yaml_hash,
            "display_name_on_external_id_mismatch": self.display_name_on_external_id_mismatch,
            "fill_demographics": self.fill_demographics,
            "verification": {
                "enabled": self.verification_enabled,
                "timeout_seconds": self.verification_timeout_seconds,
                "date_window_before_days": self.date_window_before_days,
                "date_window_after_days": self.date_window_after_days,
            },
            "participation_signal": self.participation_signal,
        }


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_policy(yaml_path: Path) -> ResolutionPolicy:
    """Load, validate, and return a ResolutionPolicy from a YAML file.

    Args:
        yaml_path: Absolute or relative path to the YAML policy file.

    Returns:
        A validated ResolutionPolicy; keys absent from the file keep
        their defaults.

    Raises:
        PolicyValidationError: If any field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = yaml_path.read_text(encoding="utf-8")
    try:
        data: dict[str, Any] = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise PolicyValidationError(f"Policy file is not valid YAML: {exc}") from exc
    validate_policy(data)
    yaml_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()

    defaults = ResolutionPolicy()
    verification = data.get("verification") or {}
    return ResolutionPolicy(
        version=str(data["version"]),
        display_name_on_external_id_mismatch=data.get(
            "display_name_on_external_id_mismatch",
            defaults.display_name_on_external_id_mismatch,
        ),
        fill_demographics=data.get("fill_demographics", defaults.fill_demographics),
        verification_enabled=verification.get("enabled", defaults.verification_enabled),
        verification_timeout_seconds=float(
            verification.get("timeout_seconds", defaults.verification_timeout_seconds)
        ),
        date_window_before_days=int(
            verification.get("date_window_before_days", defaults.date_window_before_days)
        ),
        date_window_after_days=int(
            verification.get("date_window_after_days", defaults.date_window_after_days)
        ),
        participation_signal=data.get(
            "participation_signal", defaults.participation_signal
        ),
        yaml_hash=yaml_hash,
        raw_yaml=raw,
    )


def _require_bool(data: dict[str, Any], key: str, label: str) -> None:
    if key in data and not isinstance(data[key], bool):
        raise PolicyValidationError(f"'{label}' must be true or false, got {data[key]!r}.")


def _require_non_negative_int(data: dict[str, Any], key: str) -> None:
    if key not in data:
        return
    val = data[key]
    if isinstance(val, bool) or not isinstance(val, int) or val < 0:
        raise PolicyValidationError(
            f"'verification.{key}' must be a non-negative integer, got {val!r}."
        )


def validate_policy(data: dict[str, Any]) -> None:
    """Raise PolicyValidationError if data does not match the policy schema.

    Validates:
      - Root is a mapping with a 'version'
      - No unknown keys (typos would otherwise silently keep a default)
      - display_name_on_external_id_mismatch is 'flag' or 'overwrite'
      - Boolean switches are booleans
      - verification.timeout_seconds > 0, date windows >= 0
    """
    if not isinstance(data, dict):
        raise PolicyValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - set(data.keys())
    if missing_keys:
        raise PolicyValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    unknown = set(data.keys()) - KNOWN_TOP_LEVEL_KEYS
    if unknown:
        raise PolicyValidationError(f"Unknown policy keys: {sorted(unknown)}")

    mode = data.get("display_name_on_external_id_mismatch", DISPLAY_NAME_FLAG)
    if mode not in VALID_DISPLAY_NAME_MODES:
        raise PolicyValidationError(
            f"Invalid display_name_on_external_id_mismatch '{mode}'. "
            f"Must be one of {list(VALID_DISPLAY_NAME_MODES)}."
        )

    _require_bool(data, "fill_demographics", "fill_demographics")
    _require_bool(data, "participation_signal", "participation_signal")

    verification = data.get("verification")
    if verification is None:
        return
    if not isinstance(verification, dict):
        raise PolicyValidationError("'verification' must be a mapping.")

    unknown = set(verification.keys()) - KNOWN_VERIFICATION_KEYS
    if unknown:
        raise PolicyValidationError(f"Unknown verification keys: {sorted(unknown)}")

    _require_bool(verification, "enabled", "verification.enabled")

    if "timeout_seconds" in verification:
        val = verification["timeout_seconds"]
        try:
            fval = float(val)
        except (TypeError, ValueError):
            raise PolicyValidationError(
                f"'verification.timeout_seconds' value '{val}' is not numeric."
            )
        if isinstance(val, bool) or fval <= 0:
            raise PolicyValidationError(
                f"'verification.timeout_seconds' value {val!r} must be > 0."
            )

    _require_non_negative_int(verification, "date_window_before_days")
    _require_non_negative_int(verification, "date_window_after_days")
