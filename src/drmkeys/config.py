"""
Runtime configuration for the key-delivery service.

Values come from an optional YAML file, then environment overrides:

    session_ttl_seconds: 1800
    refresh_ttl_seconds: 1800
    max_batch_size: 20
    kek_info: session-kek-v1
    master_key_env: KMS_MASTER_KEY
    rotation:
      max_session_age_seconds: 14400
      max_deliveries_per_session: 5000

Environment overrides: DRMKEYS_SESSION_TTL, DRMKEYS_MAX_BATCH.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .session.handshake import KEK_INFO


@dataclass(frozen=True)
class RotationPolicy:
    """When a session key must be replaced by a fresh handshake.

    Both limits are optional; with neither set a session key lives until
    its cache TTL runs out.
    """

    max_session_age_seconds: Optional[float] = None
    max_deliveries_per_session: Optional[int] = None

    def requires_rotation(self, age_seconds: float, deliveries: int) -> bool:
        if self.max_session_age_seconds is not None and age_seconds > self.max_session_age_seconds:
            return True
        if self.max_deliveries_per_session is not None and deliveries >= self.max_deliveries_per_session:
            return True
        return False


@dataclass(frozen=True)
class KeyDeliveryConfig:
    session_ttl_seconds: float = 1800
    refresh_ttl_seconds: float = 1800
    max_batch_size: int = 20
    kek_info: str = KEK_INFO
    master_key_env: str = "KMS_MASTER_KEY"
    rotation: RotationPolicy = field(default_factory=RotationPolicy)


def _assert(cond: bool, msg: str) -> None:
    if not cond:
        raise ValueError(msg)


def _positive_number(data: Dict[str, Any], name: str, default):
    value = data.get(name, default)
    if value is None:
        return None
    _assert(isinstance(value, (int, float)) and not isinstance(value, bool),
            f"{name} must be a number")
    _assert(value > 0, f"{name} must be positive")
    return value


def config_from_dict(data: Dict[str, Any]) -> KeyDeliveryConfig:
    """Build and validate a config from a parsed mapping.

    Raises:
        ValueError: On unknown keys or invalid values
    """
    _assert(isinstance(data, dict), "Configuration must be a mapping")
    known = {"session_ttl_seconds", "refresh_ttl_seconds", "max_batch_size",
             "kek_info", "master_key_env", "rotation"}
    unknown = set(data) - known
    _assert(not unknown, f"Unknown configuration keys: {', '.join(sorted(unknown))}")

    defaults = KeyDeliveryConfig()
    max_batch = data.get("max_batch_size", defaults.max_batch_size)
    _assert(isinstance(max_batch, int) and not isinstance(max_batch, bool) and max_batch >= 1,
            "max_batch_size must be a positive integer")
    kek_info = data.get("kek_info", defaults.kek_info)
    _assert(isinstance(kek_info, str) and kek_info, "kek_info must be a non-empty string")
    master_key_env = data.get("master_key_env", defaults.master_key_env)
    _assert(isinstance(master_key_env, str) and master_key_env,
            "master_key_env must be a non-empty string")

    rotation_data = data.get("rotation") or {}
    _assert(isinstance(rotation_data, dict), "rotation must be a mapping")
    max_deliveries = rotation_data.get("max_deliveries_per_session")
    if max_deliveries is not None:
        _assert(isinstance(max_deliveries, int) and max_deliveries >= 1,
                "rotation.max_deliveries_per_session must be a positive integer")
    rotation = RotationPolicy(
        max_session_age_seconds=_positive_number(rotation_data, "max_session_age_seconds", None),
        max_deliveries_per_session=max_deliveries,
    )

    return KeyDeliveryConfig(
        session_ttl_seconds=_positive_number(data, "session_ttl_seconds", defaults.session_ttl_seconds),
        refresh_ttl_seconds=_positive_number(data, "refresh_ttl_seconds", defaults.refresh_ttl_seconds),
        max_batch_size=max_batch,
        kek_info=kek_info,
        master_key_env=master_key_env,
        rotation=rotation,
    )


def load_config(path: str | None = None) -> KeyDeliveryConfig:
    """Load configuration from YAML (if given) and apply environment overrides."""
    data: Dict[str, Any] = {}
    if path:
        txt = Path(path).read_text()
        try:
            data = yaml.safe_load(txt) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"{path} is not valid YAML: {e}") from e
        _assert(isinstance(data, dict), f"{path} must contain a mapping")

    env_ttl = os.getenv("DRMKEYS_SESSION_TTL")
    if env_ttl:
        try:
            data["session_ttl_seconds"] = float(env_ttl)
        except ValueError as e:
            raise ValueError(f"DRMKEYS_SESSION_TTL must be a number, got {env_ttl!r}") from e
    env_batch = os.getenv("DRMKEYS_MAX_BATCH")
    if env_batch:
        try:
            data["max_batch_size"] = int(env_batch)
        except ValueError as e:
            raise ValueError(f"DRMKEYS_MAX_BATCH must be an integer, got {env_batch!r}") from e

    return config_from_dict(data)
