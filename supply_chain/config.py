"""Process-wide configuration.

Settings are read once at boot (``Settings.from_env``), installed with
:func:`configure` and consulted through :func:`get_settings` or the
capability query :func:`ledger_tracking_enabled`.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, replace
from enum import Enum
from typing import Mapping, Optional

ENV_PREFIX = "SUPPLY_CHAIN_"


class NodeDeletionPolicy(str, Enum):
    """Which dependents block the deletion of a graph node."""

    PRESERVE_HISTORY = "preserve-history"
    ALLOW_TERMINAL = "allow-terminal"


def _env_str(env: Mapping[str, str], key: str, default: str = "") -> str:
    return env.get(f"{ENV_PREFIX}{key}", default).strip()


def _env_bool(env: Mapping[str, str], key: str, default: bool) -> bool:
    raw = _env_str(env, key)
    if not raw:
        return default
    return raw.lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True, slots=True)
class Settings:
    """Runtime configuration for the supply chain core."""

    database_path: str = ""
    log_level: str = "INFO"
    admin_wallet_address: Optional[str] = None
    node_deletion_policy: NodeDeletionPolicy = NodeDeletionPolicy.PRESERVE_HISTORY
    seed_demo_data: bool = False

    @property
    def ledger_tracking_enabled(self) -> bool:
        return bool(self.admin_wallet_address)

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        policy_value = _env_str(
            env, "NODE_DELETION_POLICY", NodeDeletionPolicy.PRESERVE_HISTORY.value
        )
        try:
            policy = NodeDeletionPolicy(policy_value)
        except ValueError as exc:
            raise ValueError(
                f"{ENV_PREFIX}NODE_DELETION_POLICY must be one of "
                f"{[item.value for item in NodeDeletionPolicy]}, got {policy_value!r}"
            ) from exc
        return cls(
            database_path=_env_str(env, "DATABASE"),
            log_level=_env_str(env, "LOG_LEVEL", "INFO") or "INFO",
            admin_wallet_address=_env_str(env, "ADMIN_WALLET") or None,
            node_deletion_policy=policy,
            seed_demo_data=_env_bool(env, "SEED_DEMO_DATA", False),
        )

    def with_overrides(self, **changes: object) -> "Settings":
        return replace(self, **changes)


_lock = threading.Lock()
_settings: Optional[Settings] = None


def configure(settings: Settings) -> Settings:
    """Install ``settings`` as the process-wide configuration."""

    global _settings
    with _lock:
        _settings = settings
    return settings


def get_settings() -> Settings:
    """Return the installed settings, loading them from the environment once."""

    global _settings
    with _lock:
        if _settings is None:
            _settings = Settings.from_env()
        return _settings


def reset_settings() -> None:
    global _settings
    with _lock:
        _settings = None


def ledger_tracking_enabled() -> bool:
    """Whether ledger transactions are hash-recorded for this process."""

    return get_settings().ledger_tracking_enabled


__all__ = [
    "Settings",
    "NodeDeletionPolicy",
    "configure",
    "get_settings",
    "reset_settings",
    "ledger_tracking_enabled",
]
