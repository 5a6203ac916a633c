from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from typing import Mapping


@dataclass
class ReconnectPolicy:
    initial_delay_s: float = 1.0
    multiplier: float = 2.0
    max_delay_s: float = 30.0
    max_attempts: int | None = None

    def delay_for(self, attempt: int) -> float:
        """Delay before reconnect ``attempt`` (1-based), capped at ``max_delay_s``."""

        if attempt < 1:
            raise ValueError("attempt must be positive")
        delay = self.initial_delay_s * (self.multiplier ** (attempt - 1))
        return min(delay, self.max_delay_s)

    def allows(self, attempt: int) -> bool:
        return self.max_attempts is None or attempt <= self.max_attempts


@dataclass
class ChatConfig:
    history_limit: int = 50
    scoped_history_limit: int = 0
    typing_stale_after_s: float = 10.0
    typing_sweep_interval_s: float = 5.0
    typing_idle_s: float = 2.0
    visibility_timeout_s: float = 10.0
    auto_mark_read: bool = True
    refresh_on_reconnect: bool = True
    outbox_max_retries: int = 3
    presence_channel: str = "user-presence"
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None, prefix: str = "CHATSYNC_") -> "ChatConfig":
        """Build a config from ``CHATSYNC_*`` variables, e.g. ``CHATSYNC_HISTORY_LIMIT=100``.

        Reconnect settings use ``CHATSYNC_RECONNECT_*`` (``..._INITIAL_DELAY_S`` etc.).
        """

        environ = os.environ if environ is None else environ
        config = cls()
        for item in fields(cls):
            if item.name == "reconnect":
                continue
            name = prefix + item.name.upper()
            raw = environ.get(name)
            if raw:
                setattr(config, item.name, _coerce(name, raw, getattr(config, item.name)))
        for item in fields(ReconnectPolicy):
            name = f"{prefix}RECONNECT_{item.name.upper()}"
            raw = environ.get(name)
            if not raw:
                continue
            current = 0 if item.name == "max_attempts" else 0.0
            setattr(config.reconnect, item.name, _coerce(name, raw, current))
        return config


def _coerce(name: str, raw: str, current: object) -> object:
    if isinstance(current, bool):
        lowered = raw.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
        raise ValueError(f"{name} must be a boolean")
    try:
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    return raw
