"""
kamianime.config — YAML Configuration Loader
=============================================

Reads ``config.yaml`` for infrastructure settings: Discord identity, the
dashboard port, the streak calendar zone and the sync/airing timings.
Secrets never live here; they come from the environment (``.env``).

Usage::

    from kamianime.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.community_name)        # "KamiAnime"
    print(cfg.streak_timezone)       # "UTC"
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class KamiConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    community_name: str

    # Discord
    bot_prefix: str
    guild_id: int

    # Dashboard / website API
    dashboard_port: int

    # Admin
    admin_role_id: int

    # Optional
    announce_channel_id: int | None = None

    # Progression
    streak_timezone: str = "UTC"

    # Sync bridge
    linking_code_ttl_seconds: int = 600
    webhook_timeout_seconds: float = 10.0

    # Airing notifier
    airing_poll_hours: float = 6.0
    airing_lookahead_seconds: int = 21600

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.streak_timezone)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> KamiConfig:
    """Read *path* and return a :class:`KamiConfig` instance.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    ValueError
        If ``streak_timezone`` is not a known IANA zone.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    tz_name = str(raw.get("streak_timezone", "UTC"))
    try:
        ZoneInfo(tz_name)
    except ZoneInfoNotFoundError as exc:
        raise ValueError(f"Unknown streak_timezone: {tz_name!r}") from exc

    return KamiConfig(
        community_name=raw["community_name"],
        bot_prefix=raw["bot_prefix"],
        guild_id=int(raw["guild_id"]),
        dashboard_port=int(raw["dashboard_port"]),
        admin_role_id=int(raw["admin_role_id"]),
        announce_channel_id=(
            int(raw["announce_channel_id"]) if raw.get("announce_channel_id") else None
        ),
        streak_timezone=tz_name,
        linking_code_ttl_seconds=int(raw.get("linking_code_ttl_seconds", 600)),
        webhook_timeout_seconds=float(raw.get("webhook_timeout_seconds", 10.0)),
        airing_poll_hours=float(raw.get("airing_poll_hours", 6.0)),
        airing_lookahead_seconds=int(raw.get("airing_lookahead_seconds", 21600)),
    )
