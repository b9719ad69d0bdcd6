"""
KamiAnime — Progression & Cross-Platform Sync Engine
=====================================================
Turns anime and manga activity on the KamiAnime website and its companion
Discord bot into XP, levels, streaks and badges, and keeps both platforms'
view of a user's profile in step.

Package layout::

    kamianime/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # XP per action, rarity emoji
    ├── errors.py          # AuthError / ValidationError / NotFoundError / ConflictError
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # ORM models (profiles, badges, codes, ledger…)
    ├── engine/
    │   ├── progression.py # XP → level
    │   ├── badges.py      # Static badge table + eligibility
    │   ├── streak.py      # Daily streak transitions
    │   ├── events.py      # SyncEvent variants
    │   └── bus.py         # Typed event bus + profile views
    ├── services/
    │   ├── profile_service.py   # Transactional profile mutations
    │   ├── linking_service.py   # Discord linking codes
    │   ├── sync_service.py      # Webhook ingest + force sync
    │   ├── airing_service.py    # AniList airing schedule fan-out
    │   ├── announcement_service.py
    │   ├── embeds.py
    │   └── throttle.py
    ├── bot/
    │   ├── core.py        # Bot subclass, cog loader
    │   └── cogs/          # /link, /me, /streak, /badges, airing loop…
    └── api/
        ├── main.py        # FastAPI app
        └── routes/        # Webhooks, sync, public, admin endpoints
"""

__version__ = "0.1.0"
