"""
kamianime.engine.progression — XP → Level
==========================================

Pure functions.  Level is never stored; every caller derives it from XP
through :func:`level_for_xp` so the website and the bot can never disagree.

    level = floor(xp / 1000) + 1
"""

from __future__ import annotations

from kamianime.constants import XP_PER_LEVEL


def level_for_xp(xp: int) -> int:
    """Level reached with *xp* total experience.  ``0 → 1``, ``1000 → 2``."""
    if xp < 0:
        raise ValueError("xp must be non-negative")
    return xp // XP_PER_LEVEL + 1


def level_floor(level: int) -> int:
    """XP at which *level* begins."""
    if level < 1:
        raise ValueError("level must be >= 1")
    return (level - 1) * XP_PER_LEVEL


def xp_to_next_level(xp: int) -> int:
    """XP still needed to reach the next level (always in ``1..1000``)."""
    return level_for_xp(xp) * XP_PER_LEVEL - xp


def progress_fraction(xp: int) -> float:
    """Fraction of the current level already completed, in ``[0, 1)``."""
    return (xp - level_floor(level_for_xp(xp))) / XP_PER_LEVEL
