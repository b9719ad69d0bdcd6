"""
kamianime.engine.streak — Daily Activity Streaks
=================================================

A streak counts consecutive calendar days with at least one activity.
Calendar days are evaluated in a single configured timezone
(``streak_timezone`` in ``config.yaml``, default UTC) so that a user's
streak does not depend on which platform reported the activity.

Transitions, given the stored ``last_active_date`` and today's date:

* same day                → unchanged
* exactly the next day    → streak + 1
* any larger gap / never  → 1
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from zoneinfo import ZoneInfo


@dataclass(frozen=True, slots=True)
class StreakTransition:
    streak: int
    last_active_date: date
    changed: bool
    reset: bool = False


def activity_date(now: datetime | None = None, tz: ZoneInfo | None = None) -> date:
    """Calendar date of *now* in *tz* (UTC when omitted).

    Naive datetimes are treated as UTC.
    """
    now = now or datetime.now(UTC)
    if now.tzinfo is None:
        now = now.replace(tzinfo=UTC)
    return now.astimezone(tz or UTC).date()


def advance_streak(
    last_active_date: date | None,
    streak: int,
    today: date,
) -> StreakTransition:
    """Compute the streak after an activity on *today*."""
    if last_active_date is not None and today <= last_active_date:
        # Same day, or an activity reported for a day already counted.
        return StreakTransition(
            streak=streak, last_active_date=last_active_date, changed=False,
        )

    if last_active_date is not None and today - last_active_date == timedelta(days=1):
        return StreakTransition(streak=streak + 1, last_active_date=today, changed=True)

    # Gap of two or more days, or the first activity ever.
    return StreakTransition(
        streak=1,
        last_active_date=today,
        changed=True,
        reset=last_active_date is not None,
    )
