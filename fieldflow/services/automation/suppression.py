"""
Suppression Policy

Decides whether a rule is held back before its conditions are looked at.
Checks run in a fixed order and the first hit wins:

    cooldown → max fires per entity → quiet hours → business days only

The decision is pure: the engine supplies the firing history it read from the
execution log and the current time.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional
from zoneinfo import ZoneInfo

from ...config import DEFAULT_TIMEZONE


@dataclass(frozen=True)
class FiringHistory:
    """Passing executions of one rule lineage for one entity."""
    last_fired_at: Optional[datetime] = None
    fire_count: int = 0


def needs_history(constraints: Optional[Mapping[str, Any]]) -> bool:
    """True when the policy will consult the execution log."""
    if not constraints:
        return False
    return bool(constraints.get("cooldown_minutes") or constraints.get("max_fires_per_entity"))


def to_local(now_utc: datetime, tz_name: Optional[str]) -> datetime:
    """Convert a naive-UTC timestamp to wall-clock time in tz_name."""
    aware = now_utc.replace(tzinfo=timezone.utc) if now_utc.tzinfo is None else now_utc
    return aware.astimezone(ZoneInfo(tz_name or DEFAULT_TIMEZONE))


def in_quiet_hours(current_hhmm: str, start: str, end: str) -> bool:
    """
    Inclusive window check on zero-padded HH:mm strings.

    A window whose start is after its end wraps midnight (22:00 - 06:00).
    """
    if start <= end:
        return start <= current_hhmm <= end
    return current_hhmm >= start or current_hhmm <= end


def check_suppression(
    constraints: Optional[Mapping[str, Any]],
    now: datetime,
    history: FiringHistory = FiringHistory(),
    default_timezone: Optional[str] = None,
) -> Optional[str]:
    """
    Return the suppression reason, or None if the rule may be evaluated.

    Args:
        constraints: The rule's constraints dict (may be None)
        now: Current time, naive UTC
        history: Passing executions for this rule and entity
        default_timezone: Zone used when the rule does not name one
    """
    if not constraints:
        return None

    cooldown_minutes = constraints.get("cooldown_minutes")
    if cooldown_minutes:
        threshold = now - timedelta(minutes=cooldown_minutes)
        if history.last_fired_at is not None and history.last_fired_at > threshold:
            return (
                f"Cooldown: last fired {history.last_fired_at.isoformat()}, "
                f"cooldown {cooldown_minutes}m"
            )

    max_fires = constraints.get("max_fires_per_entity")
    if max_fires:
        if history.fire_count >= max_fires:
            return f"Max fires reached: {history.fire_count}/{max_fires}"

    local_now = None
    start = constraints.get("quiet_hours_start")
    end = constraints.get("quiet_hours_end")
    if start and end:
        local_now = to_local(now, constraints.get("timezone") or default_timezone)
        if in_quiet_hours(local_now.strftime("%H:%M"), start, end):
            return f"Quiet hours: {start} - {end}"

    if constraints.get("business_days_only"):
        local_now = local_now or to_local(now, constraints.get("timezone") or default_timezone)
        if local_now.weekday() >= 5:
            return "Business days only: current day is a weekend"

    return None
