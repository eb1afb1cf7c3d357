"""
Interaction frequency metrics.

Window counts decay linearly with the time elapsed since the metrics were
last updated and reach zero once the full window has passed.
"""

import math
from datetime import datetime, timedelta

from identity_cache.models.domain.record_domain import RECENT_HISTORY_LIMIT, InteractionMetrics

WEEK = timedelta(days=7)
MONTH = timedelta(days=30)


def decay_count(count: int, last_updated: datetime | None, now: datetime, window: timedelta) -> int:
    if not count or last_updated is None:
        return 0
    elapsed = now - last_updated
    if elapsed >= window:
        return 0
    if elapsed <= timedelta(0):
        return count
    return math.floor(count * (1 - elapsed / window))


def average_days_between(history: list[datetime]) -> float | None:
    if len(history) < 2:
        return None
    ordered = sorted(history)
    gaps = [(later - earlier) / timedelta(days=1) for earlier, later in zip(ordered, ordered[1:])]
    return sum(gaps) / len(gaps)


def decayed(metrics: InteractionMetrics | None, now: datetime) -> InteractionMetrics | None:
    """Metrics as they stand at `now`, without recording a new event."""
    if metrics is None:
        return None
    return metrics.model_copy(
        update={
            "count_last_7_days": decay_count(metrics.count_last_7_days, metrics.last_updated, now, WEEK),
            "count_last_30_days": decay_count(
                metrics.count_last_30_days, metrics.last_updated, now, MONTH
            ),
            "last_updated": now,
        }
    )


def record_event(metrics: InteractionMetrics | None, now: datetime) -> InteractionMetrics:
    """Decay the existing counts to `now`, then count one more interaction."""
    current = decayed(metrics, now) or InteractionMetrics()
    history = [*current.recent_history, now][-RECENT_HISTORY_LIMIT:]
    return InteractionMetrics(
        count_last_7_days=current.count_last_7_days + 1,
        count_last_30_days=current.count_last_30_days + 1,
        last_interaction_time=now,
        average_days_between=average_days_between(history),
        recent_history=history,
        last_updated=now,
    )


def merge(first: InteractionMetrics | None, second: InteractionMetrics | None) -> InteractionMetrics | None:
    """Combine metrics of two records being consolidated into one."""
    if first is None or second is None:
        return first or second
    updated = [t for t in (first.last_updated, second.last_updated) if t]
    if updated:
        # Align both windows on the newer snapshot before summing
        first, second = decayed(first, max(updated)), decayed(second, max(updated))
    history = sorted([*first.recent_history, *second.recent_history])[-RECENT_HISTORY_LIMIT:]
    last_times = [t for t in (first.last_interaction_time, second.last_interaction_time) if t]
    return InteractionMetrics(
        count_last_7_days=first.count_last_7_days + second.count_last_7_days,
        count_last_30_days=first.count_last_30_days + second.count_last_30_days,
        last_interaction_time=max(last_times) if last_times else None,
        average_days_between=average_days_between(history),
        recent_history=history,
        last_updated=max(updated) if updated else None,
    )
