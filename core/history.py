"""
core/history.py -- Status history recorder.

record_transition() is the single place a status actually advances. Given an
entity snapshot and a requested status it:

  1. re-checks the transition with core.transitions.validate() and refuses to
     append anything if it is illegal (InvalidTransitionError, same reason
     text as the validator),
  2. builds one StatusChangeEvent,
  3. returns a NEW entity with status advanced and the event appended.

The input entity is never mutated. If the caller's write to the store fails,
it simply drops the returned value.

Time comes from an injected clock so the function is deterministic under
test. Appending only looks at the last event, never rescans the history.
"""

from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional, TypeVar, Union

from core.config import now_utc
from core.errors import InvalidTransitionError
from core.models import EntityKind, StatusChangeEvent
from core.transitions import StatusLike, coerce_status, initial_status, validate

Clock = Callable[[], datetime]
E = TypeVar("E")


def next_timestamp(history: tuple, clock: Clock) -> datetime:
    """Read the clock, clamped so history stays non-decreasing by occurred_at.

    A clock that steps backwards (NTP adjustment, a second app server a few ms
    behind) yields the previous event's timestamp instead.
    """
    now = clock()
    if history and now < history[-1].occurred_at:
        return history[-1].occurred_at
    return now


def record_transition(
    kind: Union[str, EntityKind],
    entity: E,
    requested: StatusLike,
    actor_id: Optional[int] = None,
    notes: Optional[str] = None,
    clock: Clock = now_utc,
    *,
    occurred_at: Optional[datetime] = None,
) -> E:
    """Return a copy of entity moved to requested, with one event appended.

    occurred_at lets a caller that already read the clock (core/findings.py
    stamps lifecycle fields with the same instant) pass that instant through.
    It is clamped like a clock reading.
    """
    current = coerce_status(kind, entity.status)
    target = coerce_status(kind, requested)
    check = validate(kind, current, target)
    if not check.allowed:
        raise InvalidTransitionError(current.value, target.value, check.reason)

    history = tuple(entity.status_history)
    if occurred_at is None:
        when = next_timestamp(history, clock)
    else:
        when = next_timestamp(history, lambda: occurred_at)

    event = StatusChangeEvent(
        previous_status=current.value,
        new_status=target.value,
        occurred_at=when,
        actor_id=actor_id,
        notes=notes or None,
    )
    return replace(entity, status=target, status_history=history + (event,))


def check_history(kind: Union[str, EntityKind], entity) -> list[str]:
    """Return a list of invariant violations in entity's history (empty = sound).

    Checks:
      - status equals the last event's new_status (or the initial status when
        history is empty),
      - each event's previous_status equals the prior event's new_status,
      - occurred_at is non-decreasing.
    """
    problems: list[str] = []
    history = entity.status_history
    status = coerce_status(kind, entity.status).value
    expected = history[-1].new_status if history else initial_status(kind).value
    if status != expected:
        problems.append(f"status {status} does not match history head {expected}")
    for i in range(1, len(history)):
        prev, cur = history[i - 1], history[i]
        if cur.previous_status != prev.new_status:
            problems.append(f"event {i} starts at {cur.previous_status}, previous ended at {prev.new_status}")
        if cur.occurred_at < prev.occurred_at:
            problems.append(f"event {i} occurred before event {i - 1}")
    return problems
