"""
api/status_service.py -- Read-compute-write loop shared by every status route.

A status change is three steps:
  1. fetch the current snapshot from the store (404 if missing)
  2. core.lifecycle.apply_transition(), or one of the core.findings action
     wrappers, computes the new entity (pure)
  3. store.save_transition() writes it if the row's version is unchanged

If step 3 raises StaleEntityError another request changed the entity between
steps 1 and 3. The loop re-fetches and recomputes up to
Settings.status_retry_attempts times. The recomputation re-validates against
the fresh status, so a transition that was legal against the stale snapshot
may now be rejected with InvalidTransitionError -- that is the correct
outcome, not a retry failure.

LifecycleErrors propagate to the exception handlers in api/main.py.
"""

import logging
from typing import Callable, Optional, Union

from fastapi import HTTPException

from api.models import AllowedTransitionsResponse, ErrorDetail, HistoryResponse, StatusChangeEventResponse
from cmdb.store import CMDBStore
from core.config import get_settings, now_utc
from core.errors import LifecycleError, StaleEntityError
from core.lifecycle import TransitionRequest, apply_transition
from core.models import EntityKind, Finding
from core.transitions import allowed_next_statuses, coerce_kind, is_terminal

logger = logging.getLogger("vulntrack.api")


def not_found(kind: Union[str, EntityKind], entity_id: int) -> HTTPException:
    """Build the 404 raised for an unknown entity id."""
    kind = coerce_kind(kind)
    return HTTPException(
        status_code=404,
        detail=ErrorDetail(
            code=f"{kind.value}_not_found",
            message=f"{kind.value.capitalize()} {entity_id} not found.",
        ).model_dump(),
    )


def load_entity(cmdb: CMDBStore, kind: Union[str, EntityKind], entity_id: int):
    """Fetch an entity or raise the 404 HTTPException."""
    entity = cmdb.get_entity(kind, entity_id)
    if entity is None:
        raise not_found(kind, entity_id)
    return entity


def _commit(cmdb: CMDBStore, kind: EntityKind, entity_id: int, compute: Callable, actor_id: Optional[int]):
    """Fetch, compute and save with bounded retries on a version conflict."""
    attempts = get_settings().status_retry_attempts

    for attempt in range(1, attempts + 1):
        current = load_entity(cmdb, kind, entity_id)
        try:
            updated = compute(current)
        except LifecycleError as exc:
            logger.info(
                "Rejected %s %d from %s (%s: %s)",
                kind.value,
                entity_id,
                current.status.value,
                exc.error_kind,
                exc.message,
            )
            raise
        try:
            saved = cmdb.save_transition(kind, updated, expected_version=current.version)
        except StaleEntityError:
            if attempt == attempts:
                logger.warning(
                    "Giving up on %s %d after %d stale attempts", kind.value, entity_id, attempts
                )
                raise
            logger.warning(
                "Stale %s %d at version %d, retrying (%d/%d)",
                kind.value,
                entity_id,
                current.version,
                attempt,
                attempts,
            )
            continue

        logger.info(
            "Transition %s %d: %s -> %s (actor=%s)",
            kind.value,
            entity_id,
            current.status.value,
            saved.status.value,
            actor_id if actor_id is not None else "system",
        )
        return saved


def change_status(
    cmdb: CMDBStore,
    kind: Union[str, EntityKind],
    entity_id: int,
    request: TransitionRequest,
):
    """Apply request to the entity and persist it. Returns the saved entity."""
    kind = coerce_kind(kind)
    return _commit(
        cmdb,
        kind,
        entity_id,
        lambda current: apply_transition(kind, current, request, clock=now_utc),
        request.actor_id,
    )


def run_finding_action(cmdb: CMDBStore, finding_id: int, action: Callable[..., Finding], **kwargs) -> Finding:
    """Run one of the core.findings wrappers (mark_fixed, reopen, ...) and persist it.

    kwargs are passed to the wrapper on every attempt, together with the
    freshly loaded finding and the clock.
    """
    return _commit(
        cmdb,
        EntityKind.finding,
        finding_id,
        lambda current: action(current, clock=now_utc, **kwargs),
        kwargs.get("actor_id"),
    )


def allowed_transitions(cmdb: CMDBStore, kind: Union[str, EntityKind], entity_id: int) -> AllowedTransitionsResponse:
    """Speculative check: the statuses a change from the current one would accept."""
    kind = coerce_kind(kind)
    entity = load_entity(cmdb, kind, entity_id)
    return AllowedTransitionsResponse(
        kind=kind.value,
        entity_id=entity_id,
        current_status=entity.status.value,
        allowed=sorted(s.value for s in allowed_next_statuses(kind, entity.status)),
        terminal=is_terminal(kind, entity.status),
        version=entity.version,
    )


def status_history(cmdb: CMDBStore, kind: Union[str, EntityKind], entity_id: int) -> HistoryResponse:
    kind = coerce_kind(kind)
    entity = load_entity(cmdb, kind, entity_id)
    return HistoryResponse(
        kind=kind.value,
        entity_id=entity_id,
        current_status=entity.status.value,
        events=[StatusChangeEventResponse.from_event(e) for e in entity.status_history],
    )
