"""
Transaction boundary shared by every engine service.

One engine operation == one unit of work:
- all staged writes (entity rows, audit rows, outbox events) commit together;
- any failure rolls everything back and drops the queued events;
- a lost optimistic-concurrency race (StaleDataError) or a violated unique index
  (IntegrityError) is reported as Conflict. It is never retried here.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Optional, Type

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from ..errors import Conflict, NotFound, ValidationError
from ..events import discard_pending_events, publish_pending_events
from ..extensions import db

logger = logging.getLogger(__name__)


@contextmanager
def unit_of_work(what: str):
    """Commit on success, roll back on any exception, publish events after commit."""
    try:
        yield
        db.session.commit()
    except StaleDataError as exc:
        db.session.rollback()
        discard_pending_events()
        logger.info("Concurrent modification during %s", what)
        raise Conflict(f"{what}: record was modified concurrently; re-read and retry.") from exc
    except IntegrityError as exc:
        db.session.rollback()
        discard_pending_events()
        logger.info("Integrity violation during %s: %s", what, exc.orig)
        raise Conflict(f"{what}: conflicting state in storage.") from exc
    except BaseException:
        db.session.rollback()
        discard_pending_events()
        raise
    publish_pending_events()


def get_or_404(model: Type[Any], entity_id: Optional[int], label: Optional[str] = None):
    """Load by primary key or raise NotFound."""
    entity = db.session.get(model, entity_id) if entity_id is not None else None
    if entity is None:
        raise NotFound(f"{label or model.__name__} {entity_id} not found.")
    return entity


def check_version(entity: Any, expected_version: Optional[int], label: str, *, required: bool = True) -> None:
    """Fail Conflict when the caller's read version is stale."""
    if expected_version is None:
        if required:
            raise ValidationError(f"expected_version is required to modify {label} {entity.id}.")
        return
    if isinstance(expected_version, bool) or not isinstance(expected_version, int):
        raise ValidationError("expected_version must be an integer.")
    if entity.version != expected_version:
        raise Conflict(
            f"{label} {entity.id} is at version {entity.version}, not {expected_version}; re-read and retry.",
            details={"current_version": entity.version},
        )
