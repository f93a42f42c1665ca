"""
billing/audit.py

Audit logging helper utilities.

Goals:
- Capture WHO did WHAT to WHICH entity, with BEFORE/AFTER snapshots.
- Store the actor's role as a snapshot (roles change; the audit must not).
- Store IP address when the call came through an HTTP request.

IMPORTANT:
- This helper ADDS AuditLog entries to the current SQLAlchemy session.
  The calling service controls transaction boundaries (commit/rollback),
  so the audit row commits or rolls back together with the change.
- Engine calls also come from CLI sweeps (no request context); IP is then NULL.
"""

from __future__ import annotations

import enum
import json
from typing import Any, Dict, Optional

from flask import has_request_context, request

from .extensions import db
from .models import AuditLog


def _safe_value(value: Any) -> Any:
    """
    Convert a column value to something json.dumps accepts.

    - Enums: their value.
    - int/str/bool/None/list/dict (JSON columns): unchanged.
    - datetime and anything else: str().
    """
    if isinstance(value, enum.Enum):
        return value.value
    if value is None or isinstance(value, (int, str, bool, list, dict)):
        return value
    return str(value)


def serialize_model(instance: Any) -> Dict[str, Any]:
    """
    Snapshot of a SQLAlchemy model instance based on table columns.

    Captures only scalar column values (not relationships).
    """
    return {column.name: _safe_value(getattr(instance, column.name)) for column in instance.__table__.columns}


def log_action(
    entity: Any,
    action: str,
    *,
    actor: Any = None,
    before: Optional[Dict[str, Any]] = None,
    after: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Add an AuditLog entry to the current db session.

    Parameters:
        entity: SQLAlchemy model instance with .id (flush first for new rows)
        action: verb, e.g. CREATE / ACCEPT / CONSUME
        actor: User or SYSTEM_ACTOR
        before / after: dict snapshots (optional)
    """
    entity_id = getattr(entity, "id", None)
    if entity_id is None:
        raise ValueError("log_action entity must have an 'id' attribute (after flush).")

    role = getattr(actor, "role", None)

    entry = AuditLog(
        actor_id=getattr(actor, "id", None),
        actor_role=getattr(role, "value", role),
        entity_type=entity.__class__.__name__,
        entity_id=int(entity_id),
        action=str(action),
        before_data=json.dumps(before, ensure_ascii=False) if before else None,
        after_data=json.dumps(after, ensure_ascii=False) if after else None,
        ip_address=request.remote_addr if has_request_context() else None,
    )
    db.session.add(entry)
