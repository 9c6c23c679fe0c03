from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.enums import ActivityAction, EntityType
from models.ledger_models import ActivityLog


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    return str(value)


def _to_json(value: dict[str, Any] | None) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=True, default=_json_default)


def log_activity(
    db: Session,
    entity_type: EntityType,
    entity_id: int,
    action: ActivityAction,
    actor_name: str | None = None,
    old_values: dict[str, Any] | None = None,
    new_values: dict[str, Any] | None = None,
    metadata: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> ActivityLog:
    entry = ActivityLog(
        EntityType=entity_type.value,
        EntityID=entity_id,
        Action=action.value,
        ActorName=actor_name,
        OldValues=_to_json(old_values),
        NewValues=_to_json(new_values),
        Metadata=_to_json(metadata),
        CreatedAt=created_at or datetime.now(),
    )
    db.add(entry)
    return entry


def list_activity(db: Session, entity_type: EntityType, entity_id: int) -> list[ActivityLog]:
    return list(
        db.execute(
            select(ActivityLog)
            .where(ActivityLog.EntityType == entity_type.value)
            .where(ActivityLog.EntityID == entity_id)
            .order_by(ActivityLog.ActivityID)
        ).scalars().all()
    )


def serialize_activity(entry: ActivityLog) -> dict:
    return {
        "activityID": entry.ActivityID,
        "entityType": entry.EntityType,
        "entityID": entry.EntityID,
        "action": entry.Action,
        "actorName": entry.ActorName,
        "oldValues": json.loads(entry.OldValues) if entry.OldValues else None,
        "newValues": json.loads(entry.NewValues) if entry.NewValues else None,
        "metadata": json.loads(entry.Metadata) if entry.Metadata else None,
        "createdAt": entry.CreatedAt,
    }
