"""Workflow audit trail."""

import logging
from enum import Enum
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hedwig.domain.enums import WorkflowActor, WorkflowEntity, WorkflowEventType
from hedwig.domain.models import WorkflowEvent

logger = logging.getLogger(__name__)


def _value(status) -> Optional[str]:
    if status is None:
        return None
    return status.value if isinstance(status, Enum) else str(status)


def record_event(
    db: AsyncSession,
    entity_type: WorkflowEntity,
    entity_id: str,
    event_type: WorkflowEventType,
    actor: WorkflowActor,
    from_status=None,
    to_status=None,
    contract_id: Optional[str] = None,
    data: Optional[dict] = None,
) -> WorkflowEvent:
    """Stage an immutable audit row; it is committed with the transition it describes."""
    event = WorkflowEvent(
        entity_type=entity_type.value,
        entity_id=entity_id,
        contract_id=contract_id,
        event_type=event_type.value,
        actor=actor.value,
        from_status=_value(from_status),
        to_status=_value(to_status),
        data=data,
    )
    db.add(event)
    logger.info(
        "%s %s: %s → %s (actor=%s)",
        entity_type.value.capitalize(), entity_id,
        _value(from_status), _value(to_status), actor.value,
    )
    return event
