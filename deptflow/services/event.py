import enum
import logging
import uuid

logger = logging.getLogger(__name__)


class EventType(enum.Enum):
    document_created = "document.created"
    document_updated = "document.updated"
    document_deleted = "document.deleted"
    document_status_changed = "document.status_changed"

    version_created = "version.created"

    workflow_submitted = "workflow.submitted"
    workflow_step_completed = "workflow.step_completed"
    workflow_changes_requested = "workflow.changes_requested"
    workflow_completed = "workflow.completed"


def publish_event(
    event_type: EventType,
    entity_type: str,
    entity_id: str | uuid.UUID,
    actor_id: str | uuid.UUID | None = None,
    document_id: str | uuid.UUID | None = None,
    payload: dict | None = None,
) -> None:
    """Fire-and-forget event publishing.

    Queues the notification dispatch task. Never raises; failures are
    logged and dropped.
    """
    try:
        from deptflow.tasks.notifications import dispatch_notifications

        dispatch_notifications.delay(
            event_type=event_type.value,
            entity_type=entity_type,
            entity_id=str(entity_id),
            actor_id=str(actor_id) if actor_id else None,
            document_id=str(document_id) if document_id else None,
            payload=payload or {},
        )
        logger.debug(
            "Published event %s for %s/%s", event_type.value, entity_type, entity_id
        )
    except Exception as e:
        logger.exception("Failed to publish event %s: %s", event_type.value, e)
