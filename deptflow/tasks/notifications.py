import logging

from deptflow.celery_app import celery_app

logger = logging.getLogger(__name__)


@celery_app.task(
    name="deptflow.tasks.notifications.dispatch_notifications", ignore_result=True
)
def dispatch_notifications(
    event_type: str,
    entity_type: str,
    entity_id: str,
    actor_id: str | None = None,
    document_id: str | None = None,
    payload: dict | None = None,
) -> None:
    """Create in-app notifications for a workflow event.

    Best effort: any failure is logged and dropped.
    """
    if not document_id:
        return

    from deptflow.db import SessionLocal

    db = SessionLocal()
    try:
        _dispatch(db, event_type, document_id, actor_id)
    except Exception as e:
        db.rollback()
        logger.exception("Failed to dispatch notifications for %s: %s", event_type, e)
    finally:
        db.close()


def _dispatch(db, event_type: str, document_id: str, actor_id: str | None) -> int:
    from deptflow.services.notification import Notifications

    count = Notifications.notify_for_event(db, event_type, document_id, actor_id)
    logger.info(
        "Dispatched %d notifications for event %s on document %s",
        count,
        event_type,
        document_id,
    )
    return count
