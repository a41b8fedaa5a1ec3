from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.orm import Session, selectinload

from deptflow.errors import NotFound
from deptflow.metrics import notifications_created_total
from deptflow.models.approval import Document, Notification, WorkflowInstance
from deptflow.models.directory import User
from deptflow.services.common import apply_ordering, apply_pagination, coerce_uuid
from deptflow.services.directory import Users
from deptflow.services.event import EventType
from deptflow.services.response import ListResponseMixin

logger = logging.getLogger(__name__)

# event -> (notification type tag, message template)
NOTIFIABLE_EVENTS: dict[str, tuple[str, str]] = {
    EventType.workflow_submitted.value: (
        "document_submitted",
        'Document "{title}" was submitted for review{scope}',
    ),
    EventType.workflow_step_completed.value: (
        "step_completed",
        'Step completed for "{title}"{scope}',
    ),
    EventType.workflow_changes_requested.value: (
        "changes_requested",
        'Changes were requested on "{title}"{scope}',
    ),
    EventType.workflow_completed.value: (
        "document_approved",
        'Document "{title}" has been approved{scope}',
    ),
}


def _users_for_current_step(db: Session, document: Document) -> list[User]:
    instance = document.workflow
    step = instance.step_at(instance.current_step) if instance else None
    if step is None:
        return []
    stmt = select(User).where(User.role == step.role).where(User.is_active.is_(True))
    if step.department_id is not None:
        stmt = stmt.where(User.departments.any(id=step.department_id))
    return list(db.scalars(stmt).all())


def resolve_recipients(
    db: Session, document: Document, event_type: str, actor_id=None
) -> set[uuid.UUID]:
    """Users to notify about ``event_type`` on ``document``.

    Department members plus admins when the document is department scoped,
    admins only otherwise. Submissions also reach whoever can act on the
    current step; change requests and approvals also reach the author. The
    actor is never notified about their own action.
    """
    recipients = {admin.id for admin in Users.admins(db)}
    if document.departments:
        recipients |= {
            user.id for user in Users.in_departments(db, document.department_ids)
        }
    if event_type == EventType.workflow_submitted.value:
        recipients |= {user.id for user in _users_for_current_step(db, document)}
    if event_type in (
        EventType.workflow_changes_requested.value,
        EventType.workflow_completed.value,
    ):
        recipients.add(document.created_by_id)
    if actor_id is not None:
        recipients.discard(coerce_uuid(actor_id))
    return recipients


def render_message(document: Document, event_type: str) -> tuple[str, str] | None:
    entry = NOTIFIABLE_EVENTS.get(event_type)
    if entry is None:
        return None
    type_tag, template = entry
    names = ", ".join(sorted(dept.name for dept in document.departments))
    scope = f" in {names}" if names else ""
    return type_tag, template.format(title=document.title, scope=scope)


class Notifications(ListResponseMixin):
    @staticmethod
    def create_many(
        db: Session,
        user_ids,
        type_tag: str,
        message: str,
        document_id=None,
    ) -> list[Notification]:
        created = [
            Notification(
                user_id=coerce_uuid(user_id),
                type=type_tag,
                message=message,
                document_id=coerce_uuid(document_id),
            )
            for user_id in user_ids
        ]
        db.add_all(created)
        db.commit()
        notifications_created_total.labels(type=type_tag).inc(len(created))
        logger.info("Created %d %s notifications", len(created), type_tag)
        return created

    @staticmethod
    def notify_for_event(
        db: Session, event_type: str, document_id: str, actor_id: str | None
    ) -> int:
        rendered = None
        document = db.get(
            Document,
            coerce_uuid(document_id),
            options=[
                selectinload(Document.departments),
                selectinload(Document.workflow).selectinload(WorkflowInstance.steps),
            ],
        )
        if document is not None:
            rendered = render_message(document, event_type)
        if rendered is None:
            return 0
        type_tag, message = rendered
        recipients = resolve_recipients(db, document, event_type, actor_id)
        if not recipients:
            logger.warning(
                "No users to notify for %s on document %s", event_type, document_id
            )
            return 0
        Notifications.create_many(db, sorted(recipients), type_tag, message, document.id)
        return len(recipients)

    @staticmethod
    def get(db: Session, notification_id: str, user_id=None) -> Notification:
        notification = db.get(Notification, coerce_uuid(notification_id))
        if not notification or (
            user_id is not None and notification.user_id != coerce_uuid(user_id)
        ):
            raise NotFound("Notification not found")
        return notification

    @staticmethod
    def list(
        db: Session,
        user_id: str,
        is_read: bool | None,
        order_by: str,
        order_dir: str,
        limit: int,
        offset: int,
    ) -> list[Notification]:
        stmt = select(Notification).where(Notification.user_id == coerce_uuid(user_id))
        if is_read is not None:
            stmt = stmt.where(Notification.is_read == is_read)
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {"created_at": Notification.created_at},
        )
        return db.scalars(apply_pagination(stmt, limit, offset)).all()

    @staticmethod
    def mark_read(db: Session, notification_id: str, user_id) -> Notification:
        notification = Notifications.get(db, notification_id, user_id)
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = datetime.now(timezone.utc)
            db.commit()
            db.refresh(notification)
        return notification

    @staticmethod
    def mark_all_read(db: Session, user_id) -> int:
        now = datetime.now(timezone.utc)
        unread = db.scalars(
            select(Notification)
            .where(Notification.user_id == coerce_uuid(user_id))
            .where(Notification.is_read.is_(False))
        ).all()
        for n in unread:
            n.is_read = True
            n.read_at = now
        db.commit()
        logger.info(
            "Marked all %d notifications as read for user %s", len(unread), user_id
        )
        return len(unread)

    @staticmethod
    def unread_count(db: Session, user_id) -> int:
        return db.scalar(
            select(func.count())
            .select_from(Notification)
            .where(Notification.user_id == coerce_uuid(user_id))
            .where(Notification.is_read.is_(False))
        )

    @staticmethod
    def dismiss(db: Session, notification_id: str, user_id) -> None:
        notification = Notifications.get(db, notification_id, user_id)
        db.delete(notification)
        db.commit()
        logger.info("Dismissed notification %s", notification_id)


notifications = Notifications()
