from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from deptflow.api.deps import get_current_user, get_db
from deptflow.models.directory import User
from deptflow.schemas.common import ListResponse
from deptflow.schemas.notification import NotificationRead, UnreadCountResponse
from deptflow.services import notification as notification_service

router = APIRouter(prefix="/notifications", tags=["notifications"])


@router.get("", response_model=ListResponse[NotificationRead])
def list_notifications(
    is_read: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return notification_service.notifications.list_response(
        db, user.id, is_read, order_by, order_dir, limit, offset
    )


@router.get("/unread-count", response_model=UnreadCountResponse)
def unread_count(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return UnreadCountResponse(
        count=notification_service.notifications.unread_count(db, user.id)
    )


@router.post("/read-all")
def mark_all_read(
    user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    updated = notification_service.notifications.mark_all_read(db, user.id)
    return {"updated": updated}


@router.post("/{notification_id}/read", response_model=NotificationRead)
def mark_read(
    notification_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return notification_service.notifications.mark_read(db, notification_id, user.id)


@router.delete("/{notification_id}", status_code=status.HTTP_204_NO_CONTENT)
def dismiss_notification(
    notification_id: str,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    notification_service.notifications.dismiss(db, notification_id, user.id)
