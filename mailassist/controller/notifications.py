from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from mailassist.database import get_db
from mailassist.model.user import User
from mailassist.model.notification import Notification
from mailassist.controller.auth import get_current_user
from mailassist.schemas.notification import NotificationUpdate, NotificationResponse
from mailassist.utils.response import success, not_found

router = APIRouter()

LATEST_LIMIT = 50


def _get_owned_notification(db: Session, notification_id: int, user_id: int):
    return db.query(Notification).filter(
        Notification.id == notification_id,
        Notification.user_id == user_id
    ).first()


@router.get("")
async def list_notifications(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    notifications = db.query(Notification).filter(
        Notification.user_id == current_user.id
    ).order_by(Notification.created_at.desc(), Notification.id.desc()).limit(LATEST_LIMIT).all()
    unread_count = db.query(Notification).filter(
        Notification.user_id == current_user.id,
        Notification.is_read == False
    ).count()
    return success({
        "notifications": [NotificationResponse.model_validate(n) for n in notifications],
        "unread_count": unread_count,
    })


@router.post("/mark-all-read")
async def mark_all_read(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    updated = db.query(Notification).filter(
        Notification.user_id == current_user.id,
        Notification.is_read == False
    ).update({"is_read": True}, synchronize_session=False)
    db.commit()
    return success({"updated": updated}, msg="已全部标记为已读")


@router.patch("/{notification_id}")
async def update_notification(
    notification_id: int,
    payload: NotificationUpdate = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    notification = _get_owned_notification(db, notification_id, current_user.id)
    if not notification:
        return not_found("通知不存在")

    notification.is_read = payload.is_read if payload else True
    db.commit()
    db.refresh(notification)
    return success(NotificationResponse.model_validate(notification))


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    notification = _get_owned_notification(db, notification_id, current_user.id)
    if not notification:
        return not_found("通知不存在")

    db.delete(notification)
    db.commit()
    return success(msg="通知已删除")
