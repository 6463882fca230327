import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from sqlalchemy.orm import Session, joinedload

from ..auth import get_current_user
from ..database import get_db
from ..models import Notification, User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/notifications", tags=["Notifications"])

MAX_NOTIFICATIONS = 50


class NotificationSender(BaseModel):
    name: Optional[str] = None
    email: Optional[str] = None


class NotificationResponse(BaseModel):
    id: int
    title: str
    message: str
    type: str
    isRead: bool
    isUrgent: bool
    sender: Optional[NotificationSender] = None
    createdAt: datetime


class NotificationListResponse(BaseModel):
    notifications: list[NotificationResponse]
    unreadCount: Optional[int] = None


class MarkReadRequest(BaseModel):
    notificationId: int


@router.get("", response_model=NotificationListResponse)
async def get_notifications(
    unreadOnly: bool = Query(False),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Get the current user's notifications, newest first"""
    query = (
        db.query(Notification)
        .options(joinedload(Notification.sender))
        .filter(Notification.receiver_id == current_user.id)
    )
    if unreadOnly:
        query = query.filter(Notification.is_read.is_(False))

    notifications = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(MAX_NOTIFICATIONS).all()

    return NotificationListResponse(
        notifications=[
            NotificationResponse(
                id=n.id,
                title=n.title,
                message=n.message,
                type=n.type,
                isRead=n.is_read,
                isUrgent=n.is_urgent,
                sender=NotificationSender(name=n.sender.name or n.sender.email, email=n.sender.email)
                if n.sender
                else None,
                createdAt=n.created_at,
            )
            for n in notifications
        ],
        unreadCount=len(notifications) if unreadOnly else None,
    )


@router.post("/mark-read")
async def mark_notification_read(
    data: MarkReadRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Mark one of the current user's notifications as read"""
    notification = db.query(Notification).filter(Notification.id == data.notificationId).first()
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    if notification.receiver_id != current_user.id:
        raise HTTPException(status_code=403, detail="Forbidden")

    notification.is_read = True
    db.commit()
    return {"success": True}


@router.post("/mark-all-read")
async def mark_all_notifications_read(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    updated = (
        db.query(Notification)
        .filter(Notification.receiver_id == current_user.id, Notification.is_read.is_(False))
        .update({Notification.is_read: True}, synchronize_session=False)
    )
    db.commit()
    logger.info(f"🔔 Marked {updated} notifications read for user {current_user.id}")
    return {"success": True, "updated": updated}
