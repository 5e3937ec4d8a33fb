"""
In-app notification endpoints.

- GET /notifications: newest first, optionally unread only, with the unread count
- PATCH /notifications/{id}: set the read flag
- DELETE /notifications/{id}: remove one notification
- POST /notifications/mark-all-read: mark everything read

A notification that belongs to someone else is reported as not found.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from sahab.auth.dependencies import get_current_user_id
from sahab.exceptions import NotFoundError
from sahab.models.notification import Notification
from sahab.storage.database import BillingDatabase, get_billing_db

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["Notifications"])


class NotificationUpdateRequest(BaseModel):
    read: bool = True


def _notification_payload(notification: Notification) -> dict[str, Any]:
    return {
        "id": notification.id,
        "type": notification.type.value,
        "title": notification.title,
        "message": notification.message,
        "actionUrl": notification.action_url,
        "metadata": notification.metadata,
        "isRead": notification.read,
        "createdAt": notification.created_at.isoformat(),
    }


@router.get("")
async def list_notifications(
    limit: int = Query(default=50, ge=1, le=200),
    unread_only: bool = Query(default=False, alias="unreadOnly"),
    user_id: str = Depends(get_current_user_id),
    db: BillingDatabase = Depends(get_billing_db),
) -> dict[str, Any]:
    notifications = await db.list_notifications(user_id, limit=limit, unread_only=unread_only)
    unread_count = await db.count_unread_notifications(user_id)

    return {
        "success": True,
        "data": {
            "notifications": [_notification_payload(n) for n in notifications],
            "unreadCount": unread_count,
        },
    }


@router.post("/mark-all-read")
async def mark_all_read(
    user_id: str = Depends(get_current_user_id),
    db: BillingDatabase = Depends(get_billing_db),
) -> dict[str, Any]:
    updated = await db.mark_all_notifications_read(user_id)
    logger.info("Notifications marked read", extra={"user_id": user_id, "count": updated})

    return {
        "success": True,
        "message": "All notifications marked as read",
        "data": {"updated": updated},
    }


@router.patch("/{notification_id}")
async def update_notification(
    notification_id: str,
    body: NotificationUpdateRequest | None = None,
    user_id: str = Depends(get_current_user_id),
    db: BillingDatabase = Depends(get_billing_db),
) -> dict[str, Any]:
    """Mark one notification read (or unread with ``{"read": false}``)."""
    read = body.read if body is not None else True
    notification = await db.set_notification_read(notification_id, user_id, read=read)
    if notification is None:
        raise NotFoundError("Notification not found")

    return {"success": True, "data": _notification_payload(notification)}


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: str,
    user_id: str = Depends(get_current_user_id),
    db: BillingDatabase = Depends(get_billing_db),
) -> dict[str, Any]:
    if not await db.delete_notification(notification_id, user_id):
        raise NotFoundError("Notification not found")

    return {"success": True, "message": "Notification deleted"}
