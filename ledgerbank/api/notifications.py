"""
Notification endpoints
"""

from fastapi import APIRouter, Depends, Query

from .auth import BankingSystem, Principal, get_banking_system, get_current_principal
from .responses import respond, notification_out
from ..exceptions import NotFoundError


router = APIRouter()


@router.get("")
def list_notifications(
    unread_only: bool = False,
    limit: int = Query(50, ge=1, le=200),
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    if not system.notifier:
        return respond({"notifications": [], "unread": 0}, "Notifications are disabled")
    notifications = system.notifier.list_notifications(principal.user_id, unread_only, limit)
    return respond({
        "notifications": [notification_out(n) for n in notifications],
        "unread": system.notifier.unread_count(principal.user_id)
    }, "Notifications retrieved successfully")


@router.put("/{notification_id}/read")
def mark_read(
    notification_id: str,
    principal: Principal = Depends(get_current_principal),
    system: BankingSystem = Depends(get_banking_system)
):
    if not system.notifier:
        raise NotFoundError("Notification not found")
    notification = system.notifier.mark_read(notification_id, principal.user_id)
    return respond({"notification": notification_out(notification)}, "Notification marked as read")
