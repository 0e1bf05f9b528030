"""
Router scheduler : SMS / emails planifiés par l'utilisateur connecté.
"""
from typing import List, Optional

from fastapi import APIRouter, Depends

from core.dependencies import get_container, get_current_user
from models.common import NotificationStatus
from models.notification import ScheduleNotificationRequest, ScheduledNotificationResponse
from models.user import UserProfile
from services.container import Container

router = APIRouter()


@router.post("/notifications", response_model=ScheduledNotificationResponse, status_code=201, summary="Planifier un SMS ou un email")
async def schedule_notification(
    body: ScheduleNotificationRequest,
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    return await container.notifications.schedule(body, current_user.uid)


@router.get("/notifications", response_model=List[ScheduledNotificationResponse], summary="Mes notifications planifiées")
async def list_scheduled(
    status: Optional[NotificationStatus] = None,
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    return await container.notifications.list_owned(current_user.uid, status)


@router.delete("/notifications/{notification_id}", response_model=ScheduledNotificationResponse, summary="Annuler une notification planifiée")
async def cancel_scheduled(
    notification_id: str,
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    return await container.notifications.cancel(notification_id, requested_by=current_user.uid)
