"""
Router notifications : boîte de réception de l'utilisateur connecté.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from core.dependencies import get_container, get_current_user
from models.notification import NotificationPage, NotificationStats, NotificationView
from models.user import UserProfile
from services.container import Container

router = APIRouter()


@router.get("", response_model=NotificationPage, summary="Mes notifications (paginées)")
async def list_notifications(
    limit: Optional[int] = Query(None, description="Taille de page, bornée à [1, 100]"),
    cursor: Optional[str] = Query(None, description="id de la dernière notification reçue"),
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    return await container.notifications.list(current_user.uid, limit=limit, cursor=cursor)


@router.get("/unread-count", summary="Nombre de notifications non lues")
async def unread_count(
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    return {"unread": await container.notifications.unread_count(current_user.uid)}


@router.get("/stats", response_model=NotificationStats, summary="Statistiques de notifications")
async def notification_stats(
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    return await container.notifications.stats(current_user.uid)


@router.put("/read-all", summary="Tout marquer comme lu")
async def mark_all_read(
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    updated = await container.notifications.mark_all_read(current_user.uid)
    return {"updated": updated}


@router.get("/{notification_id}", response_model=NotificationView, summary="Détail notification")
async def get_notification(
    notification_id: str,
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    return await container.notifications.get(notification_id, current_user.uid)


@router.put("/{notification_id}/read", response_model=NotificationView, summary="Marquer comme lue")
async def mark_read(
    notification_id: str,
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    return await container.notifications.mark_read(notification_id, current_user.uid)


@router.put("/{notification_id}/archive", response_model=NotificationView, summary="Archiver")
async def archive(
    notification_id: str,
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    return await container.notifications.archive(notification_id, current_user.uid)
