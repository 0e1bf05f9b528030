"""
Router connections : graphe de connexions de l'utilisateur connecté.
"""
from fastapi import APIRouter, Depends, Request

from core.dependencies import get_container, get_current_user
from core.limiter import limiter
from models.connection import ConnectionCount, SendConnectionRequest, UserConnections
from models.user import UserProfile
from services.container import Container

router = APIRouter()


@router.get("", response_model=UserConnections, summary="Mes connexions et demandes")
async def get_my_connections(
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    return await container.connections.get_connections(current_user.uid)


@router.get("/count", response_model=ConnectionCount, summary="Nombre de connexions actives")
async def count_my_connections(
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    count = await container.connections.count_connections(current_user.uid)
    return ConnectionCount(uid=current_user.uid, count=count)


@router.post("/requests", status_code=201, summary="Envoyer une demande de connexion")
@limiter.limit("20/minute")
async def send_request(
    request: Request,
    body: SendConnectionRequest,
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    await container.connections.send_request(current_user.uid, body.to_uid, body.message)
    return {"message": "Demande envoyée", "to_uid": body.to_uid}


@router.post("/requests/{from_uid}/accept", summary="Accepter une demande reçue")
async def accept_request(
    from_uid: str,
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    await container.connections.accept_request(from_uid, current_user.uid)
    return {"message": "Demande acceptée", "from_uid": from_uid}


@router.post("/requests/{from_uid}/reject", summary="Refuser une demande reçue")
async def reject_request(
    from_uid: str,
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    await container.connections.reject_request(from_uid, current_user.uid)
    return {"message": "Demande refusée", "from_uid": from_uid}


@router.delete("/requests/{to_uid}", summary="Retirer une demande envoyée")
async def withdraw_request(
    to_uid: str,
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    await container.connections.withdraw_request(current_user.uid, to_uid)
    return {"message": "Demande retirée", "to_uid": to_uid}


@router.delete("/{target_uid}", summary="Supprimer une connexion")
async def remove_connection(
    target_uid: str,
    current_user: UserProfile = Depends(get_current_user),
    container: Container = Depends(get_container),
):
    await container.connections.remove_connection(current_user.uid, target_uid)
    return {"message": "Connexion supprimée", "target_uid": target_uid}
