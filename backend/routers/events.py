"""
Router events : publication d'événements par les services voisins
(messagerie, inscription, projets). Accès par jeton de service uniquement.
"""
from fastapi import APIRouter, Depends

from core.dependencies import get_container, require_service_caller
from core.exceptions import UnauthorizedError
from models.events import ConnectionAccepted, ConnectionRejected, ConnectionRequested, EventEnvelope
from services.container import Container

router = APIRouter()


@router.post(
    "",
    status_code=202,
    summary="Publier un événement métier",
    dependencies=[Depends(require_service_caller)],
)
async def publish_event(
    body: EventEnvelope,
    container: Container = Depends(get_container),
):
    event = body.event
    # Les événements de connexion sont émis par le graphe lui-même
    if isinstance(event, (ConnectionRequested, ConnectionAccepted, ConnectionRejected)):
        raise UnauthorizedError("Événement réservé au service de connexions")
    await container.dispatcher.publish(event)
    return {"message": "Événement accepté", "type": event.type}
