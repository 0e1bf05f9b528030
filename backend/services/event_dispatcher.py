"""
Dispatcher d'événements : relie les changements d'état métier au composer.

Appelé après le commit d'une opération ; la composition et la persistance se
font dans une tâche asyncio en arrière-plan. Une erreur ici ne remonte jamais
à l'opération métier : elle est journalisée avec un identifiant de corrélation.
"""
import asyncio
import logging
from typing import Optional, Set

from core.utils import new_id
from models.events import ConnectionRejected, UserRegistered
from models.notification import Notification
from services.identity_service import IdentityResolver
from services.notification_composer import NotificationComposer
from services.notification_service import NotificationService

logger = logging.getLogger(__name__)


class EventDispatcher:
    def __init__(
        self,
        composer: NotificationComposer,
        notifications: NotificationService,
        identity: IdentityResolver,
        notify_on_reject: bool = False,
        background: bool = True,
    ):
        self._composer = composer
        self._notifications = notifications
        self._identity = identity
        self._notify_on_reject = notify_on_reject
        self._background = background
        self._tasks: Set[asyncio.Task] = set()

    def emit(self, event) -> Optional[asyncio.Task]:
        """Planifie le traitement de l'événement sans bloquer l'appelant."""
        task = asyncio.create_task(self.dispatch(event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def publish(self, event) -> None:
        """Point d'entrée HTTP : en ligne si background=False, sinon en tâche de fond."""
        if self._background:
            self.emit(event)
        else:
            await self.dispatch(event)

    async def dispatch(self, event) -> Optional[Notification]:
        correlation_id = new_id("evt")
        try:
            if isinstance(event, ConnectionRejected) and not self._notify_on_reject:
                logger.debug(f"[{correlation_id}] refus {event.from_uid} → {event.to_uid} non notifié")
                return None

            notification = await self._composer.compose(event)
            if not notification.targeted_users:
                logger.info(f"[{correlation_id}] {event.type} : aucun destinataire, rien à créer")
                created = None
            else:
                created = await self._notifications.create(notification)

            if isinstance(event, UserRegistered):
                await self._welcome(event.uid, correlation_id)
            return created
        except Exception as exc:
            logger.error(
                f"[{correlation_id}] échec du traitement de l'événement {getattr(event, 'type', event)} : {exc}",
                exc_info=True,
            )
            return None

    async def _welcome(self, uid: str, correlation_id: str) -> None:
        profile = await self._identity.get_user(uid)
        if profile is None:
            logger.warning(f"[{correlation_id}] profil {uid} introuvable, pas d'email de bienvenue")
            return
        welcome = self._composer.welcome_email(profile)
        if welcome is not None:
            await self._notifications.create(welcome)

    async def drain(self) -> None:
        """Attend la fin des tâches en cours (arrêt propre, tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)
