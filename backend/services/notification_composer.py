"""
Composer : transforme un événement métier en document Notification prêt à
être persisté (statut pending, planifié immédiatement).

Une seule notification par événement ; l'éclatement par destinataire se fait
au moment de l'envoi (scheduler).
"""
import logging
from typing import Callable, Optional
from datetime import datetime

from config import settings
from core.exceptions import InvalidArgumentError
from core.utils import dedupe, new_id, utcnow
from models.common import (
    DeliveryChannel,
    NotificationPriority,
    NotificationStatus,
    NotificationType,
)
from models.events import (
    ConnectionAccepted,
    ConnectionRejected,
    ConnectionRequested,
    MessageSent,
    ProjectJoinRequested,
    UserRegistered,
)
from models.notification import Notification, NotificationAction, RelatedEntity
from models.user import UserProfile
from services.identity_service import IdentityResolver

logger = logging.getLogger(__name__)


class NotificationComposer:
    def __init__(
        self,
        identity: IdentityResolver,
        base_url: str = settings.BASE_URL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._identity = identity
        self._base_url = base_url.rstrip("/")
        self._clock = clock

    async def compose(self, event) -> Notification:
        if isinstance(event, ConnectionRequested):
            return await self._connection_request(event)
        if isinstance(event, ConnectionAccepted):
            return await self._connection_accepted(event)
        if isinstance(event, ConnectionRejected):
            return await self._connection_rejected(event)
        if isinstance(event, UserRegistered):
            return await self._new_user(event)
        if isinstance(event, MessageSent):
            return await self._message(event)
        if isinstance(event, ProjectJoinRequested):
            return await self._project_join_request(event)
        raise InvalidArgumentError(f"Événement non supporté : {type(event).__name__}")

    def welcome_email(self, profile: UserProfile) -> Optional[Notification]:
        """Email de bienvenue, envoyé par le scheduler comme toute notification."""
        if not profile.email:
            logger.info(f"Pas d'email pour {profile.uid}, bienvenue ignorée")
            return None
        return self._build(
            actor_id=profile.uid,
            actor_name=profile.name,
            type=NotificationType.WELCOME,
            category="account",
            title="Welcome to LetUsConnect",
            content=(
                f"Hi {profile.name}, your account is ready. "
                "Complete your profile and start connecting with the community."
            ),
            recipients=[profile.uid],
            channel=DeliveryChannel.EMAIL,
            recipient=profile.email,
            dedupe_key=f"welcome:{profile.uid}",
            actions=[NotificationAction(label="Open LetUsConnect", url=f"{self._base_url}/", is_primary=True)],
        )

    # ── Modèles par type d'événement ──────────────────────────────────────────

    async def _connection_request(self, event: ConnectionRequested) -> Notification:
        from_name = await self._identity.get_display_name(event.from_uid)
        return self._build(
            actor_id=event.from_uid,
            actor_name=from_name,
            type=NotificationType.CONNECTION_REQUEST,
            category="connection",
            title=f"{from_name} sent you a connection request",
            content=event.message or f"{from_name} would like to connect with you",
            recipients=[event.to_uid],
            related=[RelatedEntity(id=event.from_uid, type="user")],
            actions=[
                NotificationAction(label="Accept", url=f"{self._base_url}/connections/requests", is_primary=True),
                NotificationAction(label="View profile", url=f"{self._base_url}/users/{event.from_uid}"),
            ],
        )

    async def _connection_accepted(self, event: ConnectionAccepted) -> Notification:
        to_name = await self._identity.get_display_name(event.to_uid)
        return self._build(
            actor_id=event.to_uid,
            actor_name=to_name,
            type=NotificationType.CONNECTION_ACCEPTED,
            category="connection",
            title=f"{to_name} accepted your connection request",
            content=f"{to_name} has accepted your connection request",
            recipients=[event.from_uid],
            related=[RelatedEntity(id=event.to_uid, type="user")],
        )

    async def _connection_rejected(self, event: ConnectionRejected) -> Notification:
        to_name = await self._identity.get_display_name(event.to_uid)
        return self._build(
            actor_id=event.to_uid,
            actor_name=to_name,
            type=NotificationType.CONNECTION_REJECTED,
            category="connection",
            priority=NotificationPriority.LOW,
            important=False,
            title=f"{to_name} declined your connection request",
            content=f"{to_name} is not accepting your connection request for now",
            recipients=[event.from_uid],
        )

    async def _new_user(self, event: UserRegistered) -> Notification:
        name = await self._identity.get_display_name(event.uid)
        recipients = await self._identity.list_user_ids(exclude=event.uid)
        return self._build(
            actor_id=event.uid,
            actor_name=name,
            type=NotificationType.NEW_USER,
            category="new_user",
            title=f"{name} has joined the platform",
            content=f"{name} has created an account on the platform. Say hello!",
            recipients=recipients,
            related=[RelatedEntity(id=event.uid, type="user")],
            dedupe_key=f"new_user:{event.uid}",
        )

    async def _message(self, event: MessageSent) -> Notification:
        sender_name = await self._identity.get_display_name(event.sender_uid)
        recipients = [uid for uid in dedupe(event.participants) if uid != event.sender_uid]
        read_by = []
        if event.include_actor:
            recipients.append(event.sender_uid)
            read_by.append(event.sender_uid)
        related = []
        metadata = {}
        if event.group_id:
            related.append(RelatedEntity(id=event.group_id, type="group_chat"))
            metadata["group_id"] = event.group_id
        return self._build(
            actor_id=event.sender_uid,
            actor_name=sender_name,
            type=NotificationType.MESSAGE,
            category="message",
            title=f"New message from {sender_name}",
            content=event.content or f"{sender_name} sent you a message",
            recipients=recipients,
            read_by=read_by,
            related=related,
            metadata=metadata,
        )

    async def _project_join_request(self, event: ProjectJoinRequested) -> Notification:
        name = await self._identity.get_display_name(event.requester_uid)
        project = event.project_title or "your project"
        return self._build(
            actor_id=event.requester_uid,
            actor_name=name,
            type=NotificationType.PROJECT_JOIN_REQUEST,
            category="project",
            priority=NotificationPriority.HIGH,
            title=f"{name} wants to join {project}",
            content=event.message or f"{name} has requested to join {project}",
            recipients=[uid for uid in event.owner_uids if uid != event.requester_uid],
            related=[
                RelatedEntity(id=event.project_id, type="project"),
                RelatedEntity(id=event.requester_uid, type="user"),
            ],
            metadata={"project_id": event.project_id},
            actions=[
                NotificationAction(
                    label="Review request",
                    url=f"{self._base_url}/projects/{event.project_id}/requests",
                    is_primary=True,
                ),
            ],
        )

    def _build(
        self,
        *,
        actor_id: str,
        actor_name: str,
        type: NotificationType,
        category: str,
        title: str,
        content: str,
        recipients: list,
        priority: NotificationPriority = NotificationPriority.NORMAL,
        important: bool = True,
        read_by: Optional[list] = None,
        related: Optional[list] = None,
        actions: Optional[list] = None,
        metadata: Optional[dict] = None,
        channel: DeliveryChannel = DeliveryChannel.PUSH,
        recipient: Optional[str] = None,
        dedupe_key: Optional[str] = None,
    ) -> Notification:
        now = self._clock()
        targeted = dedupe(recipients)
        read_by = set(read_by or [])
        return Notification(
            id=new_id("ntf"),
            user_id=actor_id,
            actor_id=actor_id,
            actor_name=actor_name,
            type=type.value,
            category=category,
            priority=priority,
            status=NotificationStatus.PENDING,
            title=title,
            content=content,
            metadata=metadata or {},
            related_entities=related or [],
            actions=actions or [],
            is_important=important,
            targeted_users=targeted,
            read_status={uid: uid in read_by for uid in targeted},
            delivery_channel=channel,
            recipient=recipient,
            dedupe_key=dedupe_key,
            scheduled_at=now,
            created_at=now,
            updated_at=now,
        )
