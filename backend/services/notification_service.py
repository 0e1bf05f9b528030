"""
Service notification : persistance (outbox), lecture par destinataire,
bits de lecture / archivage, planification et annulation.

Toutes les mutations passent par des mises à jour conditionnelles sur l'état
courant (statut, bit de lecture) : jamais de lecture-modification-écriture.
"""
import logging
import re
from collections import Counter
from datetime import datetime
from typing import Callable, List, Optional

from core.exceptions import (
    ConflictError,
    InvalidArgumentError,
    NotCancellableError,
    NotFoundError,
    NotTargetedError,
    UnauthorizedError,
)
from core.store import DESCENDING, DocumentStore, DuplicateKeyError
from core.utils import as_utc, new_id, utcnow
from models.common import DeliveryChannel, NotificationStatus
from models.notification import (
    Notification,
    NotificationPage,
    NotificationStats,
    NotificationView,
    ScheduleNotificationRequest,
)

logger = logging.getLogger(__name__)

COLLECTION = "notifications"
NEWEST_FIRST = [("created_at", DESCENDING), ("id", DESCENDING)]
RECENT_ACTIVITY_SIZE = 5

E164_RE = re.compile(r"^\+[1-9]\d{6,14}$")
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def _uid_key(uid: str) -> str:
    """L'uid sert de clé de sous-document (read_status.<uid>)."""
    if not uid or "." in uid or uid.startswith("$"):
        raise InvalidArgumentError("uid invalide")
    return uid


class NotificationService:
    def __init__(
        self,
        store: DocumentStore,
        page_size: int = 20,
        page_max: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._page_size = page_size
        self._page_max = page_max
        self._clock = clock

    # ── Écriture (outbox) ─────────────────────────────────────────────────────

    async def create(self, notification: Notification) -> Notification:
        """Persiste une notification ; un rejeu avec la même dedupe_key renvoie l'existante."""
        try:
            await self._store.insert(COLLECTION, notification.to_doc())
        except DuplicateKeyError:
            if notification.dedupe_key:
                existing = await self._store.find_one(COLLECTION, {"dedupe_key": notification.dedupe_key})
                if existing is not None:
                    logger.info(f"Notification déjà créée pour {notification.dedupe_key}")
                    return Notification.from_doc(existing)
            raise ConflictError(f"Notification {notification.id} déjà existante")
        logger.info(
            f"Notification {notification.id} ({notification.type}) créée "
            f"pour {len(notification.targeted_users)} destinataire(s)"
        )
        return notification

    async def schedule(self, request: ScheduleNotificationRequest, user_id: str) -> Notification:
        """Planifie un SMS ou un email explicite pour `user_id`."""
        now = self._clock()
        scheduled_at = as_utc(request.scheduled_at) or now
        expires_at = as_utc(request.expires_at)
        if expires_at is not None and expires_at <= scheduled_at:
            raise InvalidArgumentError("expires_at doit être postérieur à scheduled_at")

        if request.channel == DeliveryChannel.SMS:
            if not E164_RE.match(request.recipient):
                raise InvalidArgumentError("Numéro au format E.164 attendu (+41791234567)")
        elif request.channel == DeliveryChannel.EMAIL:
            if not EMAIL_RE.match(request.recipient):
                raise InvalidArgumentError("Adresse email invalide")
        else:
            raise InvalidArgumentError("Seuls les canaux sms et email sont planifiables")

        notification = Notification(
            id=new_id("ntf"),
            user_id=user_id,
            actor_id=user_id,
            type=request.channel,
            category="scheduled",
            priority=request.priority,
            status=NotificationStatus.PENDING,
            title=request.subject,
            content=request.content,
            metadata=request.metadata,
            delivery_channel=request.channel,
            recipient=request.recipient,
            scheduled_at=scheduled_at,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        await self._store.insert(COLLECTION, notification.to_doc())
        logger.info(f"Notification {notification.id} ({request.channel}) planifiée pour {scheduled_at.isoformat()}")
        return notification

    async def cancel(self, notification_id: str, requested_by: Optional[str] = None) -> Notification:
        """pending → cancelled. Idempotent si déjà annulée."""
        notification = await self._load(notification_id)
        if requested_by is not None and notification.user_id != requested_by:
            raise UnauthorizedError("Seul le créateur peut annuler cette notification")

        updated = await self._store.conditional_update(
            COLLECTION,
            notification_id,
            {"status": NotificationStatus.PENDING.value},
            {"$set": {"status": NotificationStatus.CANCELLED.value, "updated_at": self._clock()}},
        )
        if updated is not None:
            logger.info(f"Notification {notification_id} annulée")
            return Notification.from_doc(updated)

        # Perdu la course ou statut déjà avancé : on relit pour trancher
        current = await self._load(notification_id)
        if current.status == NotificationStatus.CANCELLED:
            return current
        raise NotCancellableError(f"Notification {notification_id} au statut {current.status}, non annulable")

    # ── Lecture ───────────────────────────────────────────────────────────────

    async def get(self, notification_id: str, uid: str) -> NotificationView:
        notification = await self._load(notification_id)
        if not notification.is_targeted(uid):
            raise NotTargetedError()
        return NotificationView.for_user(notification, uid)

    async def list(
        self,
        uid: str,
        limit: Optional[int] = None,
        cursor: Optional[str] = None,
    ) -> NotificationPage:
        """Notifications ciblant `uid`, les plus récentes d'abord, paginées par curseur."""
        _uid_key(uid)
        limit = self._page_size if limit is None else max(1, min(limit, self._page_max))

        anchor = None
        if cursor:
            anchor = await self._store.get(COLLECTION, cursor)
            if anchor is None or uid not in anchor.get("targeted_users", []):
                raise InvalidArgumentError("Curseur de pagination invalide")

        docs = await self._store.find(
            COLLECTION,
            {"targeted_users": uid},
            sort=NEWEST_FIRST,
            limit=limit + 1,
            start_after=anchor,
        )
        has_more = len(docs) > limit
        docs = docs[:limit]
        items = [NotificationView.for_user(Notification.from_doc(d), uid) for d in docs]
        return NotificationPage(items=items, next_cursor=docs[-1]["id"] if has_more and docs else None)

    async def list_owned(self, uid: str, status: Optional[NotificationStatus] = None) -> List[Notification]:
        """Notifications SMS / email planifiées par `uid`."""
        filters = {
            "user_id": uid,
            "type": {"$in": [DeliveryChannel.SMS.value, DeliveryChannel.EMAIL.value]},
        }
        if status is not None:
            filters["status"] = status.value if isinstance(status, NotificationStatus) else status
        docs = await self._store.find(COLLECTION, filters, sort=NEWEST_FIRST)
        return [Notification.from_doc(d) for d in docs]

    async def unread_count(self, uid: str) -> int:
        key = _uid_key(uid)
        return await self._store.count(COLLECTION, {
            "targeted_users": uid,
            f"read_status.{key}": False,
            f"is_archived.{key}": {"$ne": True},
        })

    async def stats(self, uid: str) -> NotificationStats:
        key = _uid_key(uid)
        docs = await self._store.find(
            COLLECTION,
            {"targeted_users": uid, f"is_archived.{key}": {"$ne": True}},
            sort=NEWEST_FIRST,
        )
        notifications = [Notification.from_doc(d) for d in docs]
        unread = [n for n in notifications if not n.is_read_by(uid)]
        return NotificationStats(
            unread=len(unread),
            by_category=dict(Counter(n.category for n in notifications)),
            by_priority=dict(Counter(n.priority for n in notifications)),
            recent_activity=[
                NotificationView.for_user(n, uid) for n in notifications[:RECENT_ACTIVITY_SIZE]
            ],
        )

    # ── Bits par destinataire ─────────────────────────────────────────────────

    async def mark_read(self, notification_id: str, uid: str) -> NotificationView:
        """Idempotent : un second appel ne modifie rien."""
        key = _uid_key(uid)
        notification = await self._load(notification_id)
        if not notification.is_targeted(uid):
            raise NotTargetedError()
        if notification.is_read_by(uid):
            return NotificationView.for_user(notification, uid)

        now = self._clock()
        single = len(notification.targeted_users) == 1
        changes = {f"read_status.{key}": True, "updated_at": now}
        if single:
            changes["read_at"] = now
        updated = await self._store.conditional_update(
            COLLECTION, notification_id, {f"read_status.{key}": {"$ne": True}}, {"$set": changes},
        )
        if updated is None:
            # Marquée lue entre-temps par une requête concurrente
            return NotificationView.for_user(await self._load(notification_id), uid)

        if single:
            # sent → read uniquement : pending / failed gardent leur statut d'envoi
            promoted = await self._store.conditional_update(
                COLLECTION,
                notification_id,
                {"status": NotificationStatus.SENT.value},
                {"$set": {"status": NotificationStatus.READ.value}},
            )
            if promoted is not None:
                updated = promoted
        return NotificationView.for_user(Notification.from_doc(updated), uid)

    async def mark_all_read(self, uid: str) -> int:
        key = _uid_key(uid)
        docs = await self._store.find(COLLECTION, {"targeted_users": uid, f"read_status.{key}": False})
        for doc in docs:
            await self.mark_read(doc["id"], uid)
        if docs:
            logger.info(f"{len(docs)} notification(s) marquée(s) lue(s) pour {uid}")
        return len(docs)

    async def archive(self, notification_id: str, uid: str) -> NotificationView:
        key = _uid_key(uid)
        notification = await self._load(notification_id)
        if not notification.is_targeted(uid):
            raise NotTargetedError()
        if notification.is_archived_by(uid):
            return NotificationView.for_user(notification, uid)
        updated = await self._store.conditional_update(
            COLLECTION,
            notification_id,
            {f"is_archived.{key}": {"$ne": True}},
            {"$set": {f"is_archived.{key}": True, "updated_at": self._clock()}},
        )
        if updated is None:
            updated = await self._store.get(COLLECTION, notification_id)
        return NotificationView.for_user(Notification.from_doc(updated), uid)

    async def _load(self, notification_id: str) -> Notification:
        doc = await self._store.get(COLLECTION, notification_id)
        if doc is None:
            raise NotFoundError("Notification")
        return Notification.from_doc(doc)
