"""
Scheduler de notifications : worker asyncio unique par processus.

À chaque tick (toutes les SCHEDULER_INTERVAL_SECONDS), on récupère les
notifications dues (pending avec scheduled_at ≤ now, ou sending dont le bail
a expiré), les plus anciennes d'abord, et on les traite une par une :

1. bail : pending → sending (lease_holder, lease_expires_at), sinon on passe ;
2. expires_at ≤ now → cancelled, sans envoi ;
3. envoi via l'adaptateur du canal, borné par DISPATCH_TIMEOUT_SECONDS
   (par lot de destinataires pour le push) ;
4. succès → sent ; échec temporaire → pending (ou failed après
   SCHEDULER_MAX_ATTEMPTS tentatives) ; échec définitif → failed.

Les transitions après le bail sont conditionnées à status=sending et à notre
lease_holder : un scheduler qui a perdu son bail n'écrase rien.
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from core.exceptions import AdapterPermanentError, AdapterRetryableError
from core.store import ASCENDING, DocumentStore
from core.utils import as_utc, new_id, utcnow
from models.common import DeliveryChannel, NotificationStatus
from models.notification import Notification
from services.delivery_service import build_notification_html

logger = logging.getLogger(__name__)

COLLECTION = "notifications"


def push_channel(uid: str) -> str:
    """Topic FCM d'un utilisateur."""
    return f"user_{uid}"


class NotificationScheduler:
    def __init__(
        self,
        store: DocumentStore,
        adapters: dict,
        instance_id: Optional[str] = None,
        interval_seconds: float = 60.0,
        batch_size: int = 200,
        max_attempts: int = 3,
        lease_seconds: float = 60.0,
        dispatch_timeout: float = 30.0,
        push_batch_size: int = 100,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._adapters = adapters        # DeliveryChannel.value → adaptateur
        self.instance_id = instance_id or new_id("sch")
        self._interval = interval_seconds
        self._batch_size = batch_size
        self._max_attempts = max_attempts
        self._lease = timedelta(seconds=lease_seconds)
        self._dispatch_timeout = dispatch_timeout
        self._push_batch_size = max(1, push_batch_size)
        self._clock = clock
        self._task: Optional[asyncio.Task] = None
        self._stopping: Optional[asyncio.Event] = None

    # ── Cycle de vie ──────────────────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._loop())
        logger.info(f"Scheduler {self.instance_id} démarré (intervalle {self._interval}s)")

    async def stop(self) -> None:
        """Laisse le tick en cours se terminer ; les baux restants expireront seuls."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None
        logger.info(f"Scheduler {self.instance_id} arrêté")

    async def _loop(self) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.tick()
                if processed:
                    logger.info(f"Scheduler : {processed} notification(s) traitée(s)")
            except Exception as exc:
                logger.error(f"Erreur scheduler : {exc}", exc_info=True)
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass

    # ── Tick ──────────────────────────────────────────────────────────────────

    def _due_filter(self, now: datetime) -> dict:
        return {"$or": [
            {"status": NotificationStatus.PENDING.value, "scheduled_at": {"$lte": now}},
            {"status": NotificationStatus.SENDING.value, "lease_expires_at": {"$lt": now}},
        ]}

    async def tick(self, now: Optional[datetime] = None) -> int:
        """Traite un lot de notifications dues ; renvoie le nombre de baux obtenus."""
        now = now or self._clock()
        docs = await self._store.find(
            COLLECTION,
            self._due_filter(now),
            sort=[("scheduled_at", ASCENDING), ("id", ASCENDING)],
            limit=self._batch_size,
        )
        processed = 0
        for doc in docs:
            if await self._process(doc["id"], now):
                processed += 1
        return processed

    async def _process(self, notification_id: str, now: datetime) -> bool:
        leased = await self._store.conditional_update(
            COLLECTION,
            notification_id,
            self._due_filter(now),
            {"$set": {
                "status":           NotificationStatus.SENDING.value,
                "lease_holder":     self.instance_id,
                "lease_expires_at": now + self._lease,
                "updated_at":       now,
            }},
        )
        if leased is None:
            # Pris par un autre scheduler ou annulé entre-temps
            return False
        notification = Notification.from_doc(leased)

        expires_at = as_utc(notification.expires_at)
        if expires_at is not None and expires_at <= now:
            await self._finish(notification_id, {
                "status": NotificationStatus.CANCELLED.value,
                "last_error": "expired",
            }, now)
            logger.info(f"Notification {notification_id} expirée, annulée sans envoi")
            return True

        attempts = notification.attempts + 1
        progress: list[str] = []
        try:
            await self._deliver(notification, progress)
        except AdapterPermanentError as e:
            await self._finish(notification_id, {
                "status": NotificationStatus.FAILED.value,
                "attempts": attempts,
                "last_error": e.message,
            }, now)
            logger.warning(f"Notification {notification_id} en échec définitif : {e.message}")
            return True
        except Exception as e:
            # Temporaire, délai dépassé ou erreur imprévue : nouvelle tentative au prochain tick
            if isinstance(e, AdapterRetryableError):
                reason = e.message
            elif isinstance(e, asyncio.TimeoutError):
                reason = f"délai de {self._dispatch_timeout}s dépassé"
            else:
                logger.exception(f"Erreur inattendue à l'envoi de {notification_id}")
                reason = str(e) or type(e).__name__
            if progress:
                # Diffusion partielle : la tentative n'est pas décomptée
                attempts = notification.attempts
                status = NotificationStatus.PENDING
            elif attempts >= self._max_attempts:
                status = NotificationStatus.FAILED
            else:
                status = NotificationStatus.PENDING
            await self._finish(notification_id, {
                "status": status.value,
                "attempts": attempts,
                "last_error": reason,
            }, now)
            logger.warning(
                f"Notification {notification_id} tentative {attempts}/{self._max_attempts} "
                f"échouée ({reason}, {len(progress)} destinataire(s) atteint(s)) → {status.value}"
            )
            return True

        await self._finish(notification_id, {
            "status": NotificationStatus.SENT.value,
            "sent_at": now,
            "attempts": attempts,
            "last_error": None,
        }, now)
        logger.info(f"Notification {notification_id} envoyée ({notification.delivery_channel})")
        if len(notification.targeted_users) == 1:
            await self._promote_if_read(notification_id, notification.targeted_users[0], now)
        return True

    async def _finish(self, notification_id: str, changes: dict, now: datetime) -> None:
        changes.update({"lease_holder": None, "lease_expires_at": None, "updated_at": now})
        done = await self._store.conditional_update(
            COLLECTION,
            notification_id,
            {"status": NotificationStatus.SENDING.value, "lease_holder": self.instance_id},
            {"$set": changes},
        )
        if done is None:
            logger.warning(f"Bail perdu sur {notification_id}, transition {changes['status']} ignorée")

    async def _promote_if_read(self, notification_id: str, uid: str, now: datetime) -> None:
        """Destinataire unique qui a lu avant la fin de l'envoi : sent → read."""
        await self._store.conditional_update(
            COLLECTION,
            notification_id,
            {"status": NotificationStatus.SENT.value, f"read_status.{uid}": True},
            {"$set": {"status": NotificationStatus.READ.value, "updated_at": now}},
        )

    # ── Envoi par canal ───────────────────────────────────────────────────────

    async def _deliver(self, notification: Notification, progress: list[str]) -> None:
        channel = notification.delivery_channel
        adapter = self._adapters.get(channel)
        if adapter is None:
            raise AdapterPermanentError(f"Aucun adaptateur pour le canal {channel}")

        if channel == DeliveryChannel.SMS:
            await asyncio.wait_for(
                adapter.send(notification.recipient, notification.content),
                timeout=self._dispatch_timeout,
            )
        elif channel == DeliveryChannel.EMAIL:
            await asyncio.wait_for(
                adapter.send(
                    notification.recipient,
                    notification.title,
                    notification.content,
                    build_notification_html(notification.title, notification.content),
                ),
                timeout=self._dispatch_timeout,
            )
        else:
            await self._publish(adapter, notification, progress)

    async def _publish(self, adapter, notification: Notification, progress: list[str]) -> None:
        """
        Un message par destinataire, par lots de push_batch_size. Chaque lot a
        son propre délai DISPATCH_TIMEOUT_SECONDS ; après chaque lot on ajoute
        les destinataires atteints à delivered_to et on prolonge le bail, si
        bien qu'une reprise ne renvoie rien à ceux déjà servis.
        """
        payload = {
            "notification_id": notification.id,
            "type":            notification.type,
            "category":        notification.category,
            "priority":        notification.priority,
            "title":           notification.title,
            "content":         notification.content,
            "actor_id":        notification.actor_id,
        }
        delivered = set(notification.delivered_to)
        remaining = [
            uid for uid in notification.targeted_users
            if uid not in delivered and not notification.is_read_by(uid)
        ]
        for start in range(0, len(remaining), self._push_batch_size):
            batch = remaining[start:start + self._push_batch_size]
            sent: list[str] = []
            try:
                await asyncio.wait_for(
                    self._publish_batch(adapter, batch, notification.type, payload, sent),
                    timeout=self._dispatch_timeout,
                )
            finally:
                if sent:
                    progress.extend(sent)
                    await self._record_delivered(notification.id, sent)

    async def _publish_batch(self, adapter, batch: list[str], event: str, payload: dict, sent: list[str]) -> None:
        for uid in batch:
            await adapter.publish(push_channel(uid), event, payload)
            sent.append(uid)

    async def _record_delivered(self, notification_id: str, uids: list[str]) -> None:
        now = self._clock()
        held = await self._store.conditional_update(
            COLLECTION,
            notification_id,
            {"status": NotificationStatus.SENDING.value, "lease_holder": self.instance_id},
            {
                "$addToSet": {"delivered_to": {"$each": uids}},
                "$set": {"lease_expires_at": now + self._lease, "updated_at": now},
            },
        )
        if held is None:
            raise AdapterRetryableError(f"Bail perdu sur {notification_id} pendant la diffusion")
