"""
Assemblage des services au démarrage. Seul endroit (avec main.py) qui lit `settings`.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from config import Settings, settings as default_settings
from core.store import DocumentStore, MemoryStore
from models.common import DeliveryChannel
from services.connection_service import ConnectionService
from services.delivery_service import EmailAdapter, PushAdapter, SmsAdapter
from services.event_dispatcher import EventDispatcher
from services.identity_service import IdentityResolver
from services.notification_composer import NotificationComposer
from services.notification_scheduler import NotificationScheduler
from services.notification_service import NotificationService

logger = logging.getLogger(__name__)


@dataclass
class Container:
    store:         DocumentStore
    identity:      IdentityResolver
    connections:   ConnectionService
    notifications: NotificationService
    composer:      NotificationComposer
    dispatcher:    EventDispatcher
    scheduler:     NotificationScheduler


def build_adapters(config: Settings) -> dict:
    return {
        DeliveryChannel.SMS.value: SmsAdapter(
            config.TWILIO_ACCOUNT_SID, config.TWILIO_AUTH_TOKEN, config.TWILIO_SMS_NUMBER,
        ),
        DeliveryChannel.EMAIL.value: EmailAdapter(
            config.SMTP_HOST, config.SMTP_PORT, config.SMTP_USERNAME, config.SMTP_PASSWORD,
            from_name=config.SENDER_NAME,
        ),
        DeliveryChannel.PUSH.value: PushAdapter(config.FIREBASE_CREDENTIALS_PATH),
    }


def build_container(
    store: DocumentStore,
    config: Settings = default_settings,
    adapters: Optional[dict] = None,
) -> Container:
    identity = IdentityResolver(store)
    notifications = NotificationService(
        store,
        page_size=config.NOTIFICATIONS_PAGE_SIZE,
        page_max=config.NOTIFICATIONS_PAGE_MAX,
    )
    composer = NotificationComposer(identity, base_url=config.BASE_URL)
    dispatcher = EventDispatcher(
        composer, notifications, identity, notify_on_reject=config.NOTIFY_ON_REJECT,
    )
    connections = ConnectionService(
        store,
        identity,
        events=dispatcher,
        max_attempts=config.CONNECTION_TX_MAX_ATTEMPTS,
        backoff_seconds=config.CONNECTION_TX_BACKOFF_SECONDS,
        rerequest_cooldown=timedelta(hours=config.CONNECTION_REREQUEST_COOLDOWN_HOURS),
    )
    scheduler = NotificationScheduler(
        store,
        adapters if adapters is not None else build_adapters(config),
        interval_seconds=config.SCHEDULER_INTERVAL_SECONDS,
        batch_size=config.SCHEDULER_BATCH_SIZE,
        max_attempts=config.SCHEDULER_MAX_ATTEMPTS,
        lease_seconds=config.SCHEDULER_LEASE_SECONDS,
        dispatch_timeout=config.DISPATCH_TIMEOUT_SECONDS,
        push_batch_size=config.PUSH_BATCH_SIZE,
    )
    return Container(
        store=store,
        identity=identity,
        connections=connections,
        notifications=notifications,
        composer=composer,
        dispatcher=dispatcher,
        scheduler=scheduler,
    )


async def open_store(config: Settings = default_settings) -> DocumentStore:
    if config.STORE_BACKEND == "memory":
        logger.warning("STORE_BACKEND=memory : données non persistées")
        return MemoryStore()
    from database import connect_db
    return await connect_db()
