from datetime import datetime
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field, model_validator
from models.common import DeliveryChannel, NotificationPriority, NotificationStatus
from core.utils import dedupe


class RelatedEntity(BaseModel):
    id:   str
    type: str      # "user", "project", "group_chat"...


class NotificationAction(BaseModel):
    label:      str
    url:        str
    is_primary: bool = False


class Notification(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id:          str
    user_id:     str                      # propriétaire / acteur
    actor_id:    Optional[str] = None
    actor_name:  Optional[str] = None
    actor_type:  str = "user"
    # Contenu
    type:        str                      # ensemble ouvert, cf. NotificationType
    category:    str = "system"
    priority:    NotificationPriority = NotificationPriority.NORMAL
    status:      NotificationStatus   = NotificationStatus.PENDING
    title:       str = ""
    content:     str = ""
    metadata:    Dict[str, Any]           = Field(default_factory=dict)
    related_entities: List[RelatedEntity] = Field(default_factory=list)
    actions:     List[NotificationAction] = Field(default_factory=list)
    is_important: bool = False
    # Destinataires : read_status a exactement les clés de targeted_users
    targeted_users: List[str]       = Field(default_factory=list)
    read_status:    Dict[str, bool] = Field(default_factory=dict)
    is_archived:    Dict[str, bool] = Field(default_factory=dict)
    # Livraison
    delivery_channel: DeliveryChannel = DeliveryChannel.PUSH
    recipient:        Optional[str] = None    # téléphone E.164 ou email
    # Scheduler
    attempts:         int = 0
    lease_holder:     Optional[str] = None
    lease_expires_at: Optional[datetime] = None
    delivered_to:     List[str] = Field(default_factory=list)
    last_error:       Optional[str] = None
    dedupe_key:       Optional[str] = None
    # Timestamps
    scheduled_at: Optional[datetime] = None
    sent_at:      Optional[datetime] = None
    read_at:      Optional[datetime] = None
    expires_at:   Optional[datetime] = None
    created_at:   datetime
    updated_at:   datetime

    @model_validator(mode="after")
    def _normalize_recipients(self) -> "Notification":
        self.targeted_users = dedupe(self.targeted_users)
        self.read_status = {uid: bool(self.read_status.get(uid, False)) for uid in self.targeted_users}
        return self

    def is_targeted(self, uid: str) -> bool:
        return uid in self.read_status

    def is_read_by(self, uid: str) -> bool:
        return self.read_status.get(uid, False)

    def is_archived_by(self, uid: str) -> bool:
        return self.is_archived.get(uid, False)

    def to_doc(self) -> dict:
        doc = self.model_dump()
        if doc["dedupe_key"] is None:
            # index unique sparse : la clé doit être absente, pas nulle
            doc.pop("dedupe_key")
        return doc

    @classmethod
    def from_doc(cls, doc: dict) -> "Notification":
        return cls.model_validate(doc)


# ── Entrées / sorties API ─────────────────────────────────────────────────────

class ScheduleNotificationRequest(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    channel:      DeliveryChannel
    recipient:    str
    subject:      str = ""
    content:      str
    scheduled_at: Optional[datetime] = None   # None = immédiat
    expires_at:   Optional[datetime] = None
    priority:     NotificationPriority = NotificationPriority.NORMAL
    metadata:     Dict[str, Any] = Field(default_factory=dict)


class ScheduledNotificationResponse(BaseModel):
    """SMS / email planifié vu par son propriétaire, sans l'état interne du scheduler."""
    model_config = ConfigDict(use_enum_values=True)

    id:               str
    type:             str
    delivery_channel: DeliveryChannel
    recipient:        Optional[str] = None
    title:            str = ""
    content:          str = ""
    priority:         NotificationPriority
    status:           NotificationStatus
    metadata:         Dict[str, Any] = Field(default_factory=dict)
    attempts:         int = 0
    scheduled_at:     Optional[datetime] = None
    sent_at:          Optional[datetime] = None
    expires_at:       Optional[datetime] = None
    created_at:       datetime
    updated_at:       datetime


class NotificationView(BaseModel):
    """Notification vue par un destinataire : bits personnels aplatis."""
    id:          str
    type:        str
    category:    str
    priority:    str
    status:      str
    title:       str
    content:     str
    actor_id:    Optional[str] = None
    actor_name:  Optional[str] = None
    metadata:    Dict[str, Any] = Field(default_factory=dict)
    related_entities: List[RelatedEntity] = Field(default_factory=list)
    actions:     List[NotificationAction] = Field(default_factory=list)
    is_read:     bool
    is_archived: bool
    created_at:  datetime
    sent_at:     Optional[datetime] = None

    @classmethod
    def for_user(cls, notification: Notification, uid: str) -> "NotificationView":
        return cls(
            id=notification.id,
            type=notification.type,
            category=notification.category,
            priority=notification.priority,
            status=notification.status,
            title=notification.title,
            content=notification.content,
            actor_id=notification.actor_id,
            actor_name=notification.actor_name,
            metadata=notification.metadata,
            related_entities=notification.related_entities,
            actions=notification.actions,
            is_read=notification.is_read_by(uid),
            is_archived=notification.is_archived_by(uid),
            created_at=notification.created_at,
            sent_at=notification.sent_at,
        )


class NotificationPage(BaseModel):
    items:       List[NotificationView]
    next_cursor: Optional[str] = None


class NotificationStats(BaseModel):
    unread:          int
    by_category:     Dict[str, int]
    by_priority:     Dict[str, int]
    recent_activity: List[NotificationView]
