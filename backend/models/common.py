from enum import Enum


class ConnectionStatus(str, Enum):
    ACTIVE  = "active"
    BLOCKED = "blocked"


class RequestStatus(str, Enum):
    """Statut d'une demande entrante (côté destinataire)."""
    PENDING  = "pending"
    REJECTED = "rejected"


class SentRequestStatus(str, Enum):
    """Statut d'une demande envoyée (miroir côté expéditeur, conservé pour l'historique)."""
    PENDING   = "pending"
    ACCEPTED  = "accepted"
    REJECTED  = "rejected"
    WITHDRAWN = "withdrawn"


class NotificationStatus(str, Enum):
    PENDING   = "pending"
    SENDING   = "sending"     # bail (lease) détenu par un scheduler
    SENT      = "sent"
    READ      = "read"
    FAILED    = "failed"
    CANCELLED = "cancelled"


class NotificationPriority(str, Enum):
    LOW    = "low"
    NORMAL = "normal"
    HIGH   = "high"


class DeliveryChannel(str, Enum):
    PUSH  = "push"
    EMAIL = "email"
    SMS   = "sms"


class NotificationType(str, Enum):
    # Ensemble ouvert : Notification.type accepte aussi des valeurs libres
    CONNECTION_REQUEST   = "connection_request"
    CONNECTION_ACCEPTED  = "connection_accepted"
    CONNECTION_REJECTED  = "connection_rejected"
    MESSAGE              = "message"
    PROJECT_JOIN_REQUEST = "project_join_request"
    NEW_USER             = "new_user"
    WELCOME              = "welcome"
    SMS                  = "sms"
    EMAIL                = "email"
