from datetime import datetime
from typing import Dict, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
from models.common import ConnectionStatus, RequestStatus, SentRequestStatus


class Connection(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    target_uid:  str
    target_name: str = ""
    sent_at:     datetime
    accepted_at: datetime
    status:      ConnectionStatus = ConnectionStatus.ACTIVE


class ConnectionRequest(BaseModel):
    """Demande entrante, portée par le document du destinataire."""
    model_config = ConfigDict(use_enum_values=True)

    from_uid:  str
    from_name: str = ""
    to_uid:    str
    sent_at:   datetime
    message:   str = ""
    status:    RequestStatus = RequestStatus.PENDING


class SentRequest(BaseModel):
    """Miroir côté expéditeur ; reste en place après l'issue pour l'historique."""
    model_config = ConfigDict(use_enum_values=True)

    to_uid:      str
    sent_at:     datetime
    message:     str = ""
    status:      SentRequestStatus = SentRequestStatus.PENDING
    accepted_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None


class UserConnections(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    id:               str
    uid:              str
    connections:      Dict[str, Connection]        = Field(default_factory=dict)
    pending_requests: Dict[str, ConnectionRequest] = Field(default_factory=dict)
    sent_requests:    Dict[str, SentRequest]       = Field(default_factory=dict)
    created_at:       Optional[datetime] = None
    updated_at:       Optional[datetime] = None

    def is_connected(self, uid: str) -> bool:
        conn = self.connections.get(uid)
        return conn is not None and conn.status == ConnectionStatus.ACTIVE

    def has_blocked(self, uid: str) -> bool:
        conn = self.connections.get(uid)
        return conn is not None and conn.status == ConnectionStatus.BLOCKED

    def to_doc(self) -> dict:
        return self.model_dump()

    @classmethod
    def from_doc(cls, doc: dict) -> "UserConnections":
        return cls.model_validate(doc)


# ── Corps de requêtes HTTP ────────────────────────────────────────────────────

class SendConnectionRequest(BaseModel):
    to_uid:  str
    message: str = ""

    @field_validator("to_uid")
    @classmethod
    def uid_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("to_uid est obligatoire")
        return v.strip()

    @field_validator("message")
    @classmethod
    def message_length(cls, v: str) -> str:
        if len(v) > 500:
            raise ValueError("Message limité à 500 caractères")
        return v


class ConnectionCount(BaseModel):
    uid:   str
    count: int
