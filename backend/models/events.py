"""
Événements métier émis après un commit, consommés par le dispatcher.
"""
from typing import List, Literal, Optional, Union
from pydantic import BaseModel, Field


class ConnectionRequested(BaseModel):
    type:     Literal["connection_request"] = "connection_request"
    from_uid: str
    to_uid:   str
    message:  str = ""


class ConnectionAccepted(BaseModel):
    type:     Literal["connection_accepted"] = "connection_accepted"
    from_uid: str      # auteur de la demande, destinataire de la notification
    to_uid:   str      # celui qui accepte


class ConnectionRejected(BaseModel):
    type:     Literal["connection_rejected"] = "connection_rejected"
    from_uid: str
    to_uid:   str


class UserRegistered(BaseModel):
    type: Literal["new_user"] = "new_user"
    uid:  str


class MessageSent(BaseModel):
    type:         Literal["message"] = "message"
    sender_uid:   str
    participants: List[str]
    content:      str = ""
    group_id:     Optional[str] = None   # None = message direct
    include_actor: bool = False


class ProjectJoinRequested(BaseModel):
    type:          Literal["project_join_request"] = "project_join_request"
    requester_uid: str
    owner_uids:    List[str]
    project_id:    str
    project_title: str = ""
    message:       str = ""


DomainEvent = Union[
    ConnectionRequested,
    ConnectionAccepted,
    ConnectionRejected,
    UserRegistered,
    MessageSent,
    ProjectJoinRequested,
]


class EventEnvelope(BaseModel):
    """Permet de valider un événement reçu en JSON (discriminé par `type`)."""
    event: DomainEvent = Field(discriminator="type")
