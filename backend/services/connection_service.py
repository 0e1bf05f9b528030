"""
Service connexions : graphe social bidirectionnel, cycle de vie des demandes
(envoi, acceptation, refus, retrait) et suppression de connexions.

Toute écriture croisée (document de l'expéditeur + document du destinataire)
passe par une transaction unique sur les deux documents : un échec laisse les
deux inchangés.

Machine d'états d'une demande (from_uid → to_uid) :
    (aucune) --send-->     pending
    pending  --accept-->   accepted  (connexion active des deux côtés)
    pending  --reject-->   rejected  (retirée côté destinataire)
    pending  --withdraw--> withdrawn (retirée côté destinataire)
    accepted --remove-->   (aucune) des deux côtés
"""
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from core.exceptions import (
    AlreadyConnectedError,
    ConflictError,
    DuplicateRequestError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    PreviouslyRejectedError,
    SelfConnectionError,
)
from core.store import DocumentStore, StoreUnavailable, Transaction, TransactionConflict
from core.utils import new_id, utcnow
from models.common import ConnectionStatus, RequestStatus, SentRequestStatus
from models.connection import Connection, ConnectionRequest, SentRequest, UserConnections
from models.events import ConnectionAccepted, ConnectionRejected, ConnectionRequested
from services.identity_service import IdentityResolver

logger = logging.getLogger(__name__)

COLLECTION = "user_connections"

# mutate(doc_a, doc_b, now) -> True si les documents doivent être réécrits
Mutation = Callable[[UserConnections, UserConnections, datetime], bool]


def _require_uid(*uids: str) -> None:
    for uid in uids:
        if not uid or not uid.strip():
            raise InvalidArgumentError("uid manquant")


def _require_pair(from_uid: str, to_uid: str) -> None:
    _require_uid(from_uid, to_uid)
    if from_uid == to_uid:
        raise SelfConnectionError()


class ConnectionService:
    def __init__(
        self,
        store: DocumentStore,
        identity: IdentityResolver,
        events=None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.1,
        rerequest_cooldown: timedelta = timedelta(0),
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._identity = identity
        self._events = events
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._cooldown = rerequest_cooldown
        self._clock = clock

    # ── Lecture ───────────────────────────────────────────────────────────────

    async def get_connections(self, uid: str) -> UserConnections:
        """Retourne le document de connexions, créé vide au premier accès."""
        _require_uid(uid)
        now = self._clock()
        doc = await self._store.get_or_create(
            COLLECTION,
            {"uid": uid},
            {
                "id":               new_id("ucn"),
                "uid":              uid,
                "connections":      {},
                "pending_requests": {},
                "sent_requests":    {},
                "created_at":       now,
                "updated_at":       now,
            },
        )
        return UserConnections.from_doc(doc)

    async def count_connections(self, uid: str) -> int:
        doc = await self.get_connections(uid)
        return sum(1 for c in doc.connections.values() if c.status == ConnectionStatus.ACTIVE)

    # ── Cycle de vie des demandes ─────────────────────────────────────────────

    async def send_request(self, from_uid: str, to_uid: str, message: str = "") -> None:
        _require_pair(from_uid, to_uid)
        from_name = await self._identity.get_display_name(from_uid)

        def mutate(sender: UserConnections, target: UserConnections, now: datetime) -> bool:
            if sender.is_connected(to_uid) or target.is_connected(from_uid):
                raise AlreadyConnectedError("Vous êtes déjà connecté à cet utilisateur")
            if target.has_blocked(from_uid):
                raise PreviouslyRejectedError("Cet utilisateur n'accepte pas vos demandes")

            previous = sender.sent_requests.get(to_uid)
            if from_uid in target.pending_requests or (
                previous is not None and previous.status == SentRequestStatus.PENDING
            ):
                raise DuplicateRequestError("Une demande est déjà en attente pour cet utilisateur")
            if to_uid in sender.pending_requests:
                raise DuplicateRequestError("Cet utilisateur vous a déjà envoyé une demande")
            if (
                self._cooldown
                and previous is not None
                and previous.status == SentRequestStatus.REJECTED
                and previous.rejected_at is not None
                and now - previous.rejected_at < self._cooldown
            ):
                raise PreviouslyRejectedError("Demande refusée récemment, réessayez plus tard")

            target.pending_requests[from_uid] = ConnectionRequest(
                from_uid=from_uid,
                from_name=from_name,
                to_uid=to_uid,
                sent_at=now,
                message=message,
                status=RequestStatus.PENDING.value,
            )
            sender.sent_requests[to_uid] = SentRequest(
                to_uid=to_uid,
                sent_at=now,
                message=message,
                status=SentRequestStatus.PENDING.value,
            )
            return True

        if await self._transact(from_uid, to_uid, mutate, "send_request"):
            logger.info(f"Demande de connexion {from_uid} → {to_uid}")
            self._emit(ConnectionRequested(from_uid=from_uid, to_uid=to_uid, message=message))

    async def accept_request(self, from_uid: str, to_uid: str) -> None:
        """`to_uid` accepte la demande envoyée par `from_uid`."""
        _require_pair(from_uid, to_uid)
        from_name = await self._identity.get_display_name(from_uid)
        to_name = await self._identity.get_display_name(to_uid)

        def mutate(sender: UserConnections, target: UserConnections, now: datetime) -> bool:
            pending = target.pending_requests.get(from_uid)
            sent = sender.sent_requests.get(to_uid)
            if pending is None:
                return self._settled(sender, target, from_uid, to_uid, SentRequestStatus.ACCEPTED)

            sender.connections[to_uid] = Connection(
                target_uid=to_uid,
                target_name=to_name,
                sent_at=pending.sent_at,
                accepted_at=now,
                status=ConnectionStatus.ACTIVE.value,
            )
            target.connections[from_uid] = Connection(
                target_uid=from_uid,
                target_name=pending.from_name or from_name,
                sent_at=pending.sent_at,
                accepted_at=now,
                status=ConnectionStatus.ACTIVE.value,
            )
            del target.pending_requests[from_uid]
            if sent is None:
                # miroir absent (données anciennes) : on le reconstruit
                sent = SentRequest(to_uid=to_uid, sent_at=pending.sent_at, message=pending.message)
                sender.sent_requests[to_uid] = sent
            sent.status = SentRequestStatus.ACCEPTED.value
            sent.accepted_at = now
            return True

        if await self._transact(from_uid, to_uid, mutate, "accept_request"):
            logger.info(f"Connexion acceptée {from_uid} ↔ {to_uid}")
            self._emit(ConnectionAccepted(from_uid=from_uid, to_uid=to_uid))

    async def reject_request(self, from_uid: str, to_uid: str) -> None:
        """`to_uid` refuse la demande envoyée par `from_uid`."""
        _require_pair(from_uid, to_uid)

        def mutate(sender: UserConnections, target: UserConnections, now: datetime) -> bool:
            pending = target.pending_requests.get(from_uid)
            if pending is None:
                return self._settled(sender, target, from_uid, to_uid, SentRequestStatus.REJECTED)
            del target.pending_requests[from_uid]
            sent = sender.sent_requests.get(to_uid)
            if sent is None:
                sent = SentRequest(to_uid=to_uid, sent_at=pending.sent_at, message=pending.message)
                sender.sent_requests[to_uid] = sent
            sent.status = SentRequestStatus.REJECTED.value
            sent.rejected_at = now
            return True

        if await self._transact(from_uid, to_uid, mutate, "reject_request"):
            logger.info(f"Demande refusée {from_uid} → {to_uid}")
            self._emit(ConnectionRejected(from_uid=from_uid, to_uid=to_uid))

    async def withdraw_request(self, from_uid: str, to_uid: str) -> None:
        """L'expéditeur `from_uid` retire sa demande en attente vers `to_uid`."""
        _require_pair(from_uid, to_uid)

        def mutate(sender: UserConnections, target: UserConnections, now: datetime) -> bool:
            pending = target.pending_requests.get(from_uid)
            if pending is None:
                return self._settled(sender, target, from_uid, to_uid, SentRequestStatus.WITHDRAWN)
            del target.pending_requests[from_uid]
            sent = sender.sent_requests.get(to_uid)
            if sent is None:
                sent = SentRequest(to_uid=to_uid, sent_at=pending.sent_at, message=pending.message)
                sender.sent_requests[to_uid] = sent
            sent.status = SentRequestStatus.WITHDRAWN.value
            return True

        if await self._transact(from_uid, to_uid, mutate, "withdraw_request"):
            logger.info(f"Demande retirée {from_uid} → {to_uid}")

    async def remove_connection(self, uid_a: str, uid_b: str) -> None:
        """Supprime la connexion des deux côtés. Sans effet si elle n'existe pas."""
        _require_pair(uid_a, uid_b)

        def mutate(doc_a: UserConnections, doc_b: UserConnections, now: datetime) -> bool:
            changed = False
            for doc, peer in ((doc_a, uid_b), (doc_b, uid_a)):
                if doc.connections.pop(peer, None) is not None:
                    changed = True
                sent = doc.sent_requests.get(peer)
                if sent is not None and sent.status == SentRequestStatus.ACCEPTED:
                    del doc.sent_requests[peer]
                    changed = True
            return changed

        if await self._transact(uid_a, uid_b, mutate, "remove_connection"):
            logger.info(f"Connexion supprimée {uid_a} ↔ {uid_b}")

    # ── Interne ───────────────────────────────────────────────────────────────

    @staticmethod
    def _settled(
        sender: UserConnections,
        target: UserConnections,
        from_uid: str,
        to_uid: str,
        intended: SentRequestStatus,
    ) -> bool:
        """
        La demande n'est plus en attente (décision concurrente déjà validée).
        Succès sans écriture si l'état observé correspond à l'intention,
        ConflictError s'il la contredit.
        """
        sent = sender.sent_requests.get(to_uid)
        if sent is None or sent.status == SentRequestStatus.PENDING:
            raise NotFoundError("Demande de connexion")
        if sent.status == intended:
            if intended == SentRequestStatus.ACCEPTED and not (
                sender.is_connected(to_uid) and target.is_connected(from_uid)
            ):
                raise ConflictError("Demande acceptée mais connexion absente")
            return False
        raise ConflictError(f"Décision contradictoire : la demande est déjà {sent.status}")

    async def _transact(self, uid_a: str, uid_b: str, mutate: Mutation, label: str) -> bool:
        # Création paresseuse hors transaction (upsert sur l'index unique uid)
        id_a = (await self.get_connections(uid_a)).id
        id_b = (await self.get_connections(uid_b)).id

        async def _run(tx: Transaction) -> bool:
            raw_a = await tx.get(COLLECTION, id_a)
            raw_b = await tx.get(COLLECTION, id_b)
            if raw_a is None or raw_b is None:
                raise InternalError(f"Document de connexions disparu ({label})")
            doc_a = UserConnections.from_doc(raw_a)
            doc_b = UserConnections.from_doc(raw_b)
            now = self._clock()
            if not mutate(doc_a, doc_b, now):
                return False
            doc_a.updated_at = now
            doc_b.updated_at = now
            await tx.set(COLLECTION, id_a, doc_a.to_doc())
            await tx.set(COLLECTION, id_b, doc_b.to_doc())
            return True

        for attempt in range(1, self._max_attempts + 1):
            try:
                return await self._store.run_transaction(_run)
            except (TransactionConflict, StoreUnavailable) as e:
                if attempt >= self._max_attempts:
                    logger.warning(f"{label} {uid_a}/{uid_b} : abandon après {attempt} tentatives ({e})")
                    raise ConflictError("Conflit de mise à jour, réessayez")
                logger.info(f"{label} {uid_a}/{uid_b} : conflit, nouvelle tentative {attempt + 1}")
                await asyncio.sleep(self._backoff * attempt)
        return False

    def _emit(self, event) -> None:
        if self._events is not None:
            self._events.emit(event)
