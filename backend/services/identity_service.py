"""
Service identité : lecture des profils utilisateurs (collection `users`).
Les comptes sont gérés par le fournisseur d'identité ; on ne fait que lire.
"""
import logging
from typing import Optional

from core.store import DocumentStore
from models.user import UserProfile

logger = logging.getLogger(__name__)

USERS = "users"


class IdentityResolver:
    def __init__(self, store: DocumentStore):
        self._store = store

    async def get_user(self, uid: str) -> Optional[UserProfile]:
        if not uid:
            return None
        doc = await self._store.find_one(USERS, {"uid": uid})
        return UserProfile(**doc) if doc else None

    async def get_user_by_email(self, email: str) -> Optional[UserProfile]:
        if not email:
            return None
        doc = await self._store.find_one(USERS, {"email": email.strip().lower()})
        return UserProfile(**doc) if doc else None

    async def get_display_name(self, uid: str) -> str:
        """Nom affichable ; retombe sur l'uid si le profil est introuvable."""
        profile = await self.get_user(uid)
        if profile is None:
            logger.warning(f"Profil introuvable pour uid={uid}")
            return uid
        return profile.name

    async def list_user_ids(self, exclude: Optional[str] = None) -> list[str]:
        docs = await self._store.find(USERS, {"is_active": {"$ne": False}}, sort=[("uid", 1)])
        return [d["uid"] for d in docs if d.get("uid") and d["uid"] != exclude]
