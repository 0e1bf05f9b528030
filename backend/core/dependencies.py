import hmac
from typing import Optional
from fastapi import Depends, Header, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from config import settings
from core.security import verify_access_token
from core.exceptions import credentials_exception, forbidden_exception
from models.user import UserProfile
from services.container import Container

bearer_scheme = HTTPBearer(auto_error=False)


def get_container(request: Request) -> Container:
    return request.app.state.container


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    container: Container = Depends(get_container),
) -> UserProfile:
    if not credentials:
        raise credentials_exception()
    payload = verify_access_token(credentials.credentials)
    if not payload:
        raise credentials_exception()

    user = await container.identity.get_user(payload["sub"])
    if not user:
        raise credentials_exception()
    if not user.is_active:
        raise forbidden_exception("Compte désactivé")
    return user


async def require_service_caller(
    service_token: Optional[str] = Header(None, alias="X-Service-Token"),
) -> None:
    """Réservé aux services internes qui partagent SERVICE_API_TOKEN."""
    if not settings.SERVICE_API_TOKEN:
        raise forbidden_exception("Publication d'événements désactivée")
    if not service_token or not hmac.compare_digest(service_token, settings.SERVICE_API_TOKEN):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Jeton de service invalide",
        )
