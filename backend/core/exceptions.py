from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse


def credentials_exception() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Identifiants invalides ou token expiré",
        headers={"WWW-Authenticate": "Bearer"},
    )


def forbidden_exception(detail: str = "Accès refusé") -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=detail,
    )


# ── Erreurs métier ────────────────────────────────────────────────────────────
# Levées par les services, rendues en JSON {"kind", "detail"} par app_error_handler.

class AppError(Exception):
    kind = "internal"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Erreur interne"):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"kind": self.kind, "detail": self.message}


class NotFoundError(AppError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND

    def __init__(self, resource: str = "Ressource"):
        super().__init__(f"{resource} introuvable")


class AlreadyExistsError(AppError):
    kind = "already_exists"
    status_code = status.HTTP_409_CONFLICT


class AlreadyConnectedError(AlreadyExistsError):
    kind = "already_connected"


class DuplicateRequestError(AlreadyExistsError):
    kind = "duplicate_request"


class ConflictError(AppError):
    kind = "conflict"
    status_code = status.HTTP_409_CONFLICT


class PreviouslyRejectedError(ConflictError):
    kind = "previously_rejected"


class NotCancellableError(ConflictError):
    kind = "not_cancellable"


class UnauthorizedError(AppError):
    kind = "unauthorized"
    status_code = status.HTTP_403_FORBIDDEN


class NotTargetedError(UnauthorizedError):
    kind = "not_targeted"

    def __init__(self, message: str = "Cette notification ne vous est pas destinée"):
        super().__init__(message)


class InvalidArgumentError(AppError):
    kind = "invalid_argument"
    status_code = status.HTTP_400_BAD_REQUEST


class SelfConnectionError(InvalidArgumentError):
    kind = "self_connection"

    def __init__(self, message: str = "Impossible de se connecter à soi-même"):
        super().__init__(message)


class OperationTimeoutError(AppError):
    kind = "timeout"
    status_code = status.HTTP_504_GATEWAY_TIMEOUT


class AdapterRetryableError(AppError):
    kind = "adapter_retryable"
    status_code = status.HTTP_502_BAD_GATEWAY


class AdapterPermanentError(AppError):
    kind = "adapter_permanent"
    status_code = status.HTTP_502_BAD_GATEWAY


class InternalError(AppError):
    pass


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())
