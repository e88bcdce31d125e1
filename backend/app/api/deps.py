"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import OAuth2PasswordBearer

from beacon.errors import (
    Forbidden,
    InvalidChatTopology,
    InvalidSignalingPayload,
    InvalidState,
    NotFound,
    RateLimited,
    RealtimeError,
    Unauthenticated,
)
from beacon.realtime import RealtimeServices
from beacon.realtime.stores import Principal

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/auth/login", auto_error=False)

_STATUS_BY_ERROR: tuple[tuple[type[RealtimeError], int], ...] = (
    (Unauthenticated, status.HTTP_401_UNAUTHORIZED),
    (Forbidden, status.HTTP_403_FORBIDDEN),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidState, status.HTTP_409_CONFLICT),
    (InvalidSignalingPayload, status.HTTP_400_BAD_REQUEST),
    (InvalidChatTopology, status.HTTP_400_BAD_REQUEST),
    (RateLimited, status.HTTP_429_TOO_MANY_REQUESTS),
)


def get_realtime(request: Request) -> RealtimeServices:
    """Return the realtime container created at application startup."""

    services = getattr(request.app.state, "realtime", None)
    if services is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Realtime services are not running",
        )
    return services


async def get_current_principal(
    token: str | None = Depends(oauth2_scheme),
    realtime: RealtimeServices = Depends(get_realtime),
) -> Principal:
    """Resolve the bearer token through the same authenticator as websockets."""

    try:
        return await realtime.gateway.authenticate(token)
    except Unauthenticated as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=exc.message,
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc


def http_error(exc: RealtimeError) -> HTTPException:
    """Translate a realtime domain error into an HTTP error response."""

    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.message)
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=exc.message)
