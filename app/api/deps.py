from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.errors import AuthenticationFailure
from app.schemas.stream import Identity
from app.services.presence import PresenceCoordinator, StreamDirectory

_bearer = HTTPBearer(auto_error=False)


def get_presence_coordinator(request: Request) -> PresenceCoordinator:
    return request.app.state.coordinator


def get_stream_directory(request: Request) -> StreamDirectory:
    return request.app.state.coordinator.directory


def get_current_identity(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
    coordinator: PresenceCoordinator = Depends(get_presence_coordinator),
) -> Identity:
    token = credentials.credentials if credentials is not None else None
    try:
        return coordinator.verifier.verify(token)
    except AuthenticationFailure as exc:
        raise HTTPException(status_code=401, detail=exc.message) from exc
