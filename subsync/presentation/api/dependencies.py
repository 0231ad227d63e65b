import hmac

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ...core.config import Settings
from ...core.dependencies import get_settings

_bearer_scheme = HTTPBearer(auto_error=False)


def get_current_user_id(request: Request) -> str:
    """Identity set on ``request.state`` by the upstream authentication layer."""
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated.")
    return str(user_id)


def require_operator(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> None:
    if not settings.operator_token:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator endpoints are disabled.")
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token.")
    if not hmac.compare_digest(credentials.credentials, settings.operator_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token.")
