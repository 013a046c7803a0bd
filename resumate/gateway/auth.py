import logging
from typing import Annotated, Any

import requests
from fastapi import Depends, HTTPException, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from resumate.gateway.config import Settings, get_settings

bearer = HTTPBearer(auto_error=False)

LOGGER = logging.getLogger("auth")

IDENTITY_TIMEOUT_SECONDS = 10


class SessionUser(BaseModel):
    """Signed-in identity as reported by the identity provider."""

    id: str
    primary_email: str | None = Field(default=None)
    display_name: str | None = Field(default=None)


def build_headers(settings: Settings, access_token: str) -> dict[str, Any]:
    return {
        "x-stack-access-type": "server",
        "x-stack-project-id": settings.auth_project_id,
        "x-stack-secret-server-key": settings.auth_server_key,
        "x-stack-access-token": access_token,
    }


async def get_me(settings: Settings, access_token: str) -> SessionUser | None:
    url = f"{settings.auth_api_host}/api/v1/users/me"
    response = requests.get(
        url, headers=build_headers(settings, access_token=access_token), timeout=IDENTITY_TIMEOUT_SECONDS
    )
    if response.status_code in (status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN):
        return None
    response.raise_for_status()
    return SessionUser.model_validate(response.json())


async def authenticate(
    settings: Annotated[Settings, Depends(get_settings)],
    creds: HTTPAuthorizationCredentials | None = Security(bearer),
) -> SessionUser:
    if creds is None:
        LOGGER.debug("no credentials provided")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await get_me(settings, access_token=creds.credentials)
    if user is None:
        LOGGER.debug("Bearer token invalid or expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return user
