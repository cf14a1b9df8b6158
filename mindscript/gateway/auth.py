"""Caller identity.

The gateway runs behind the platform's auth proxy, which verifies the session
and forwards the user id in `X-User-Id`. Websocket clients cannot set headers
from the browser, so the proxy passes the id as the `user_id` query param there.
"""

import logging
from typing import Annotated

from fastapi import Depends, Header, HTTPException, WebSocket, WebSocketException, status
from pydantic import BaseModel

from mindscript.gateway.config import Settings, get_settings

LOGGER = logging.getLogger("auth")


class User(BaseModel):
    id: str
    is_admin: bool = False


def _user(user_id: str, settings: Settings) -> User:
    return User(id=user_id, is_admin=user_id in settings.admin_user_ids)


async def authenticate(
    settings: Annotated[Settings, Depends(get_settings)],
    x_user_id: str | None = Header(None, alias="X-User-Id"),
) -> User:
    if not x_user_id:
        LOGGER.debug("no credentials provided")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="not authenticated")
    return _user(x_user_id, settings)


async def authenticate_ws(
    websocket: WebSocket,
    settings: Annotated[Settings, Depends(get_settings)],
) -> User:
    user_id = websocket.headers.get("X-User-Id") or websocket.query_params.get("user_id")
    if not user_id:
        raise WebSocketException(code=status.WS_1008_POLICY_VIOLATION, reason="Not authenticated")
    return _user(user_id, settings)
