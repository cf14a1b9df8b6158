from typing import Annotated

from fastapi import Depends, Request, WebSocket

from mindscript.gateway.auth import User, authenticate
from mindscript.gateway.jobs import RenderJobService


async def get_job_service(request: Request) -> RenderJobService:
    return request.app.state.job_service


async def get_ws_job_service(websocket: WebSocket) -> RenderJobService:
    return websocket.app.state.job_service


async def is_admin(user: Annotated[User, Depends(authenticate)]) -> bool:
    """Check if the authenticated user is an admin."""
    return user.is_admin


JobService = Annotated[RenderJobService, Depends(get_job_service)]
WsJobService = Annotated[RenderJobService, Depends(get_ws_job_service)]
AuthenticatedUser = Annotated[User, Depends(authenticate)]
IsAdmin = Annotated[bool, Depends(is_admin)]
