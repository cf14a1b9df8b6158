import asyncio
import contextlib
import uuid
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from loguru import logger

from mindscript.contracts import JobUpdate
from mindscript.gateway.auth import User, authenticate_ws
from mindscript.gateway.deps import WsJobService
from mindscript.gateway.exceptions import ResourceNotFoundError

router = APIRouter(tags=["websocket"])

WS_NOT_FOUND = 4404


async def _forward_updates(ws: WebSocket, updates: AsyncGenerator[JobUpdate, None]) -> None:
    async for update in updates:
        await ws.send_text(update.model_dump_json())


async def _wait_for_disconnect(ws: WebSocket) -> None:
    # the stream is one-way; anything the client sends is ignored
    while True:
        message = await ws.receive()
        if message["type"] == "websocket.disconnect":
            return


@router.websocket("/v1/jobs/{job_id}/ws")
async def job_progress_websocket(
    ws: WebSocket,
    job_id: uuid.UUID,
    service: WsJobService,
    user: User = Depends(authenticate_ws),
):
    """Stream a job's progress: the current snapshot first, then each update until a terminal status.

    The subscription lives in a forwarding task next to a receive loop, so a
    client that goes away releases it right away instead of on the next send.
    """
    await ws.accept()
    updates = service.watch_job(job_id, user_id=None if user.is_admin else user.id)
    forward_task = asyncio.create_task(_forward_updates(ws, updates))
    disconnect_task = asyncio.create_task(_wait_for_disconnect(ws))

    try:
        done, _ = await asyncio.wait({forward_task, disconnect_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (forward_task, disconnect_task):
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        await updates.aclose()

    if forward_task not in done:
        logger.info(f"Progress websocket for job {job_id} disconnected")
        return

    error = forward_task.exception()
    if isinstance(error, ResourceNotFoundError):
        await ws.close(code=WS_NOT_FOUND, reason=str(error))
    elif isinstance(error, WebSocketDisconnect):
        logger.info(f"Progress websocket for job {job_id} disconnected")
    elif error is not None:
        raise error
    else:
        await ws.close()
