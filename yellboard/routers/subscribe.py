"""Realtime clients: /subscribe and /subscribe/{group_id} WebSockets."""
import logging

from fastapi import APIRouter, WebSocket

logger = logging.getLogger(__name__)
router = APIRouter()


@router.websocket("/subscribe")
@router.websocket("/subscribe/{group_id}")
async def subscribe(websocket: WebSocket, group_id: str | None = None):
    """Push listings and playback events; every client frame is a play request."""
    session = websocket.app.state.session
    if group_id and group_id != session.group_id:
        logger.warning("Client asked for group %s, serving active group %s", group_id, session.group_id)
    await websocket.accept()
    await session.registry.serve(websocket)
