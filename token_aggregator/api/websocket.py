"""
WebSocket endpoint for realtime token updates.
Frames are JSON text of the form {"event": <name>, "data": <payload>}.
"""

import json
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from ..core.logging_config import create_logger

logger = create_logger(__name__)

router = APIRouter()


@router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    broadcaster = websocket.app.state.broadcaster
    connection_id = await broadcaster.manager.connect(websocket)

    await broadcaster.handle_connect(connection_id)

    try:
        while True:
            raw = await websocket.receive_text()

            try:
                message = json.loads(raw)
            except ValueError:
                await broadcaster.send_error(connection_id, "Messages must be JSON")
                continue

            if not isinstance(message, dict) or not isinstance(message.get("event"), str):
                await broadcaster.send_error(connection_id, 'Messages must carry an "event" name')
                continue

            await broadcaster.handle_event(connection_id, message["event"], message.get("data"))

    except WebSocketDisconnect:
        logger.info("WebSocket closed by client", extra={"connection_id": connection_id})
    except Exception as e:
        logger.error("WebSocket error", extra={"connection_id": connection_id, "error": str(e)})
    finally:
        broadcaster.handle_disconnect(connection_id)
