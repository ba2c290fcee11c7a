"""WebSocket endpoint for real-time vehicle updates."""

import asyncio
import contextlib
import logging

import orjson
from fastapi import APIRouter, WebSocket

from transit_tracker.schemas.vehicle import VehicleUpdate

logger = logging.getLogger(__name__)

router = APIRouter()


async def stop_sender(task: asyncio.Task) -> None:
    """Cancel the forwarding task and collect its outcome.

    A send that failed after the client went away leaves the task finished with
    an exception; awaiting it here keeps that from surfacing as unretrieved.
    """
    task.cancel()
    with contextlib.suppress(Exception, asyncio.CancelledError):
        await task


@router.websocket("/ws/vehicles")
async def vehicle_ws(websocket: WebSocket) -> None:
    """Stream the vehicle list, current snapshot first, then every update."""
    await websocket.accept()

    live = websocket.app.state.live
    try:
        await live.initialize()
    except Exception:
        logger.exception("Live state unavailable for WebSocket client")
        await websocket.close(code=1011, reason="Service not ready")
        return

    broadcaster = live.broadcaster
    snapshot = VehicleUpdate(type="snapshot", vehicles=live.get_vehicles())
    await websocket.send_bytes(orjson.dumps(snapshot.model_dump(by_alias=True)))

    queue = broadcaster.subscribe()

    async def forward() -> None:
        while True:
            data = await queue.get()
            await websocket.send_bytes(data)

    sender = asyncio.create_task(forward())
    try:
        # Clients only listen; the next inbound message we care about is the disconnect
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("WebSocket error")
    finally:
        await stop_sender(sender)
        broadcaster.unsubscribe(queue)
