import asyncio
import logging

from fastapi import APIRouter, Query, WebSocket, WebSocketDisconnect

from restobot.services.realtime import admin_broadcaster

router = APIRouter(tags=["realtime"])
logger = logging.getLogger(__name__)


@router.get("/api/admin/events")
def recent_admin_events(limit: int = Query(50, ge=1, le=100)):
    return admin_broadcaster.recent(limit)


async def _forward_events(ws: WebSocket, queue: asyncio.Queue) -> None:
    while True:
        payload = await queue.get()
        await ws.send_json(payload)


@router.websocket("/ws/admin")
async def admin_events_socket(ws: WebSocket):
    await ws.accept()
    queue = admin_broadcaster.subscribe()
    logger.info("admin dashboard connected subscribers=%s", admin_broadcaster.subscriber_count())
    forwarder = None
    try:
        await ws.send_json({"event": "hello", "recent": admin_broadcaster.recent(20)})
        forwarder = asyncio.create_task(_forward_events(ws, queue))
        # dashboards only send keep-alives; reading is how a disconnect shows up
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        if forwarder is not None:
            forwarder.cancel()
        admin_broadcaster.unsubscribe(queue)
        logger.info("admin dashboard disconnected")
