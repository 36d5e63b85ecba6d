"""
Topic stream — real-time case and measurement updates over WebSocket.

  WS /ws/topics/{topic}     topic = global | patient:<id> | role:<role>

Messages received from the client are ignored; the connection stays
subscribed until the client disconnects.
"""

from __future__ import annotations

import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from careline.alerting.broadcaster import GLOBAL_TOPIC, Subscription

logger = logging.getLogger("careline.api.topics")

router = APIRouter()

TOPIC_PREFIXES = ("patient:", "role:")


def valid_topic(topic: str) -> bool:
    if topic == GLOBAL_TOPIC:
        return True
    return any(topic.startswith(p) and len(topic) > len(p) for p in TOPIC_PREFIXES)


async def _forward(websocket: WebSocket, sub: Subscription) -> None:
    while True:
        event = await sub.get()
        await websocket.send_json(event.model_dump(mode="json"))


@router.websocket("/ws/topics/{topic}")
async def topic_stream(websocket: WebSocket, topic: str):
    from careline.alerting.setup import get_broadcaster

    broadcaster = get_broadcaster()
    if broadcaster is None:
        await websocket.close(code=1011, reason="Service unavailable")
        return
    if not valid_topic(topic):
        await websocket.close(code=1008, reason=f"Unknown topic '{topic}'")
        return

    await websocket.accept()
    sub = broadcaster.subscribe(topic)
    forward = asyncio.create_task(_forward(websocket, sub))
    logger.info("Client subscribed to %s", topic)
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info("Client disconnected from %s", topic)
    except Exception as e:
        logger.error("Topic stream error on %s: %s", topic, e)
    finally:
        forward.cancel()
        broadcaster.unsubscribe(sub)
