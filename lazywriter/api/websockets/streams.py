"""
生成事件 WebSocket 路由

订阅同名 Redis 频道，把每条事件原样转发给浏览器。
前端按事件的 type 字段分发，未知 type 直接忽略。

开发者: lazywriter 项目组
日期: 2026-10-18
"""
import json
import logging

import redis.asyncio as redis
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from lazywriter.api.deps import get_redis_client

logger = logging.getLogger(__name__)

router = APIRouter()


@router.websocket("/ws/streams/{stream_name}")
async def stream_websocket(
    websocket: WebSocket,
    stream_name: str,
    client: redis.Redis = Depends(get_redis_client),
):
    """实时推送某个频道的生成事件"""
    await websocket.accept()
    pubsub = client.pubsub()
    await pubsub.subscribe(stream_name)

    try:
        async for message in pubsub.listen():
            if message["type"] != "message":
                continue
            raw = message["data"]
            try:
                payload = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(f"频道 {stream_name} 收到非 JSON 消息，已丢弃")
                continue
            try:
                await websocket.send_json(payload)
            except WebSocketDisconnect:
                break
    except WebSocketDisconnect:
        # 客户端主动断开，忽略
        pass
    finally:
        await pubsub.unsubscribe(stream_name)
        await pubsub.close()
