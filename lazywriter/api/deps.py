"""
API 依赖定义

提供编排器与 Redis 客户端依赖，便于在路由中复用、在测试中替换。

开发者: lazywriter 项目组
日期: 2026-10-18
"""
from functools import lru_cache
from typing import AsyncGenerator

import redis.asyncio as redis

from lazywriter.config import get_settings
from lazywriter.services.generation_service import GenerationOrchestrator, build_orchestrator


@lru_cache(maxsize=1)
def get_orchestrator() -> GenerationOrchestrator:
    """进程内共享的编排器"""
    return build_orchestrator()


async def get_redis_client() -> AsyncGenerator[redis.Redis, None]:
    """
    提供 Redis 异步客户端

    Returns:
        异步 Redis 连接实例
    """
    client: redis.Redis = redis.from_url(get_settings().redis_url, decode_responses=True)
    try:
        yield client
    finally:
        await client.close()
