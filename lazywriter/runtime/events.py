"""
事件频道

频道命名、事件结构以及发布实现（Redis pub/sub / 进程内）。

频道名只由 (文章频道前缀, 阶段, 模型) 推导，发布方与订阅方各自计算，无需协商：
- {base}                 文章级事件
- {base}_{provider}      脑爆阶段
- {base}_draft_{provider} 初稿阶段
- {base}_draft           单稿融合初稿

所有事件都必须带 type 字段，订阅方只按 type 分发，遇到未知 type 直接忽略。
"""
import json
import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, List, Literal, Optional, Tuple

import redis
from pydantic import BaseModel, Field

from lazywriter.models import Provider, Stage

logger = logging.getLogger(__name__)


# ==================== 频道命名 ====================

def subject_topic(stream_base: str) -> str:
    return stream_base


def provider_topic(stream_base: str, stage: Stage, provider: Optional[Provider]) -> str:
    """某阶段某模型的事件频道；provider 为空表示单稿融合初稿"""
    if stage == Stage.BRAINSTORM:
        if provider is None:
            raise ValueError("脑爆阶段必须指定模型")
        return f"{stream_base}_{provider.value}"
    if provider is None:
        return f"{stream_base}_draft"
    return f"{stream_base}_draft_{provider.value}"


# ==================== 事件结构 ====================

class BaseEvent(BaseModel):
    type: str

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class SubjectCreatedEvent(BaseEvent):
    type: Literal["subject-created"] = "subject-created"
    article_id: int = Field(description="新文章 ID")


class ChunkEvent(BaseEvent):
    type: Literal["chunk"] = "chunk"
    chunk: str = Field(description="增量文本")
    provider: Optional[str] = None
    stage: Optional[str] = None
    generation: Optional[int] = None
    attempt: Optional[int] = None


class CompleteEvent(BaseEvent):
    type: Literal["complete"] = "complete"
    content: str = Field(description="完整文本")
    provider: Optional[str] = None
    stage: Optional[str] = None
    generation: Optional[int] = None


class ErrorEvent(BaseEvent):
    type: Literal["error"] = "error"
    message: str = Field(description="面向用户的错误提示")
    provider: Optional[str] = None
    stage: Optional[str] = None
    generation: Optional[int] = None


class RetryingEvent(BaseEvent):
    """非终态：上一轮尝试失败，即将重试，订阅方应丢弃已累积的片段"""
    type: Literal["retrying"] = "retrying"
    attempt: int = Field(description="下一次尝试的序号")
    message: str
    provider: Optional[str] = None
    stage: Optional[str] = None
    generation: Optional[int] = None


class RegenerationStartedEvent(BaseEvent):
    type: Literal["regeneration-started"] = "regeneration-started"
    provider: str


class AllDraftsStartedEvent(BaseEvent):
    type: Literal["all-drafts-started"] = "all-drafts-started"
    providers: List[str] = Field(default_factory=list)


class DraftRegenerationStartedEvent(BaseEvent):
    type: Literal["draft-regeneration-started"] = "draft-regeneration-started"
    provider: str


def route_event(handlers: Dict[str, Callable[[Dict[str, Any]], Any]], payload: Any) -> bool:
    """按 type 分发事件，未知 type 或格式不对的消息视为空操作

    Returns:
        是否有处理函数被调用
    """
    if not isinstance(payload, dict):
        return False
    handler = handlers.get(payload.get("type"))
    if handler is None:
        return False
    handler(payload)
    return True


# ==================== 发布实现 ====================

class EventBus:
    """事件发布接口"""

    def publish(self, topic: str, event: BaseEvent) -> None:
        raise NotImplementedError


class RedisEventBus(EventBus):
    """通过 Redis pub/sub 发布，WebSocket 层订阅同名频道转发给浏览器"""

    def __init__(self, redis_url: str):
        self.redis_url = redis_url
        self._client = redis.Redis.from_url(redis_url, decode_responses=True)

    def publish(self, topic: str, event: BaseEvent) -> None:
        serialized = json.dumps(event.to_payload(), ensure_ascii=False)
        self._client.publish(topic, serialized)


class InMemoryEventBus(EventBus):
    """进程内事件总线（CLI 本地模式与测试使用）

    按频道保存已发布事件，并同步通知订阅者。同一把锁保证每个频道内的顺序。
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._history: List[Tuple[str, Dict[str, Any]]] = []
        self._subscribers: Dict[str, List[Callable[[str, Dict[str, Any]], None]]] = defaultdict(list)
        self._wildcard: List[Callable[[str, Dict[str, Any]], None]] = []

    def publish(self, topic: str, event: BaseEvent) -> None:
        payload = event.to_payload()
        with self._lock:
            self._history.append((topic, payload))
            listeners = list(self._subscribers.get(topic, [])) + list(self._wildcard)
            for listener in listeners:
                try:
                    listener(topic, payload)
                except Exception:
                    logger.exception(f"事件订阅者处理失败: {topic}")

    def subscribe(self, topic: Optional[str], listener: Callable[[str, Dict[str, Any]], None]) -> None:
        """订阅某个频道；topic 为空时订阅全部频道"""
        with self._lock:
            if topic is None:
                self._wildcard.append(listener)
            else:
                self._subscribers[topic].append(listener)

    def events(self, topic: Optional[str] = None) -> List[Dict[str, Any]]:
        with self._lock:
            return [payload for t, payload in self._history if topic is None or t == topic]

    def topics(self) -> List[str]:
        with self._lock:
            seen: List[str] = []
            for t, _ in self._history:
                if t not in seen:
                    seen.append(t)
            return seen

    def clear(self) -> None:
        with self._lock:
            self._history.clear()
