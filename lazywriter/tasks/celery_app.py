"""
Celery 应用配置

提供:
1. Celery 应用实例（llm 队列，JSON 序列化）
2. Worker 关闭信号的日志记录

生成任务本身可重试且以轮次号防止过期写入，worker 被中断时
未完成的任务由 acks_late 重新投递，不需要额外的停机状态保存。

开发者: lazywriter 项目组
日期: 2026-10-18
"""
import logging
import os

from celery import Celery
from celery.signals import worker_shutdown, worker_shutting_down

logger = logging.getLogger(__name__)

REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
LLM_QUEUE = "llm"

celery_app = Celery(
    "lazywriter",
    broker=REDIS_URL,
    backend=REDIS_URL,
    include=["lazywriter.tasks.generation_tasks"],
)

# 每个模型的调用都是独立任务，并发数决定同时进行的模型调用数量
celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_default_queue=LLM_QUEUE,
    worker_concurrency=int(os.getenv("CELERY_CONCURRENCY", "5")),
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    broker_connection_retry_on_startup=True,
)


@worker_shutting_down.connect
def handle_worker_shutting_down(sig, how, exitcode, **kwargs):
    """Worker 正在关闭"""
    logger.warning("⚠️ Worker 正在关闭 (signal=%s, how=%s, exitcode=%s)", sig, how, exitcode)


@worker_shutdown.connect
def handle_worker_shutdown(sender, **kwargs):
    logger.info("🛑 Worker 已关闭")
