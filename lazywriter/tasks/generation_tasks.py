"""
生成相关 Celery 任务

run_generation - 执行一次 (文章, 阶段, 模型) 生成

特性:
- 超时 / 429 / 5xx 通过 self.retry 按 RetryPolicy 延迟重试
- 配置错误与其它 4xx 立即失败
- 失败只影响本任务对应的模型，以终态事件告知前端，不向上抛出

开发者: lazywriter 项目组
日期: 2026-10-18
"""
from functools import lru_cache

from celery.utils.log import get_task_logger

from lazywriter.exceptions import ApiError, ConfigurationError, ProviderTimeoutError
from lazywriter.models import TaskSpec
from lazywriter.runtime.job import DEFAULT_RETRY_POLICY
from lazywriter.tasks.celery_app import celery_app
from lazywriter.tasks.dispatch import TASK_RUN_GENERATION

logger = get_task_logger(__name__)


@lru_cache(maxsize=1)
def get_worker_orchestrator():
    """worker 进程内的编排器：发布到 Redis，追加的初稿任务继续投递到 Celery"""
    from lazywriter.services.generation_service import build_orchestrator

    return build_orchestrator(dispatch_mode="celery")


@celery_app.task(name=TASK_RUN_GENERATION, bind=True)
def run_generation(self, payload: dict):
    """执行一次生成尝试，失败时按重试策略重新入队"""
    spec = TaskSpec.model_validate(payload)
    job = get_worker_orchestrator().build_job(spec)
    retries = self.request.retries
    attempt_no = retries + 1

    try:
        text = job.attempt(attempt_no)
    except (ConfigurationError, ProviderTimeoutError, ApiError) as exc:
        countdown = DEFAULT_RETRY_POLICY.decide(exc, retries)
        if countdown is None:
            job.fail(exc)
            return job.state.value
        job.announce_retry(exc, attempt_no + 1)
        raise self.retry(
            exc=exc,
            countdown=countdown,
            max_retries=DEFAULT_RETRY_POLICY.max_retries_for(exc),
        )
    except Exception as exc:
        logger.exception(f"生成任务出现未预期的错误 (article={spec.article_id})")
        job.fail(exc)
        return job.state.value

    job.succeed(text)
    return job.state.value
