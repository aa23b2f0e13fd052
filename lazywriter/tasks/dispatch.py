"""
任务派发

编排器只依赖 Dispatcher 接口，派发即返回，不等待模型调用：
- CeleryDispatcher：send_task 投递到 llm 队列，由 worker 执行
- LocalDispatcher：进程内线程池执行（CLI 与测试使用）；不传线程池时同步执行

两者使用同一个 RetryPolicy。
"""
import logging
import time
from concurrent.futures import Executor
from typing import Callable, Optional

from lazywriter.models import TaskSpec
from lazywriter.runtime.job import DEFAULT_RETRY_POLICY, GenerationJob, RetryPolicy, run_with_retries

logger = logging.getLogger(__name__)

TASK_RUN_GENERATION = "lazywriter.tasks.generation_tasks.run_generation"

JobFactory = Callable[[TaskSpec], GenerationJob]


class Dispatcher:
    """后台任务派发接口"""

    def attach(self, job_factory: JobFactory) -> None:
        """编排器创建时注入任务工厂；需要在本进程执行任务的派发器使用"""

    def dispatch(self, spec: TaskSpec) -> None:
        raise NotImplementedError


class CeleryDispatcher(Dispatcher):
    """投递到 Celery worker"""

    def __init__(self, celery_app=None, queue: str = "llm"):
        if celery_app is None:
            from lazywriter.tasks.celery_app import celery_app
        self.celery_app = celery_app
        self.queue = queue

    def dispatch(self, spec: TaskSpec) -> None:
        result = self.celery_app.send_task(
            TASK_RUN_GENERATION,
            args=[spec.model_dump(mode="json")],
            queue=self.queue,
        )
        logger.info(
            f"已派发任务 {result.id} (article={spec.article_id}, stage={spec.stage.value}, "
            f"provider={spec.provider.value if spec.provider else 'draft'})"
        )


class LocalDispatcher(Dispatcher):
    """进程内执行

    Args:
        executor: 线程池；为空时在调用线程内同步执行
        policy: 重试策略
        sleep: 重试等待函数，测试中可替换为空操作
    """

    def __init__(
        self,
        executor: Optional[Executor] = None,
        policy: RetryPolicy = DEFAULT_RETRY_POLICY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.executor = executor
        self.policy = policy
        self.sleep = sleep
        self._job_factory: Optional[JobFactory] = None
        self.futures = []

    def attach(self, job_factory: JobFactory) -> None:
        self._job_factory = job_factory

    def dispatch(self, spec: TaskSpec) -> None:
        if self._job_factory is None:
            raise RuntimeError("LocalDispatcher 尚未绑定任务工厂")
        if self.executor is None:
            self._run(spec)
            return
        self.futures.append(self.executor.submit(self._run, spec))

    def _run(self, spec: TaskSpec) -> None:
        job = self._job_factory(spec)
        run_with_retries(job, self.policy, sleep=self.sleep)

    def wait(self) -> None:
        """等待已提交的任务（含执行过程中追加派发的初稿任务）全部结束"""
        while self.futures:
            future = self.futures.pop(0)
            future.result()
