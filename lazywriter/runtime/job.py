"""
生成任务

一个 GenerationJob 对应一次 (文章, 阶段, 模型) 生成：
queued → running → succeeded | failed

- 流式任务每收到一个片段就立即在自己的频道发布 chunk 事件
- 成功：写入内容 + complete 状态，发布一次 complete 事件
- 重试耗尽后失败：写入 error 状态（内容保持不变），发布一次 error 事件
- 只读写自己的 (阶段, 模型) 行、只在自己的频道发布

重试策略由 RetryPolicy 决定，Celery 任务与本地派发器共用同一套策略。
"""
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from lazywriter.config import ProviderRoster
from lazywriter.exceptions import ApiError, ConfigurationError, ProviderTimeoutError
from lazywriter.llm import ProviderClient
from lazywriter.models import Provider, ProviderStatus, Stage, TaskSpec, TaskState
from lazywriter.runtime.db import ArticleStore
from lazywriter.runtime.events import (
    ChunkEvent,
    CompleteEvent,
    ErrorEvent,
    EventBus,
    RetryingEvent,
)

logger = logging.getLogger(__name__)

DRAFT_ERROR_NOTE = "（上方脑爆内容不受影响，可单独重新生成初稿）"


@dataclass(frozen=True)
class RetryPolicy:
    """重试策略

    - 超时 / 网络中断：最多重试 3 次，间隔 5 秒
    - 429 / 5xx：最多重试 2 次，间隔 10 秒
    - 配置错误、其它 4xx：不重试
    """
    timeout_retries: int = 3
    timeout_backoff: float = 5.0
    api_retries: int = 2
    api_backoff: float = 10.0

    def max_retries_for(self, exc: BaseException) -> int:
        if isinstance(exc, ProviderTimeoutError):
            return self.timeout_retries
        if isinstance(exc, ApiError) and exc.retryable:
            return self.api_retries
        return 0

    def decide(self, exc: BaseException, retries_done: int) -> Optional[float]:
        """返回下次重试前的等待秒数；不应重试时返回 None"""
        if retries_done >= self.max_retries_for(exc):
            return None
        if isinstance(exc, ProviderTimeoutError):
            return self.timeout_backoff
        return self.api_backoff


DEFAULT_RETRY_POLICY = RetryPolicy()


def user_error_message(exc: BaseException, display_name: str, stage: Stage) -> str:
    """把异常转换成面向用户的提示，带上模型名以便单独重试"""
    message = str(exc)
    if isinstance(exc, ConfigurationError):
        text = f"{display_name} 配置缺失，请联系管理员检查配置"
    elif isinstance(exc, ProviderTimeoutError):
        text = f"{display_name} 生成超时（可能内容较长），请稍后重新生成"
    elif isinstance(exc, ApiError):
        status = exc.status_code
        if status == 401 or "Incorrect API key" in message or "Invalid API key" in message:
            text = f"{display_name} API密钥配置错误，请联系管理员检查配置"
        elif status == 403:
            text = f"{display_name} 权限不足，请联系管理员检查配置"
        elif status == 400:
            text = f"{display_name} 请求格式错误，请联系管理员"
        elif status == 429:
            text = f"{display_name} 请求过于频繁，请稍后重新生成"
        elif status is not None and status >= 500:
            text = f"{display_name} 服务繁忙，请稍后重新生成"
        else:
            text = f"{display_name} 服务暂时不可用，请稍后重新生成"
    else:
        text = f"{display_name} 生成失败，请稍后重新生成"
    if stage == Stage.DRAFT:
        text += DRAFT_ERROR_NOTE
    return text


def retry_notice(exc: BaseException, display_name: str, next_attempt: int) -> str:
    if isinstance(exc, ProviderTimeoutError):
        reason = "生成超时（可能内容较长）"
    elif isinstance(exc, ApiError) and exc.status_code == 429:
        reason = "请求过于频繁"
    else:
        reason = "服务繁忙"
    return f"{display_name} {reason}，系统将自动重试（第 {next_attempt} 次尝试）..."


class GenerationJob:
    """单个 (文章, 阶段, 模型) 的生成任务"""

    def __init__(
        self,
        spec: TaskSpec,
        store: ArticleStore,
        bus: EventBus,
        client: ProviderClient,
        roster: ProviderRoster,
        on_batch_terminal: Optional[Callable[[str, Provider], None]] = None,
    ):
        self.spec = spec
        self.store = store
        self.bus = bus
        self.client = client
        self.roster = roster
        self.on_batch_terminal = on_batch_terminal
        self.state = TaskState.QUEUED
        self.content: Optional[str] = None
        self._streaming_marked = False

    @property
    def display_name(self) -> str:
        return self.roster.display_name(self.spec.provider or self.spec.config_provider)

    @property
    def _provider_value(self) -> Optional[str]:
        return self.spec.provider.value if self.spec.provider else None

    def attempt(self, attempt_no: int = 1) -> str:
        """执行一次调用，失败时抛出 Provider 异常交给重试策略处理"""
        self.state = TaskState.RUNNING
        spec = self.spec
        config = self.roster.config_for(spec.config_provider).model_copy(
            update={
                "timeout": spec.timeout,
                "max_tokens": spec.max_tokens,
                "temperature": spec.temperature,
            }
        )
        logger.info(
            f"开始生成 article={spec.article_id} stage={spec.stage.value} "
            f"provider={self._provider_value or 'draft'} 第 {attempt_no} 次尝试"
        )

        on_chunk = None
        if spec.streaming:
            def on_chunk(text: str) -> None:
                if not self._streaming_marked:
                    self._mark_streaming()
                self.bus.publish(
                    spec.topic,
                    ChunkEvent(
                        chunk=text,
                        provider=self._provider_value,
                        stage=spec.stage.value,
                        generation=spec.generation,
                        attempt=attempt_no,
                    ),
                )

        return self.client.generate(spec.prompt, spec.system, config, on_chunk=on_chunk)

    def _mark_streaming(self) -> None:
        self._streaming_marked = True
        if self.spec.is_fused_draft:
            self.store.set_fused_draft_status(self.spec.article_id, ProviderStatus.STREAMING, self.spec.generation)
        else:
            self.store.set_stage_status(
                self.spec.article_id,
                self.spec.stage,
                self.spec.provider,
                ProviderStatus.STREAMING,
                generation=self.spec.generation,
            )

    def announce_retry(self, exc: BaseException, next_attempt: int) -> None:
        logger.warning(f"{self.display_name} 第 {next_attempt - 1} 次尝试失败，准备重试: {exc}")
        self._streaming_marked = False
        self.bus.publish(
            self.spec.topic,
            RetryingEvent(
                attempt=next_attempt,
                message=retry_notice(exc, self.display_name, next_attempt),
                provider=self._provider_value,
                stage=self.spec.stage.value,
                generation=self.spec.generation,
            ),
        )

    def succeed(self, text: str) -> None:
        spec = self.spec
        self.content = text
        self.state = TaskState.SUCCEEDED
        if spec.is_fused_draft:
            persisted = self.store.set_fused_draft(spec.article_id, text, spec.generation)
        else:
            persisted = self.store.set_stage_content(
                spec.article_id, spec.stage, spec.provider, text, generation=spec.generation
            )

        if persisted:
            self.bus.publish(
                spec.topic,
                CompleteEvent(
                    content=text,
                    provider=self._provider_value,
                    stage=spec.stage.value,
                    generation=spec.generation,
                ),
            )
            logger.info(f"✅ {self.display_name} 生成完成 article={spec.article_id} stage={spec.stage.value}")
        else:
            logger.info(
                f"{self.display_name} 的结果已被更新一轮的生成取代，丢弃 "
                f"(article={spec.article_id}, generation={spec.generation})"
            )
        self._report_terminal()

    def fail(self, exc: BaseException) -> None:
        spec = self.spec
        self.state = TaskState.FAILED
        message = user_error_message(exc, self.display_name, spec.stage)
        if isinstance(exc, ConfigurationError):
            logger.error(f"模型配置错误 ({self.display_name}): {exc}")
        else:
            logger.error(f"❌ {self.display_name} 生成失败 article={spec.article_id} stage={spec.stage.value}: {exc}")

        if spec.is_fused_draft:
            persisted = self.store.set_fused_draft_status(spec.article_id, ProviderStatus.ERROR, spec.generation)
        else:
            persisted = self.store.set_stage_status(
                spec.article_id,
                spec.stage,
                spec.provider,
                ProviderStatus.ERROR,
                generation=spec.generation,
                message=message,
            )

        if persisted:
            self.bus.publish(
                spec.topic,
                ErrorEvent(
                    message=message,
                    provider=self._provider_value,
                    stage=spec.stage.value,
                    generation=spec.generation,
                ),
            )
        self._report_terminal()

    def _report_terminal(self) -> None:
        spec = self.spec
        if spec.batch_id is None or spec.stage != Stage.BRAINSTORM or self.on_batch_terminal is None:
            return
        try:
            self.on_batch_terminal(spec.batch_id, spec.provider)
        except Exception:
            logger.exception(f"脑爆批次 {spec.batch_id} 完成回调失败")


def run_with_retries(
    job: GenerationJob,
    policy: RetryPolicy = DEFAULT_RETRY_POLICY,
    sleep: Callable[[float], None] = time.sleep,
) -> TaskState:
    """在当前线程内执行任务直到成功或重试耗尽"""
    attempt_no = 1
    retries = 0
    while True:
        try:
            text = job.attempt(attempt_no)
        except (ConfigurationError, ProviderTimeoutError, ApiError) as exc:
            countdown = policy.decide(exc, retries)
            if countdown is None:
                job.fail(exc)
                return job.state
            job.announce_retry(exc, attempt_no + 1)
            sleep(countdown)
            retries += 1
            attempt_no += 1
            continue
        except Exception as exc:
            logger.exception(f"生成任务出现未预期的错误 (article={job.spec.article_id})")
            job.fail(exc)
            return job.state
        job.succeed(text)
        return job.state
