"""
生成编排服务

把一次用户请求扇出到名单中的每个模型，供 API 层和 CLI 调用：

1. start_all - 创建文章（或对已有文章重新开始一轮），为每个启用的模型派发脑爆任务
2. regenerate_stage1 - 单独重新生成某个模型的脑爆
3. generate_all_drafts - 为每个有脑爆内容的模型派发初稿任务
4. regenerate_draft - 单独重新生成某个模型的初稿
5. generate_single_fused_draft - 旧版单稿融合初稿
6. on_brainstorm_terminal - 脑爆批次屏障，全部模型结束后自动触发初稿（只触发一次）

所有命令只做校验、状态重置和派发，立即返回；模型调用的失败通过
各自频道的终态事件告知前端，不会抛给命令调用方。

开发者: lazywriter 项目组
日期: 2026-10-18
"""
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional

from lazywriter.config import AppSettings, ProviderRoster, get_roster, get_settings
from lazywriter.exceptions import (
    ArticleNotFoundError,
    InvalidTranscriptError,
    PrerequisiteMissingError,
    QuotaExceededError,
    UnknownProviderError,
)
from lazywriter.llm import ProviderClient
from lazywriter.models import (
    Article,
    Provider,
    Stage,
    TaskSpec,
    ThinkingFramework,
    WritingStyle,
    parse_provider,
)
from lazywriter.prompts import build_brainstorm_system_prompt, build_draft_prompt
from lazywriter.runtime.db import ArticleStore
from lazywriter.runtime.events import (
    AllDraftsStartedEvent,
    DraftRegenerationStartedEvent,
    ErrorEvent,
    EventBus,
    RedisEventBus,
    RegenerationStartedEvent,
    SubjectCreatedEvent,
    provider_topic,
    subject_topic,
)
from lazywriter.runtime.job import GenerationJob
from lazywriter.services.quota_service import QuotaService
from lazywriter.tasks.dispatch import CeleryDispatcher, Dispatcher, LocalDispatcher

logger = logging.getLogger(__name__)


def new_stream_base() -> str:
    return f"article_{uuid.uuid4().hex[:16]}"


class GenerationOrchestrator:
    """多模型生成编排器"""

    def __init__(
        self,
        store: ArticleStore,
        bus: EventBus,
        dispatcher: Dispatcher,
        quota: QuotaService,
        roster: ProviderRoster,
        settings: AppSettings,
        client: Optional[ProviderClient] = None,
    ):
        self.store = store
        self.bus = bus
        self.dispatcher = dispatcher
        self.quota = quota
        self.roster = roster
        self.settings = settings
        self.client = client or ProviderClient()
        self.dispatcher.attach(self.build_job)

    # ==================== 查询 ====================

    def get_article(self, article_id: int) -> Article:
        article = self.store.get_article(article_id)
        if article is None:
            raise ArticleNotFoundError(article_id)
        return article

    def list_articles(self, user_id: Optional[int] = None, limit: int = 50) -> List[Article]:
        return self.store.list_articles(user_id=user_id, limit=limit)

    def save_final(self, article_id: int, content: str) -> Article:
        self.get_article(article_id)
        self.store.set_final_content(article_id, content)
        return self.get_article(article_id)

    def _resolve_provider(self, provider) -> Provider:
        resolved = parse_provider(provider)
        if resolved not in self.roster:
            raise UnknownProviderError(str(provider))
        return resolved

    # ==================== 第一阶段：脑爆 ====================

    def start_all(
        self,
        transcript: Optional[str] = None,
        article_id: Optional[int] = None,
        stream_base: Optional[str] = None,
        thinking_framework: Optional[ThinkingFramework] = None,
        writing_style: Optional[WritingStyle] = None,
        user_id: Optional[int] = None,
        manual_draft: Optional[bool] = None,
    ) -> Article:
        """为每个启用的模型派发脑爆任务

        传 transcript 时创建新文章（校验输入并扣减一次额度）；
        传 article_id 时对已有文章重新开始一轮，不再扣减额度，
        未指定的思考框架、写作风格和手动初稿设置沿用文章原有设置。
        """
        if article_id is not None:
            article = self.get_article(article_id)
            if thinking_framework is None:
                thinking_framework = article.thinking_framework
            elif thinking_framework != article.thinking_framework:
                self.store.set_thinking_framework(article.id, thinking_framework)
            if manual_draft is not None and manual_draft != article.manual_draft:
                self.store.set_manual_draft(article.id, manual_draft)
            self._apply_writing_style(article, writing_style)
        else:
            thinking_framework = thinking_framework or ThinkingFramework.ORIGINAL
            article = self._create_article(
                transcript,
                stream_base or new_stream_base(),
                thinking_framework,
                writing_style or WritingStyle.ORIGINAL,
                user_id,
                bool(manual_draft),
            )

        self.bus.publish(subject_topic(article.stream_base), SubjectCreatedEvent(article_id=article.id))

        providers = self.roster.enabled()
        if not providers:
            logger.warning(f"没有启用的模型，文章 {article.id} 不会生成脑爆")
            return article

        batch_id = uuid.uuid4().hex
        specs = [
            self._brainstorm_spec(article, provider, thinking_framework, batch_id)
            for provider in providers
        ]
        # 先建好批次再派发，同步执行时也不会提前触发初稿
        self.store.create_batch(batch_id, article.id, providers)
        for spec in specs:
            self._dispatch(spec)

        logger.info(f"文章 {article.id} 已派发 {len(specs)} 个脑爆任务 (batch={batch_id})")
        return article

    def _create_article(
        self,
        transcript: Optional[str],
        stream_base: str,
        thinking_framework: ThinkingFramework,
        writing_style: WritingStyle,
        user_id: Optional[int],
        manual_draft: bool,
    ) -> Article:
        text = (transcript or "").strip()
        if len(text) < self.settings.min_transcript_length:
            raise InvalidTranscriptError(
                f"请输入至少 {self.settings.min_transcript_length} 个字的想法"
            )

        try:
            self.quota.ensure_available(user_id)
            return self.store.create_article(
                text,
                stream_base,
                user_id=user_id,
                writing_style=writing_style,
                thinking_framework=thinking_framework,
                manual_draft=manual_draft,
                charge_user=not self.quota.is_exempt(user_id),
            )
        except QuotaExceededError as e:
            logger.warning(f"用户 {user_id} 次数不足，拒绝创建文章")
            self.bus.publish(subject_topic(stream_base), ErrorEvent(message=str(e)))
            raise

    def _brainstorm_spec(
        self,
        article: Article,
        provider: Provider,
        thinking_framework: ThinkingFramework,
        batch_id: Optional[str] = None,
    ) -> TaskSpec:
        generation = self.store.begin_generation(article.id, Stage.BRAINSTORM, provider)
        spec = self.roster.get(provider)
        stages = self.settings.stages
        return TaskSpec(
            article_id=article.id,
            stage=Stage.BRAINSTORM,
            provider=provider,
            config_provider=provider,
            prompt=article.transcript,
            system=build_brainstorm_system_prompt(spec.persona, thinking_framework),
            topic=provider_topic(article.stream_base, Stage.BRAINSTORM, provider),
            generation=generation,
            batch_id=batch_id,
            streaming=True,
            timeout=stages.timeout_for(Stage.BRAINSTORM, thinking_framework),
            max_tokens=stages.max_tokens_for(Stage.BRAINSTORM),
            temperature=self.roster.config_for(provider).temperature,
        )

    def regenerate_stage1(self, article_id: int, provider) -> Provider:
        """重新生成某个模型的脑爆，不影响其它模型，也不会再次自动触发初稿"""
        article = self.get_article(article_id)
        provider = self._resolve_provider(provider)

        spec = self._brainstorm_spec(article, provider, article.thinking_framework)
        self._dispatch(spec)
        self.bus.publish(
            subject_topic(article.stream_base),
            RegenerationStartedEvent(provider=provider.value),
        )
        logger.info(f"文章 {article_id} 重新生成 {provider.value} 的脑爆 (generation={spec.generation})")
        return provider

    def on_brainstorm_terminal(self, batch_id: str, provider: Provider) -> bool:
        """脑爆批次中某个模型结束（成功或失败）

        整个批次首次全部结束时自动为有内容的模型生成初稿。

        Returns:
            本次调用是否触发了初稿
        """
        if not self.store.record_batch_terminal(batch_id, provider):
            return False

        batch = self.store.get_batch(batch_id)
        article = self.get_article(batch["article_id"])
        if article.manual_draft:
            logger.info(f"文章 {article.id} 选择手动生成初稿，跳过自动触发")
            return False

        logger.info(f"文章 {article.id} 脑爆批次 {batch_id} 全部结束，开始生成初稿")
        self.generate_all_drafts(article.id)
        return True

    # ==================== 第二阶段：初稿 ====================

    def _draft_spec(self, article: Article, provider: Provider, writing_style: WritingStyle) -> TaskSpec:
        generation = self.store.begin_generation(article.id, Stage.DRAFT, provider)
        stages = self.settings.stages
        return TaskSpec(
            article_id=article.id,
            stage=Stage.DRAFT,
            provider=provider,
            config_provider=provider,
            prompt=build_draft_prompt(
                article.transcript,
                article.brainstorm_content(provider),
                self.roster.display_name(provider),
                writing_style,
            ),
            topic=provider_topic(article.stream_base, Stage.DRAFT, provider),
            generation=generation,
            streaming=False,
            timeout=stages.timeout_for(Stage.DRAFT),
            max_tokens=stages.max_tokens_for(Stage.DRAFT),
            temperature=self.roster.config_for(provider).temperature,
        )

    def _apply_writing_style(self, article: Article, writing_style: Optional[WritingStyle]) -> WritingStyle:
        if writing_style is None or writing_style == article.writing_style:
            return article.writing_style
        self.store.set_writing_style(article.id, writing_style)
        return writing_style

    def generate_all_drafts(self, article_id: int, writing_style: Optional[WritingStyle] = None) -> List[Provider]:
        """为每个有脑爆内容的模型生成初稿，没有内容的模型跳过

        Returns:
            实际派发了初稿任务的模型
        """
        article = self.get_article(article_id)
        style = self._apply_writing_style(article, writing_style)

        providers = [
            spec.provider
            for spec in self.roster
            if article.result(Stage.BRAINSTORM, spec.provider).has_content
        ]
        if not providers:
            logger.warning(f"文章 {article_id} 没有任何脑爆内容，不生成初稿")
            return []

        specs = [self._draft_spec(article, provider, style) for provider in providers]
        for spec in specs:
            self._dispatch(spec)
        self.bus.publish(
            subject_topic(article.stream_base),
            AllDraftsStartedEvent(providers=[p.value for p in providers]),
        )
        logger.info(f"文章 {article_id} 已派发 {len(specs)} 个初稿任务")
        return providers

    def regenerate_draft(self, article_id: int, provider, writing_style: Optional[WritingStyle] = None) -> Provider:
        """重新生成某个模型的初稿，要求该模型已有脑爆内容"""
        article = self.get_article(article_id)
        provider = self._resolve_provider(provider)
        if not article.result(Stage.BRAINSTORM, provider).has_content:
            logger.warning(f"文章 {article_id} 的 {provider.value} 没有脑爆内容，无法生成初稿")
            raise PrerequisiteMissingError(
                f"{self.roster.display_name(provider)} 还没有脑爆内容，请先重新生成脑爆"
            )

        style = self._apply_writing_style(article, writing_style)
        spec = self._draft_spec(article, provider, style)
        self._dispatch(spec)
        self.bus.publish(
            subject_topic(article.stream_base),
            DraftRegenerationStartedEvent(provider=provider.value),
        )
        logger.info(f"文章 {article_id} 重新生成 {provider.value} 的初稿 (generation={spec.generation})")
        return provider

    def generate_single_fused_draft(self, article_id: int, selected_provider) -> Provider:
        """旧版流程：选中一个模型的脑爆内容，融合成一篇初稿写入 article.draft"""
        article = self.get_article(article_id)
        provider = self._resolve_provider(selected_provider)
        content = article.brainstorm_content(provider)
        if not (content and content.strip()):
            raise PrerequisiteMissingError(
                f"{self.roster.display_name(provider)} 还没有脑爆内容，无法生成初稿"
            )

        self.store.select_provider(article_id, provider)
        generation = self.store.begin_fused_draft(article_id)
        stages = self.settings.stages
        spec = TaskSpec(
            article_id=article_id,
            stage=Stage.DRAFT,
            provider=None,
            config_provider=provider,
            prompt=build_draft_prompt(
                article.transcript,
                content,
                self.roster.display_name(provider),
                WritingStyle.ORIGINAL,
            ),
            topic=provider_topic(article.stream_base, Stage.DRAFT, None),
            generation=generation,
            streaming=False,
            timeout=stages.timeout_for(Stage.DRAFT),
            max_tokens=stages.max_tokens_for(Stage.DRAFT),
            temperature=self.roster.config_for(provider).temperature,
        )
        self._dispatch(spec)
        logger.info(f"文章 {article_id} 使用 {provider.value} 的脑爆生成融合初稿")
        return provider

    # ==================== 任务 ====================

    def _dispatch(self, spec: TaskSpec) -> bool:
        """派发任务

        派发本身失败（如消息队列不可用）时按任务失败处理：写入 error 状态、
        发布 error 事件并计入脑爆批次，避免该模型一直停在 pending、批次永远无法结束。
        """
        try:
            self.dispatcher.dispatch(spec)
            return True
        except Exception as e:
            logger.exception(
                f"派发任务失败 (article={spec.article_id}, stage={spec.stage.value}, "
                f"provider={spec.provider.value if spec.provider else 'draft'})"
            )
            self.build_job(spec).fail(e)
            return False

    def build_job(self, spec: TaskSpec) -> GenerationJob:
        return GenerationJob(
            spec,
            self.store,
            self.bus,
            self.client,
            self.roster,
            on_batch_terminal=self.on_brainstorm_terminal,
        )


def build_orchestrator(
    dispatch_mode: Optional[str] = None,
    settings: Optional[AppSettings] = None,
    bus: Optional[EventBus] = None,
) -> GenerationOrchestrator:
    """按运行时设置组装编排器"""
    settings = settings or get_settings()
    mode = dispatch_mode or settings.dispatch_mode

    store = ArticleStore(settings.db_path, default_credits=settings.default_credits)
    store.initialize()

    if mode == "local":
        dispatcher: Dispatcher = LocalDispatcher(
            executor=ThreadPoolExecutor(max_workers=settings.local_workers, thread_name_prefix="llm")
        )
    elif mode == "celery":
        dispatcher = CeleryDispatcher()
    else:
        raise ValueError(f"未知的派发方式: {mode}")

    return GenerationOrchestrator(
        store=store,
        bus=bus or RedisEventBus(settings.redis_url),
        dispatcher=dispatcher,
        quota=QuotaService(store),
        roster=get_roster(),
        settings=settings,
    )
