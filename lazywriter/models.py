"""
数据模型定义
文章、各模型的脑爆/初稿结果、生成任务描述都定义在此文件中
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field

from lazywriter.exceptions import UnknownProviderError


class Provider(str, Enum):
    """参与脑爆的模型"""
    GROK = "grok"
    QWEN = "qwen"
    DEEPSEEK = "deepseek"
    GEMINI = "gemini"
    DOUBAO = "doubao"


class Stage(str, Enum):
    """生成阶段：脑爆（第一阶段）/ 初稿（第二阶段）"""
    BRAINSTORM = "brainstorm"
    DRAFT = "draft"


class ProviderStatus(str, Enum):
    UNSET = "unset"
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETE = "complete"
    ERROR = "error"


TERMINAL_STATUSES = (ProviderStatus.COMPLETE, ProviderStatus.ERROR)


class TaskState(str, Enum):
    """单个生成任务的状态机：queued → running → succeeded | failed"""
    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class WritingStyle(str, Enum):
    ORIGINAL = "original"
    LUO_STYLE = "luo_style"


class ThinkingFramework(str, Enum):
    ORIGINAL = "original"
    OMNITHINK = "omnithink"
    MIMENG_NLP = "mimeng_nlp"
    FIRST_PRINCIPLES = "first_principles"
    RAPID_DECISION = "rapid_decision"
    BEZOS_MEMO = "bezos_memo"
    REGRET_MINIMIZATION = "regret_minimization"
    SYSTEMS_THINKING = "systems_thinking"
    MINIMAL_READER_LOAD = "minimal_reader_load"


def parse_provider(value) -> Provider:
    """把外部传入的字符串解析为 Provider，拒绝拼写错误"""
    if isinstance(value, Provider):
        return value
    try:
        return Provider(str(value).strip().lower())
    except ValueError:
        raise UnknownProviderError(str(value))


def parse_thinking_framework(value: Optional[str]) -> ThinkingFramework:
    """未知的思考框架回退到 original"""
    if isinstance(value, ThinkingFramework):
        return value
    try:
        return ThinkingFramework(value or ThinkingFramework.ORIGINAL.value)
    except ValueError:
        return ThinkingFramework.ORIGINAL


def parse_writing_style(value: Optional[str]) -> WritingStyle:
    if isinstance(value, WritingStyle):
        return value
    try:
        return WritingStyle(value or WritingStyle.ORIGINAL.value)
    except ValueError:
        return WritingStyle.ORIGINAL


class ProviderResult(BaseModel):
    """某篇文章在某阶段、某模型下的结果"""
    stage: Stage = Field(description="生成阶段")
    provider: Provider = Field(description="模型标识")
    status: ProviderStatus = Field(default=ProviderStatus.UNSET, description="生成状态")
    content: Optional[str] = Field(default=None, description="生成内容")
    generation: int = Field(default=0, description="生成轮次，用于丢弃过期任务的写入")
    error_message: Optional[str] = Field(default=None, description="最近一次失败的提示信息")
    updated_at: Optional[str] = Field(default=None, description="最近更新时间（ISO 格式）")

    @property
    def has_content(self) -> bool:
        return bool(self.content and self.content.strip())


class Article(BaseModel):
    """文章：用户的一次写作单元"""
    id: int = Field(description="文章 ID")
    transcript: str = Field(description="用户原始输入")
    user_id: Optional[int] = Field(default=None, description="所属用户（匿名为空）")
    stream_base: str = Field(description="文章级别的事件频道名")
    writing_style: WritingStyle = Field(default=WritingStyle.ORIGINAL, description="初稿写作风格")
    thinking_framework: ThinkingFramework = Field(default=ThinkingFramework.ORIGINAL, description="脑爆思考框架")
    manual_draft: bool = Field(default=False, description="为真时脑爆完成后不自动生成初稿")
    brainstorm: Dict[Provider, ProviderResult] = Field(default_factory=dict, description="各模型脑爆结果")
    drafts: Dict[Provider, ProviderResult] = Field(default_factory=dict, description="各模型初稿结果")
    selected_provider: Optional[Provider] = Field(default=None, description="单稿融合时选择的模型")
    draft: Optional[str] = Field(default=None, description="单稿融合生成的初稿")
    final_content: Optional[str] = Field(default=None, description="定稿内容")
    word_count: int = Field(default=0, description="定稿字数")
    created_at: Optional[str] = Field(default=None, description="创建时间")
    updated_at: Optional[str] = Field(default=None, description="更新时间")

    def result(self, stage: Stage, provider: Provider) -> ProviderResult:
        results = self.brainstorm if stage == Stage.BRAINSTORM else self.drafts
        return results.get(provider) or ProviderResult(stage=stage, provider=provider)

    def brainstorm_content(self, provider: Provider) -> Optional[str]:
        return self.result(Stage.BRAINSTORM, provider).content

    @property
    def has_brainstorm(self) -> bool:
        return any(r.has_content for r in self.brainstorm.values())

    @property
    def has_draft(self) -> bool:
        return bool(self.draft) or any(r.has_content for r in self.drafts.values())

    @property
    def status_label(self) -> str:
        if self.final_content:
            return "定稿"
        if self.has_draft:
            return "初稿"
        if self.has_brainstorm:
            return "脑爆"
        return "未开始"


def count_words(text: Optional[str]) -> int:
    """去掉所有空白后的字符数（中文按字计）"""
    if not text:
        return 0
    return len("".join(text.split()))


class TaskSpec(BaseModel):
    """一次 (文章, 阶段, 模型) 生成的描述，可 JSON 序列化后交给后台队列"""
    article_id: int = Field(description="文章 ID")
    stage: Stage = Field(description="生成阶段")
    provider: Optional[Provider] = Field(default=None, description="模型；为空表示单稿融合初稿")
    config_provider: Provider = Field(description="实际调用的模型配置")
    prompt: str = Field(description="用户提示词")
    system: Optional[str] = Field(default=None, description="系统提示词")
    topic: str = Field(description="事件发布频道")
    generation: int = Field(default=0, description="生成轮次")
    batch_id: Optional[str] = Field(default=None, description="所属脑爆批次，仅 start_all 派发的任务携带")
    streaming: bool = Field(default=True, description="是否流式输出")
    timeout: float = Field(description="请求超时（秒）")
    max_tokens: int = Field(description="最大输出 token 数")
    temperature: float = Field(default=0.7, description="温度参数")
    created_at: str = Field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    @property
    def is_fused_draft(self) -> bool:
        return self.provider is None
