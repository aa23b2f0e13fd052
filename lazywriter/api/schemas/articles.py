"""
文章与生成相关数据模型

开发者: lazywriter 项目组
日期: 2026-10-18
"""
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from lazywriter.models import Article, ProviderResult, ThinkingFramework, WritingStyle


class StartArticleRequest(BaseModel):
    """创建文章并开始脑爆"""

    transcript: str = Field(description="用户的原始想法（语音转写或输入）")
    stream_base: Optional[str] = Field(default=None, description="前端已订阅的频道前缀，为空时由服务端生成")
    thinking_framework: ThinkingFramework = Field(default=ThinkingFramework.ORIGINAL, description="脑爆思考框架")
    writing_style: WritingStyle = Field(default=WritingStyle.ORIGINAL, description="初稿写作风格")
    user_id: Optional[int] = Field(default=None, description="当前用户，匿名为空")
    manual_draft: bool = Field(default=False, description="脑爆完成后不自动生成初稿")


class StartArticleResponse(BaseModel):
    article_id: int = Field(description="文章 ID")
    stream_base: str = Field(description="文章级频道名，模型频道在其后追加后缀")


class RegenerateAllRequest(BaseModel):
    """对已有文章重新开始一轮脑爆"""

    thinking_framework: Optional[ThinkingFramework] = Field(default=None, description="为空时沿用原设置")
    writing_style: Optional[WritingStyle] = Field(default=None, description="为空时沿用原设置")
    manual_draft: Optional[bool] = Field(default=None, description="脑爆结束后是否等待手动生成初稿，为空时沿用原设置")


class DraftRequest(BaseModel):
    writing_style: Optional[WritingStyle] = Field(default=None, description="为空时沿用文章的写作风格")


class FusedDraftRequest(BaseModel):
    """旧版单稿融合"""

    provider: str = Field(description="选中的模型")


class FinalContentRequest(BaseModel):
    content: str = Field(description="定稿内容")


class ProviderResultSchema(BaseModel):
    provider: str
    status: str
    content: Optional[str] = None
    generation: int = 0
    error_message: Optional[str] = None

    @classmethod
    def from_result(cls, result: ProviderResult) -> "ProviderResultSchema":
        return cls(
            provider=result.provider.value,
            status=result.status.value,
            content=result.content,
            generation=result.generation,
            error_message=result.error_message,
        )


class ArticleSummary(BaseModel):
    id: int
    status: str = Field(description="定稿 / 初稿 / 脑爆 / 未开始")
    transcript: str
    word_count: int = 0
    updated_at: Optional[str] = None

    @classmethod
    def from_article(cls, article: Article) -> "ArticleSummary":
        return cls(
            id=article.id,
            status=article.status_label,
            transcript=article.transcript,
            word_count=article.word_count,
            updated_at=article.updated_at,
        )


class ArticleDetail(BaseModel):
    id: int
    transcript: str
    stream_base: str
    user_id: Optional[int] = None
    writing_style: str
    thinking_framework: str
    manual_draft: bool
    brainstorm: Dict[str, ProviderResultSchema] = Field(default_factory=dict)
    drafts: Dict[str, ProviderResultSchema] = Field(default_factory=dict)
    selected_provider: Optional[str] = None
    draft: Optional[str] = None
    final_content: Optional[str] = None
    word_count: int = 0
    status: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_article(cls, article: Article) -> "ArticleDetail":
        return cls(
            id=article.id,
            transcript=article.transcript,
            stream_base=article.stream_base,
            user_id=article.user_id,
            writing_style=article.writing_style.value,
            thinking_framework=article.thinking_framework.value,
            manual_draft=article.manual_draft,
            brainstorm={p.value: ProviderResultSchema.from_result(r) for p, r in article.brainstorm.items()},
            drafts={p.value: ProviderResultSchema.from_result(r) for p, r in article.drafts.items()},
            selected_provider=article.selected_provider.value if article.selected_provider else None,
            draft=article.draft,
            final_content=article.final_content,
            word_count=article.word_count,
            status=article.status_label,
            created_at=article.created_at,
            updated_at=article.updated_at,
        )


class ArticleListResponse(BaseModel):
    items: List[ArticleSummary] = Field(default_factory=list)
    total: int = 0
