"""
文章与生成 API 路由

命令接口只负责派发，立即返回 202；生成结果通过 WebSocket 频道推送。

开发者: lazywriter 项目组
日期: 2026-10-18
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, status

from lazywriter.api.deps import get_orchestrator
from lazywriter.api.schemas.articles import (
    ArticleDetail,
    ArticleListResponse,
    ArticleSummary,
    DraftRequest,
    FinalContentRequest,
    FusedDraftRequest,
    RegenerateAllRequest,
    StartArticleRequest,
    StartArticleResponse,
)
from lazywriter.api.schemas.common import MessageResponse
from lazywriter.services.generation_service import GenerationOrchestrator

router = APIRouter(prefix="/api/articles", tags=["articles"])


@router.post("", response_model=StartArticleResponse, status_code=status.HTTP_202_ACCEPTED)
def create_article(body: StartArticleRequest, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    """创建文章并开始脑爆"""
    article = orchestrator.start_all(
        transcript=body.transcript,
        stream_base=body.stream_base,
        thinking_framework=body.thinking_framework,
        writing_style=body.writing_style,
        user_id=body.user_id,
        manual_draft=body.manual_draft,
    )
    return StartArticleResponse(article_id=article.id, stream_base=article.stream_base)


@router.get("", response_model=ArticleListResponse)
def list_articles(
    user_id: Optional[int] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    articles = orchestrator.list_articles(user_id=user_id, limit=limit)
    items = [ArticleSummary.from_article(a) for a in articles]
    return ArticleListResponse(items=items, total=len(items))


@router.get("/{article_id}", response_model=ArticleDetail)
def get_article(article_id: int, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    return ArticleDetail.from_article(orchestrator.get_article(article_id))


@router.post("/{article_id}/regenerate", response_model=StartArticleResponse, status_code=status.HTTP_202_ACCEPTED)
def regenerate_all(
    article_id: int,
    body: Optional[RegenerateAllRequest] = None,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """对已有文章重新开始一轮脑爆"""
    body = body or RegenerateAllRequest()
    article = orchestrator.start_all(
        article_id=article_id,
        thinking_framework=body.thinking_framework,
        writing_style=body.writing_style,
        manual_draft=body.manual_draft,
    )
    return StartArticleResponse(article_id=article.id, stream_base=article.stream_base)


@router.post(
    "/{article_id}/providers/{provider}/regenerate",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def regenerate_provider(article_id: int, provider: str, orchestrator: GenerationOrchestrator = Depends(get_orchestrator)):
    """重新生成单个模型的脑爆"""
    resolved = orchestrator.regenerate_stage1(article_id, provider)
    return MessageResponse(message="已开始重新生成", providers=[resolved.value], article_id=article_id)


@router.post("/{article_id}/drafts", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
def generate_drafts(
    article_id: int,
    body: Optional[DraftRequest] = None,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """为所有有脑爆内容的模型生成初稿"""
    body = body or DraftRequest()
    providers = orchestrator.generate_all_drafts(article_id, writing_style=body.writing_style)
    message = "已开始生成初稿" if providers else "没有可用的脑爆内容"
    return MessageResponse(message=message, providers=[p.value for p in providers], article_id=article_id)


@router.post(
    "/{article_id}/drafts/{provider}/regenerate",
    response_model=MessageResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def regenerate_draft(
    article_id: int,
    provider: str,
    body: Optional[DraftRequest] = None,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    body = body or DraftRequest()
    resolved = orchestrator.regenerate_draft(article_id, provider, writing_style=body.writing_style)
    return MessageResponse(message="已开始重新生成初稿", providers=[resolved.value], article_id=article_id)


@router.post("/{article_id}/draft", response_model=MessageResponse, status_code=status.HTTP_202_ACCEPTED)
def generate_fused_draft(
    article_id: int,
    body: FusedDraftRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """旧版：选中一个模型的脑爆生成单篇初稿"""
    resolved = orchestrator.generate_single_fused_draft(article_id, body.provider)
    return MessageResponse(message="已开始生成初稿", providers=[resolved.value], article_id=article_id)


@router.put("/{article_id}/final", response_model=ArticleDetail)
def save_final(
    article_id: int,
    body: FinalContentRequest,
    orchestrator: GenerationOrchestrator = Depends(get_orchestrator),
):
    """保存定稿"""
    return ArticleDetail.from_article(orchestrator.save_final(article_id, body.content))
